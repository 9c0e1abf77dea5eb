"""
백테스트 실행 스크립트 (진입점).

[ 사용법 ]
    # 등록된 템플릿 목록 확인
    python run_backtest.py --list

    # 템플릿 + 파라미터로 바로 백테스트 (샘플 데이터)
    python run_backtest.py --template momentum_breakout_v1 --sample
    python run_backtest.py --template mean_reversion_extremes_v1 -p rsi_oversold=25 --sample

    # ClickHouse 데이터 사용
    python run_backtest.py --template regime_switcher_v1 --symbol QQQ --start 2024-01-02 --end 2024-03-29

    # 데이터셋 등록 (state store의 datasets 행)
    python run_backtest.py --register-dataset --symbol QQQ --start 2024-01-02 --end 2024-03-29

    # 저장된 버전을 데이터셋으로 백테스트 (Run / RunMetrics / Trade 행 저장)
    python run_backtest.py --version <version_id> --dataset <dataset_id>

    # 여러 템플릿 비교
    python run_backtest.py --compare momentum_breakout_v1 mean_reversion_extremes_v1 --sample
"""

import argparse
from datetime import date, datetime, timedelta

import pandas as pd

from strategy_lab.backtest.engine import BacktestEngine
from strategy_lab.backtest.executor import LocalBacktestExecutor, wait_for_run
from strategy_lab.backtest.metrics import BacktestMetrics
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.data.sample_data import generate_sample_bars
from strategy_lab.storage.models import Dataset
from strategy_lab.strategies import get_template, list_templates
from strategy_lab.utils.config import Config
from strategy_lab.utils.factory import create_data_provider, open_repository
from strategy_lab.utils.logger import setup_logger


def parse_param(param_str: str) -> tuple[str, object]:
    """'key=value' 문자열을 파싱하여 (key, value) 반환. 숫자면 자동 변환."""
    key, _, value = param_str.partition("=")
    key = key.strip()
    value = value.strip()

    # 숫자 자동 변환
    try:
        if "." in value:
            return key, float(value)
        return key, int(value)
    except ValueError:
        # bool 변환
        if value.lower() in ("true", "yes"):
            return key, True
        if value.lower() in ("false", "no"):
            return key, False
        return key, value


def load_bars(config: Config, source: str, symbol: str, start: date, end: date, timeframe: str) -> pd.DataFrame:
    """데이터 소스에서 봉 로드."""
    if source == "sample":
        print("샘플 데이터 생성 중...")
        bars = generate_sample_bars(symbol, start, end, timeframe)
    else:
        print(f"{source}에서 데이터 조회 중...")
        provider = create_data_provider(config, source, [symbol])
        manager = MarketDataManager(provider)
        bars = manager.get_bars(symbol, timeframe, datetime.combine(start, datetime.min.time()),
                                datetime.combine(end, datetime.max.time()))
    print(f"  {symbol}: {len(bars)}개 봉 ({timeframe})")
    return bars


def run_single(config: Config, template_id: str, params: dict, bars: pd.DataFrame, symbol: str) -> tuple[BacktestMetrics, dict]:
    """단일 템플릿 백테스트 실행."""
    engine = BacktestEngine(
        initial_capital=config.backtest.initial_capital,
        cost_model=config.backtest.cost_model,
        default_qty=config.backtest.default_qty,
    )
    metrics = engine.simulate(bars, template_id, params, symbol=symbol)
    return metrics, engine.generate_report()


def print_single_result(template_id: str, metrics: BacktestMetrics, report: dict) -> None:
    """단일 템플릿 결과 출력."""
    print(f"\n[템플릿: {template_id}]")
    print(metrics.summary())

    trades = report.get("trades", [])
    if trades:
        print("\n최근 거래 (최대 5건):")
        for t in trades[-5:]:
            pnl_str = f"+{t['pnl_usd']:,.2f}" if t["pnl_usd"] > 0 else f"{t['pnl_usd']:,.2f}"
            print(f"  [{t['ts_exit']}] {t['side']} x{t['qty']} "
                  f"{t['entry_price']:.2f} → {t['exit_price']:.2f} ({t['reason_code']}) {pnl_str}$")


def print_comparison(results: dict[str, BacktestMetrics], symbol: str) -> None:
    """여러 템플릿 비교 결과 출력."""
    names = list(results.keys())
    col_width = max(14, max(len(n) for n in names) + 2)
    width = 20 + col_width * len(names)

    print(f"\n{'=' * width}")
    print(f"템플릿 비교 결과 ({symbol})")
    print(f"{'=' * width}")

    header = f"{'':>20}" + "".join(f"{n:>{col_width}}" for n in names)
    print(header)
    print("-" * len(header))

    rows = [
        ("순손익", lambda m: f"{m.net_pnl_usd:,.2f}$"),
        ("수익 팩터", lambda m: f"{m.profit_factor:.2f}"),
        ("최대 낙폭", lambda m: f"{m.max_drawdown * 100:.2f}%"),
        ("승률", lambda m: f"{m.win_rate * 100:.1f}%"),
        ("총 거래 횟수", lambda m: f"{m.trades_count}"),
        ("평균 거래", lambda m: f"{m.avg_trade:,.2f}$"),
        ("최대 연속 손실", lambda m: f"{m.max_consecutive_losses}"),
        ("샤프(거래단위)", lambda m: f"{m.sharpe_ratio:.2f}"),
    ]
    for label, fmt in rows:
        print(f"{label:>20}" + "".join(f"{fmt(results[n]):>{col_width}}" for n in names))

    print(f"{'=' * width}")


def register_dataset(config: Config, symbol: str, start: date, end: date, timeframe: str, source: str) -> None:
    repo = open_repository(config)
    dataset = Dataset(
        symbol=symbol,
        timeframe=timeframe,
        start_ts=datetime.combine(start, datetime.min.time()),
        end_ts=datetime.combine(end, datetime.max.time()).replace(microsecond=0),
        source=source,
    )
    repo.add(dataset)
    repo.commit()
    print(f"데이터셋 등록: {dataset.id} ({symbol} {timeframe}, {start} ~ {end}, source={source})")


def run_version(config: Config, version_id: str, dataset_id: str, source: str) -> None:
    """저장된 버전을 데이터셋으로 백테스트하고 Run 행으로 저장."""
    repo = open_repository(config)
    dataset = repo.get_dataset(dataset_id)
    symbols = [dataset.symbol] if dataset is not None else None
    market_data = MarketDataManager(create_data_provider(config, source, symbols))
    executor = LocalBacktestExecutor(
        repo, market_data,
        initial_capital=config.backtest.initial_capital,
        cost_model=config.backtest.cost_model,
        default_qty=config.backtest.default_qty,
    )
    run_id = executor.execute(version_id, dataset_id)
    run = wait_for_run(repo, run_id, config.iteration.backtest_timeout, config.iteration.poll_interval)
    repo.commit()

    print(f"\n런: {run.id} (status={run.status})")
    if run.error:
        print(f"  오류: {run.error}")
    if run.metrics is not None:
        m = run.metrics
        print(f"  거래 {m.trades_count}건, 순손익 {m.net_pnl_usd:,.2f}$, PF {m.profit_factor:.2f}, "
              f"낙폭 {m.max_drawdown * 100:.2f}%, 승률 {m.win_rate * 100:.1f}%")


def main():
    parser = argparse.ArgumentParser(description="전략 템플릿 백테스트 실행")
    parser.add_argument("--config", type=str, default="config.yaml", help="설정 파일 경로")
    parser.add_argument("--template", type=str, default="momentum_breakout_v1", help="템플릿 ID")
    parser.add_argument("-p", "--param", action="append", default=[], help="파라미터 오버라이드 (예: -p lookback_bars=20)")
    parser.add_argument("--symbol", type=str, default="QQQ", help="종목 코드")
    parser.add_argument("--timeframe", type=str, default="5m", help="봉 주기 (1m, 5m, 15m, 1h, 1d)")
    parser.add_argument("--start", type=str, default=None, help="시작일 (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, default=None, help="종료일 (YYYY-MM-DD)")
    parser.add_argument("--sample", action="store_true", help="샘플 데이터로 테스트")
    parser.add_argument("--source", type=str, default="clickhouse", choices=["sample", "clickhouse", "alpaca"], help="데이터 소스")
    parser.add_argument("--compare", nargs="+", metavar="TEMPLATE", help="여러 템플릿 비교")
    parser.add_argument("--version", type=str, default=None, help="저장된 버전 ID")
    parser.add_argument("--dataset", type=str, default=None, help="데이터셋 ID (--version과 함께)")
    parser.add_argument("--register-dataset", action="store_true", help="데이터셋 행 등록")
    parser.add_argument("--list", action="store_true", help="등록된 템플릿 목록 출력")
    args = parser.parse_args()

    # 템플릿 목록 출력
    if args.list:
        print("등록된 템플릿:")
        for template_id in list_templates():
            print(f"  - {template_id}: {get_template(template_id).description}")
        return

    config = Config.load(args.config)
    setup_logger(level=config.log_level, log_dir=config.log_dir)

    # --sample 호환
    if args.sample:
        args.source = "sample"

    end = date.fromisoformat(args.end) if args.end else date.today()
    start = date.fromisoformat(args.start) if args.start else end - timedelta(days=60)

    if args.register_dataset:
        register_dataset(config, args.symbol, start, end, args.timeframe, args.source)
        return

    if args.version:
        if not args.dataset:
            parser.error("--version에는 --dataset이 필요합니다.")
        run_version(config, args.version, args.dataset, args.source)
        return

    bars = load_bars(config, args.source, args.symbol, start, end, args.timeframe)
    if bars.empty:
        print("\n오류: 백테스트할 데이터가 없습니다. --sample 옵션으로 샘플 데이터를 사용하세요.")
        return

    # ─── 비교 모드 ───────────────────────────────────────────────────────
    if args.compare:
        print(f"\n{len(args.compare)}개 템플릿 비교 실행...")
        results = {}
        for template_id in args.compare:
            print(f"\n--- {template_id} 실행 중 ---")
            metrics, _ = run_single(config, template_id, {}, bars, args.symbol)
            results[template_id] = metrics
        print_comparison(results, args.symbol)
        return

    # ─── 단일 실행 모드 ─────────────────────────────────────────────────
    params = dict(parse_param(p) for p in args.param)
    print(f"\n템플릿: {args.template}")
    if params:
        print(f"파라미터 오버라이드: {params}")

    metrics, report = run_single(config, args.template, params, bars, args.symbol)
    print_single_result(args.template, metrics, report)


if __name__ == "__main__":
    main()
