"""
페이퍼 트레이딩 실행 스크립트 (진입점).

[ 사용법 ]
    # 배포 시작 (BACKTEST_WINNER 버전만)
    python run_paper.py start --version <version_id> --symbols QQQ --target-days 5
    python run_paper.py start --version <version_id> --criteria max_dd=0.08 --criteria min_trades=10

    # 실행 루프 1회 (스케줄러에서 1~5분마다 호출)
    python run_paper.py tick                       # running 배포 전체
    python run_paper.py tick --deployment <id>     # 배포 1건
    python run_paper.py tick --deployment <id> --force-test-trade

    # 중지 / 평가 / 일일 손실 정지 해제
    python run_paper.py stop --deployment <id> --reason "manual review"
    python run_paper.py evaluate --deployment <id>
    python run_paper.py clear-halt --deployment <id> --operator alice

    # 브로커 키 없이 드라이런 (메모리 브로커 + 샘플 봉, 장 시간 무시)
    python run_paper.py --mock tick --deployment <id>
"""

import argparse
import json

from run_backtest import parse_param
from strategy_lab.brokers.mock_broker import MockBroker
from strategy_lab.core.broker_api import BrokerAPI
from strategy_lab.core.data_provider import DataProvider
from strategy_lab.execution.deployment_service import (
    DEFAULT_SYMBOLS,
    clear_halt,
    evaluate_deployment,
    start_deployment,
    stop_deployment,
)
from strategy_lab.execution.execution_loop import ExecutionLoop
from strategy_lab.execution.market_hours import is_market_open
from strategy_lab.utils.config import Config
from strategy_lab.utils.factory import create_broker, create_data_provider, open_repository
from strategy_lab.utils.logger import setup_logger


def _symbols(repo, deployment_id) -> list[str]:
    if deployment_id:
        deployment = repo.get_deployment(deployment_id)
        if deployment is not None:
            return list(deployment.symbols or DEFAULT_SYMBOLS)
    symbols = set()
    for deployment in repo.list_running_deployments():
        symbols.update(deployment.symbols or DEFAULT_SYMBOLS)
    return sorted(symbols) or list(DEFAULT_SYMBOLS)


def _mock_prices(broker: BrokerAPI, provider: DataProvider, symbols: list[str], timeframe: str) -> None:
    """메모리 브로커 현재가를 마지막 샘플 봉 종가로 맞춘다."""
    if not isinstance(broker, MockBroker):
        return
    for symbol in symbols:
        bars = provider.get_recent_bars(symbol, timeframe, 1)
        if not bars.empty:
            broker.set_price(symbol, float(bars["close"].iloc[-1]))


def cmd_start(config: Config, args) -> None:
    repo = open_repository(config)
    broker = create_broker(config, args.mock)
    deployment = start_deployment(
        repo, broker, args.version,
        symbols=args.symbols,
        timeframe=args.timeframe or config.execution.timeframe,
        target_days=args.target_days,
        pass_criteria=dict(parse_param(c) for c in args.criteria) or None,
    )
    print(f"배포 시작: {deployment.id} (symbols={deployment.symbols}, target_days={deployment.target_days})")
    print(f"  시작 자산: {deployment.starting_equity:,.2f}$")


def cmd_tick(config: Config, args) -> None:
    repo = open_repository(config)
    symbols = _symbols(repo, args.deployment)
    broker = create_broker(config, args.mock)
    provider = create_data_provider(config, "sample" if args.mock else "alpaca", symbols)
    _mock_prices(broker, provider, symbols, config.execution.timeframe)

    loop = ExecutionLoop(
        repo, broker, provider,
        market_hours=(lambda now: True) if args.mock else is_market_open,
        lease_ttl_seconds=config.execution.lease_ttl_seconds,
        min_bars=config.execution.min_bars,
        bars_limit=config.execution.bar_limit,
        order_sync_limit=config.execution.orders_sync_limit,
        buying_power_fraction=config.execution.buying_power_fraction,
    )
    results = loop.run(args.deployment, force_test_trade=args.force_test_trade)
    print(json.dumps([r.to_dict() for r in results], indent=2, default=str))


def cmd_stop(config: Config, args) -> None:
    repo = open_repository(config)
    deployment = stop_deployment(repo, create_broker(config, args.mock), args.deployment, args.reason)
    print(f"배포 중지: {deployment.id} ({deployment.reject_reason})")


def cmd_evaluate(config: Config, args) -> None:
    repo = open_repository(config)
    result = evaluate_deployment(repo, args.deployment)
    print(json.dumps(result, indent=2, default=str))


def cmd_clear_halt(config: Config, args) -> None:
    repo = open_repository(config)
    deployment = clear_halt(repo, args.deployment, args.operator)
    print(f"정지 해제: {deployment.id} (halted={deployment.halted})")


def main():
    parser = argparse.ArgumentParser(description="페이퍼 트레이딩 배포 / 실행 루프")
    parser.add_argument("--config", type=str, default="config.yaml", help="설정 파일 경로")
    parser.add_argument("--mock", action="store_true", help="메모리 브로커 + 샘플 데이터로 드라이런")
    parser.add_argument("--no-console", action="store_true", help="콘솔 출력 없이 로그 파일에만 기록 (cron 용)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_start = sub.add_parser("start", help="배포 시작")
    p_start.add_argument("--version", required=True, help="BACKTEST_WINNER 버전 ID")
    p_start.add_argument("--symbols", nargs="+", default=None)
    p_start.add_argument("--timeframe", default=None)
    p_start.add_argument("--target-days", type=int, default=5)
    p_start.add_argument("--criteria", action="append", default=[], help="평가 기준 (예: --criteria max_dd=0.08)")

    p_tick = sub.add_parser("tick", help="실행 루프 1회")
    p_tick.add_argument("--deployment", default=None, help="배포 ID (없으면 running 전체)")
    p_tick.add_argument("--force-test-trade", action="store_true", help="강제 테스트 주문 (장중에만)")

    p_stop = sub.add_parser("stop", help="배포 중지")
    p_stop.add_argument("--deployment", required=True)
    p_stop.add_argument("--reason", default="Manually stopped")

    p_eval = sub.add_parser("evaluate", help="배포 평가")
    p_eval.add_argument("--deployment", required=True)

    p_clear = sub.add_parser("clear-halt", help="일일 손실 정지 해제")
    p_clear.add_argument("--deployment", required=True)
    p_clear.add_argument("--operator", default="operator")

    args = parser.parse_args()
    config = Config.load(args.config)
    setup_logger(level=config.log_level, log_dir=config.log_dir, console=not args.no_console)

    commands = {
        "start": cmd_start,
        "tick": cmd_tick,
        "stop": cmd_stop,
        "evaluate": cmd_evaluate,
        "clear-halt": cmd_clear_halt,
    }
    commands[args.command](config, args)


if __name__ == "__main__":
    main()
