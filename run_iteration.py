"""
반복 자동 튜닝 실행 스크립트 (진입점).

[ 사용법 ]
    # 실험 그룹 생성 (템플릿 + 데이터셋)
    python run_iteration.py create-group --name "QQQ breakout" --template momentum_breakout_v1 --dataset <dataset_id>

    # 반복 실행 (스케줄러에서 주기적으로 호출해도 됨)
    python run_iteration.py run --group <group_id> --max-iterations 10 --aggressiveness 0.5
    python run_iteration.py run --group <group_id> --trigger scheduled --stop-on-failure --seed 42

    # 게이트 오버라이드
    python run_iteration.py run --group <group_id> --gate min_trades=10 --gate max_dd=0.15

    # 이터레이션 이력 조회
    python run_iteration.py history --group <group_id>
"""

import argparse
import json

from run_backtest import parse_param
from strategy_lab.backtest.executor import LocalBacktestExecutor
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.storage.models import ExperimentGroup
from strategy_lab.strategies import get_template
from strategy_lab.tuning.iteration_engine import TRIGGER_TYPES, IterationEngine, IterationRequest
from strategy_lab.utils.config import Config
from strategy_lab.utils.factory import create_data_provider, open_repository
from strategy_lab.utils.logger import setup_logger


def create_group(config: Config, args) -> None:
    repo = open_repository(config)
    template = get_template(args.template)
    if repo.get_dataset(args.dataset) is None:
        print(f"오류: 데이터셋을 찾을 수 없습니다: {args.dataset}")
        return
    group = ExperimentGroup(
        name=args.name,
        template_id=template.template_id,
        dataset_id=args.dataset,
        timeframe=args.timeframe,
        objective_config=json.loads(args.objective) if args.objective else {},
    )
    repo.add(group)
    repo.commit()
    print(f"실험 그룹 생성: {group.id} ({group.name}, template={template.template_id})")


def run_iterations(config: Config, args) -> None:
    repo = open_repository(config)
    group = repo.get_group(args.group)
    dataset = repo.get_dataset(group.dataset_id) if group and group.dataset_id else None
    symbols = [dataset.symbol] if dataset is not None else None

    market_data = MarketDataManager(create_data_provider(config, args.source, symbols))
    executor = LocalBacktestExecutor(
        repo, market_data,
        initial_capital=config.backtest.initial_capital,
        cost_model=config.backtest.cost_model,
        default_qty=config.backtest.default_qty,
    )
    engine = IterationEngine(
        repo, executor,
        gate_config=config.iteration.gates,
        max_iterations_limit=config.iteration.max_iterations_limit,
        backtest_timeout=config.iteration.backtest_timeout,
        poll_interval=config.iteration.poll_interval,
    )
    request = IterationRequest(
        experiment_group_id=args.group,
        trigger_type=args.trigger,
        max_iterations=args.max_iterations if args.max_iterations is not None else config.iteration.max_iterations,
        mutation_aggressiveness=(
            args.aggressiveness if args.aggressiveness is not None else config.iteration.mutation_aggressiveness
        ),
        stop_on_failure=args.stop_on_failure,
        gates=dict(parse_param(g) for g in args.gate) or None,
        seed=args.seed,
    )
    response = engine.run(request)

    print(f"\n실행 {response.iterations_run}회, 승격 {response.successful_iterations}회")
    print(f"현재 챔피언: {response.current_champion_id}")
    for r in response.results:
        mark = "ACCEPT" if r.accepted else "REJECT"
        print(f"  #{r.iteration_number:<4} {mark}  {json.dumps(r.param_diff)}  "
              f"score {r.score_before:.3f} → {r.score_after:.3f}"
              + (f"  ({r.reject_reason})" if r.reject_reason else ""))
    if args.json:
        print(json.dumps(response.to_dict(), indent=2, default=str))


def show_history(config: Config, args) -> None:
    repo = open_repository(config)
    group = repo.get_group(args.group)
    if group is None:
        print(f"오류: 실험 그룹을 찾을 수 없습니다: {args.group}")
        return
    print(f"[{group.name}] champion={group.champion_version_id}")
    for it in repo.list_iterations(group.id):
        mark = "ACCEPT" if it.accepted else "REJECT"
        print(f"  #{it.iteration_number:<4} {it.created_at:%Y-%m-%d %H:%M} {it.trigger_type:<10} {mark}  "
              f"{json.dumps(it.param_diff)}  {it.rationale}")


def main():
    parser = argparse.ArgumentParser(description="실험 그룹 반복 자동 튜닝")
    parser.add_argument("--config", type=str, default="config.yaml", help="설정 파일 경로")
    sub = parser.add_subparsers(dest="command", required=True)

    p_group = sub.add_parser("create-group", help="실험 그룹 생성")
    p_group.add_argument("--name", required=True)
    p_group.add_argument("--template", required=True, help="템플릿 ID")
    p_group.add_argument("--dataset", required=True, help="데이터셋 ID")
    p_group.add_argument("--timeframe", default="5m")
    p_group.add_argument("--objective", default=None, help='목적함수 JSON (예: \'{"dd_penalty": 0.3}\')')

    p_run = sub.add_parser("run", help="반복 실행")
    p_run.add_argument("--group", required=True, help="실험 그룹 ID")
    p_run.add_argument("--trigger", default="manual", choices=TRIGGER_TYPES)
    p_run.add_argument("--max-iterations", type=int, default=None)
    p_run.add_argument("--aggressiveness", type=float, default=None, help="변이 강도 [0, 1]")
    p_run.add_argument("--stop-on-failure", action="store_true")
    p_run.add_argument("--gate", action="append", default=[], help="게이트 오버라이드 (예: --gate min_trades=10)")
    p_run.add_argument("--seed", type=int, default=None)
    p_run.add_argument("--source", default="clickhouse", choices=["sample", "clickhouse", "alpaca"])
    p_run.add_argument("--json", action="store_true", help="응답 JSON 출력")

    p_hist = sub.add_parser("history", help="이터레이션 이력")
    p_hist.add_argument("--group", required=True)

    args = parser.parse_args()
    config = Config.load(args.config)
    setup_logger(level=config.log_level, log_dir=config.log_dir)

    if args.command == "create-group":
        create_group(config, args)
    elif args.command == "run":
        run_iterations(config, args)
    elif args.command == "history":
        show_history(config, args)


if __name__ == "__main__":
    main()
