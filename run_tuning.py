"""
구간 분할 튜닝 잡 실행 스크립트 (진입점).

[ 사용법 ]
    # 튜닝 잡 생성 (자연어 지시문은 목적함수 / 변이 편향으로 변환)
    python run_tuning.py start --version <version_id> --dataset <dataset_id> --max-trials 50 \
        --instructions "minimize drawdown, fewer trades"

    # 제약 오버라이드
    python run_tuning.py start --version <id> --dataset <id> -c min_trades=20 -c max_dd=0.2

    # 배치 실행 (스케줄러에서 잡이 done이 될 때까지 반복 호출)
    python run_tuning.py work --job <job_id> --batch-size 10

    # 일시정지 / 재개 / 진행 상황
    python run_tuning.py pause --job <job_id>
    python run_tuning.py resume --job <job_id>
    python run_tuning.py status --job <job_id>
"""

import argparse

import numpy as np

from run_backtest import parse_param
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.storage.models import JobStatus
from strategy_lab.tuning.tuning_job import TuningWorker, start_tuning_job
from strategy_lab.utils.config import Config
from strategy_lab.utils.factory import create_data_provider, open_repository
from strategy_lab.utils.logger import setup_logger


def cmd_start(config: Config, args) -> None:
    repo = open_repository(config)
    job = start_tuning_job(
        repo, args.version, args.dataset,
        instructions=args.instructions,
        max_trials=args.max_trials,
        constraints=dict(parse_param(c) for c in args.constraint) or None,
        train_pct=args.train_pct,
        val_pct=args.val_pct,
    )
    repo.commit()
    print(f"튜닝 잡 생성: {job.id} (max_trials={job.max_trials})")
    if job.mutation_bias:
        print(f"  변이 편향: {job.mutation_bias}")
    print(f"  목적함수: {job.objective_config}")


def cmd_work(config: Config, args) -> None:
    repo = open_repository(config)
    job = repo.get_tuning_job(args.job)
    dataset = repo.get_dataset(job.dataset_id) if job is not None else None
    symbols = [dataset.symbol] if dataset is not None else None

    worker = TuningWorker(
        repo,
        MarketDataManager(create_data_provider(config, args.source, symbols)),
        initial_capital=config.backtest.initial_capital,
        cost_model=config.backtest.cost_model,
        default_qty=config.backtest.default_qty,
        rng=np.random.default_rng(args.seed),
    )
    progress = worker.process(args.job, args.batch_size)
    print(f"잡 {progress.job_id}: status={progress.status}, "
          f"{progress.trials_completed}회 완료 (이번 배치 {progress.trials_run}회, 승격 {progress.accepted}회)")
    print(f"  챔피언: {progress.champion_version_id}, best val score: {progress.best_score}")


def cmd_set_status(config: Config, args, status: str) -> None:
    repo = open_repository(config)
    job = repo.get_tuning_job(args.job)
    if job is None:
        print(f"오류: 튜닝 잡을 찾을 수 없습니다: {args.job}")
        return
    if job.status in (JobStatus.DONE, JobStatus.FAILED):
        print(f"잡이 이미 종료되었습니다 (status={job.status})")
        return
    job.status = status
    repo.commit()
    print(f"잡 {job.id}: status={job.status}")


def cmd_status(config: Config, args) -> None:
    repo = open_repository(config)
    job = repo.get_tuning_job(args.job)
    if job is None:
        print(f"오류: 튜닝 잡을 찾을 수 없습니다: {args.job}")
        return
    print(f"잡 {job.id}: status={job.status}, {job.trials_completed}/{job.max_trials}")
    print(f"  챔피언: {job.champion_version_id}, best val score: {job.best_score}")
    if job.error:
        print(f"  오류: {job.error}")
    for t in repo.list_trials(job.id)[-10:]:
        mark = "ACCEPT" if t.accepted else "REJECT"
        print(f"  #{t.trial_number:<4} {mark}  val={t.val_score:.3f} test={t.test_score:.3f}  "
              f"{t.param_diff}" + (f"  ({t.reject_reason})" if t.reject_reason else ""))


def main():
    parser = argparse.ArgumentParser(description="구간 분할 튜닝 잡")
    parser.add_argument("--config", type=str, default="config.yaml", help="설정 파일 경로")
    sub = parser.add_subparsers(dest="command", required=True)

    p_start = sub.add_parser("start", help="튜닝 잡 생성")
    p_start.add_argument("--version", required=True, help="시작 챔피언 버전 ID")
    p_start.add_argument("--dataset", required=True, help="데이터셋 ID")
    p_start.add_argument("--instructions", default="", help="자연어 지시문")
    p_start.add_argument("--max-trials", type=int, default=20)
    p_start.add_argument("-c", "--constraint", action="append", default=[], help="제약 (예: -c min_trades=20)")
    p_start.add_argument("--train-pct", type=float, default=0.6)
    p_start.add_argument("--val-pct", type=float, default=0.2)

    p_work = sub.add_parser("work", help="배치 실행")
    p_work.add_argument("--job", required=True)
    p_work.add_argument("--batch-size", type=int, default=10)
    p_work.add_argument("--seed", type=int, default=None)
    p_work.add_argument("--source", default="clickhouse", choices=["sample", "clickhouse", "alpaca"])

    for name in ("pause", "resume", "status"):
        p = sub.add_parser(name)
        p.add_argument("--job", required=True)

    args = parser.parse_args()
    config = Config.load(args.config)
    setup_logger(level=config.log_level, log_dir=config.log_dir)

    if args.command == "start":
        cmd_start(config, args)
    elif args.command == "work":
        cmd_work(config, args)
    elif args.command == "pause":
        cmd_set_status(config, args, JobStatus.PAUSED)
    elif args.command == "resume":
        cmd_set_status(config, args, JobStatus.RUNNING)
    elif args.command == "status":
        cmd_status(config, args)


if __name__ == "__main__":
    main()
