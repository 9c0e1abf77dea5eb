"""
구간 분할 튜닝 잡.

[ 역할 ]
    데이터셋을 train / val / test 구간으로 나눠 과적합을 걸러내는 튜닝.
    이터레이션 엔진과 달리 Run 행을 만들지 않고 BacktestEngine을 메모리에서 바로 돌린다.

[ 실행 흐름 ]
    start_tuning_job()      → TuningJob 행 생성 (status=pending)
                              지시문이 있으면 목적함수 / 변이 편향으로 파싱
    TuningWorker.process()  → 배치 1회 (기본 10 트라이얼)
        1. 데이터셋 봉을 한 번 읽고 train_pct / val_pct로 분할 (100개 미만이면 ConfigurationError)
        2. 현재 잡 챔피언을 세 구간에서 채점
        3. 트라이얼: 변이 → 세 구간 백테스트 → 게이트
             val 거래수 >= min_trades
             val 낙폭  <= max_dd
             val 점수  >= best + |best| * improvement_threshold
             test 점수 >= 챔피언 test 점수 - 1% * |챔피언 test 점수|
           통과하면 backtested 버전 생성 + 잡 챔피언 교체
        4. trials_completed >= max_trials 이면 done, 아니면 running 유지

[ 호출하는 곳 ]
    - run_tuning.py (진입점)
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

import numpy as np
import pandas as pd

from strategy_lab.backtest.engine import BacktestEngine
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.data.portfolio import CostModel
from strategy_lab.storage.models import JobStatus, StrategyVersion, TuningJob, TuningTrial, VersionStatus
from strategy_lab.storage.repository import Repository
from strategy_lab.tuning.instructions import parse_instructions
from strategy_lab.tuning.mutation import mutate_params
from strategy_lab.tuning.schema import ParamSchema
from strategy_lab.tuning.scoring import ObjectiveConfig, calculate_score
from strategy_lab.versions.version_service import create_version, load_schema

logger = logging.getLogger("strategy_lab.tuning")

MIN_TUNING_BARS = 100
TEST_COLLAPSE_TOLERANCE = 0.01

DEFAULT_CONSTRAINTS = {
    "min_trades": 30,
    "max_dd": 0.15,
    "improvement_threshold": 0.03,
}


def start_tuning_job(
    repo: Repository,
    champion_version_id: str,
    dataset_id: str,
    instructions: str = "",
    max_trials: int = 20,
    objective_config: Optional[dict[str, Any]] = None,
    constraints: Optional[dict[str, Any]] = None,
    train_pct: float = 0.6,
    val_pct: float = 0.2,
) -> TuningJob:
    """튜닝 잡 생성. 지시문이 주어지면 objective_config보다 우선한다."""
    version = repo.get_version(champion_version_id)
    if version is None:
        raise ConfigurationError(f"버전을 찾을 수 없습니다: {champion_version_id}")
    if repo.get_dataset(dataset_id) is None:
        raise ConfigurationError(f"데이터셋을 찾을 수 없습니다: {dataset_id}")
    if max_trials < 1:
        raise ConfigurationError("max_trials는 1 이상이어야 합니다.")
    if not (0 < train_pct < 1 and 0 < val_pct < 1 and train_pct + val_pct < 1):
        raise ConfigurationError(f"잘못된 구간 비율: train={train_pct}, val={val_pct}")

    objective = ObjectiveConfig.from_dict(objective_config)
    mutation_bias: dict[str, str] = {}
    if instructions and instructions.strip():
        parsed = parse_instructions(instructions)
        objective = parsed.objective
        mutation_bias = parsed.mutation_bias
        logger.info(f"지시문 파싱: {parsed.summary}")

    job = TuningJob(
        strategy_id=version.strategy_id,
        base_version_id=version.id,
        champion_version_id=version.id,
        dataset_id=dataset_id,
        status=JobStatus.PENDING,
        instructions=instructions or "",
        objective_config=objective.to_dict(),
        constraints={**DEFAULT_CONSTRAINTS, **(constraints or {})},
        mutation_bias=mutation_bias,
        max_trials=int(max_trials),
        train_pct=train_pct,
        val_pct=val_pct,
        test_pct=round(1 - train_pct - val_pct, 10),
    )
    repo.add(job)
    repo.flush()
    logger.info(f"튜닝 잡 생성: {job.id} (version={version.id}, max_trials={max_trials})")
    return job


# ─── 워커 ───────────────────────────────────────────────────────────────────

@dataclass
class SplitScores:
    train_score: float
    val_score: float
    test_score: float
    train_metrics: dict[str, Any]
    val_metrics: dict[str, Any]
    test_metrics: dict[str, Any]

    @property
    def val_trades(self) -> int:
        return int(self.val_metrics.get("trades_count") or 0)

    @property
    def val_drawdown(self) -> float:
        return float(self.val_metrics.get("max_drawdown") or 0.0)


@dataclass
class TuningProgress:
    job_id: str
    status: str
    trials_run: int
    trials_completed: int
    accepted: int
    champion_version_id: str
    best_score: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def split_bars(bars: pd.DataFrame, train_pct: float, val_pct: float) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """시간순 train / val / test 분할."""
    total = len(bars)
    train_end = int(total * train_pct)
    val_end = int(total * (train_pct + val_pct))
    return (
        bars.iloc[:train_end].reset_index(drop=True),
        bars.iloc[train_end:val_end].reset_index(drop=True),
        bars.iloc[val_end:].reset_index(drop=True),
    )


class TuningWorker:
    """튜닝 잡을 배치 단위로 진행."""

    def __init__(
        self,
        repo: Repository,
        market_data: MarketDataManager,
        initial_capital: float = 100_000,
        cost_model: Optional[CostModel] = None,
        default_qty: int = 100,
        rng: Optional[np.random.Generator] = None,
    ):
        self.repo = repo
        self.market_data = market_data
        self.initial_capital = initial_capital
        self.cost_model = cost_model or CostModel()
        self.default_qty = default_qty
        self.rng = rng or np.random.default_rng()

    def process(self, job_id: str, batch_size: int = 10) -> TuningProgress:
        job = self.repo.get_tuning_job(job_id)
        if job is None:
            raise ConfigurationError(f"튜닝 잡을 찾을 수 없습니다: {job_id}")
        if job.status in (JobStatus.PAUSED, JobStatus.DONE, JobStatus.FAILED):
            logger.info(f"튜닝 잡 {job.id} 건너뜀 (status={job.status})")
            return self._progress(job, 0, 0)

        job.status = JobStatus.RUNNING
        self.repo.commit()

        try:
            trials_run, accepted = self._run_batch(job, batch_size)
        except Exception as e:
            logger.error(f"튜닝 잡 실패: {job.id}: {e}")
            self.repo.rollback()
            job = self.repo.get_tuning_job(job_id)
            job.status = JobStatus.FAILED
            job.error = str(e)
            self.repo.commit()
            raise

        job.status = JobStatus.DONE if job.trials_completed >= job.max_trials else JobStatus.RUNNING
        self.repo.commit()
        logger.info(
            f"튜닝 잡 {job.id}: 배치 {trials_run}회 (승격 {accepted}회), "
            f"{job.trials_completed}/{job.max_trials}, status={job.status}"
        )
        return self._progress(job, trials_run, accepted)

    # ─── 내부 ───────────────────────────────────────────────────────────────

    def _progress(self, job: TuningJob, trials_run: int, accepted: int) -> TuningProgress:
        return TuningProgress(
            job_id=job.id,
            status=job.status,
            trials_run=trials_run,
            trials_completed=job.trials_completed,
            accepted=accepted,
            champion_version_id=job.champion_version_id,
            best_score=job.best_score,
        )

    def _score_splits(
        self,
        splits: tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame],
        template_id: str,
        params: dict[str, Any],
        risk_limits: dict[str, Any],
        objective: ObjectiveConfig,
        symbol: str,
    ) -> SplitScores:
        scores, metrics = [], []
        for bars in splits:
            engine = BacktestEngine(self.initial_capital, self.cost_model, self.default_qty)
            result = engine.simulate(bars, template_id, params, risk_limits, symbol=symbol)
            scores.append(calculate_score(result.to_snapshot(), objective))
            metrics.append(result.to_dict())
        return SplitScores(*scores, *metrics)

    def _run_batch(self, job: TuningJob, batch_size: int) -> tuple[int, int]:
        champion = self.repo.get_version(job.champion_version_id)
        dataset = self.repo.get_dataset(job.dataset_id)
        if champion is None or dataset is None:
            raise ConfigurationError(f"튜닝 잡 {job.id}의 챔피언/데이터셋이 없습니다.")
        strategy = self.repo.get_strategy(champion.strategy_id)
        schema = load_schema(self.repo, strategy.template_id)

        bars = self.market_data.get_dataset_bars(dataset)
        if len(bars) < MIN_TUNING_BARS:
            raise ConfigurationError(f"튜닝 데이터 부족: {len(bars)}개 < {MIN_TUNING_BARS}개")
        splits = split_bars(bars, job.train_pct, job.val_pct)
        logger.info(
            f"튜닝 잡 {job.id}: 구간 분할 train={len(splits[0])}, val={len(splits[1])}, test={len(splits[2])}"
        )

        objective = ObjectiveConfig.from_dict(job.objective_config)
        constraints = {**DEFAULT_CONSTRAINTS, **(job.constraints or {})}
        bias = dict(job.mutation_bias or {})

        def score(params: dict[str, Any]) -> SplitScores:
            return self._score_splits(
                splits, strategy.template_id, params, champion.risk_limits, objective, dataset.symbol,
            )

        champion_scores = score(champion.params)
        best_score = champion_scores.val_score
        if job.best_score is None:
            job.best_score = best_score
        job.champion_test_score = champion_scores.test_score

        n_trials = max(0, min(batch_size, job.max_trials - job.trials_completed))
        accepted_count = 0
        for _ in range(n_trials):
            trial_number = job.trials_completed + 1
            mutation = mutate_params(champion.params, schema, 0.5, self.rng, bias)
            scores = score(mutation.params)
            reject_reason = self._check_gates(scores, best_score, champion_scores.test_score, constraints)

            trial = TuningTrial(
                job_id=job.id,
                trial_number=trial_number,
                base_version_id=champion.id,
                params_json=mutation.params,
                param_diff=mutation.param_diff,
                train_metrics=scores.train_metrics,
                val_metrics=scores.val_metrics,
                test_metrics=scores.test_metrics,
                train_score=scores.train_score,
                val_score=scores.val_score,
                test_score=scores.test_score,
                accepted=reject_reason is None,
                reject_reason=reject_reason,
            )

            if reject_reason is None:
                champion = self._accept(job, strategy, champion, mutation.params, schema, trial_number)
                trial.candidate_version_id = champion.id
                best_score = scores.val_score
                champion_scores = scores
                job.best_score = best_score
                job.champion_test_score = scores.test_score
                accepted_count += 1
                logger.info(f"튜닝 잡 {job.id} #{trial_number} 승격: val={scores.val_score:.3f}")
            else:
                logger.debug(f"튜닝 잡 {job.id} #{trial_number} 거절: {reject_reason}")

            self.repo.add(trial)
            job.trials_completed = trial_number
            self.repo.commit()

        return n_trials, accepted_count

    def _accept(
        self,
        job: TuningJob,
        strategy,
        champion: StrategyVersion,
        params: dict[str, Any],
        schema: ParamSchema,
        trial_number: int,
    ) -> StrategyVersion:
        version = create_version(
            self.repo, strategy, params, champion.risk_limits,
            status=VersionStatus.BACKTESTED,
            notes=f"tuning job {job.id} trial #{trial_number}",
            schema=schema,
        )
        job.champion_version_id = version.id
        return version

    @staticmethod
    def _check_gates(
        scores: SplitScores,
        best_score: float,
        champion_test_score: float,
        constraints: dict[str, Any],
    ) -> Optional[str]:
        """통과하면 None, 아니면 첫 번째 실패 사유."""
        min_trades = int(constraints["min_trades"])
        max_dd = float(constraints["max_dd"])
        threshold = float(constraints["improvement_threshold"])

        if scores.val_trades < min_trades:
            return f"Insufficient trades: {scores.val_trades} < {min_trades}"
        if scores.val_drawdown > max_dd:
            return f"Drawdown too high: {scores.val_drawdown * 100:.1f}% > {max_dd * 100:.1f}%"
        required = best_score + abs(best_score) * threshold
        if scores.val_score < required:
            return f"Score not improved: {scores.val_score:.3f} < {required:.3f}"
        floor = champion_test_score - abs(champion_test_score) * TEST_COLLAPSE_TOLERANCE
        if scores.test_score < floor:
            return f"Test score collapse: {scores.test_score:.3f} < {floor:.3f}"
        return None
