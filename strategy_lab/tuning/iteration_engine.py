"""
반복 자동 튜닝 엔진 (hill climbing).

[ 역할 ]
    실험 그룹의 챔피언 파라미터를 한 번에 하나씩 변이시켜 백테스트하고,
    게이트를 통과한 도전자만 새 챔피언으로 승격한다. 모든 트라이얼은 Iteration 행으로 남는다.

[ 실행 흐름 ]
    run(request) 호출 시:
        1. 그룹 / 템플릿 스키마 / 데이터셋 로드 (없거나 깨졌으면 ConfigurationError)
        2. 챔피언 결정 (없으면 스키마 기본값으로 시드 버전 생성)
        3. 챔피언 완료 런이 없으면 베이스라인 백테스트 1회
        4. 트라이얼 반복 (최대 max_iterations)
           Mutate → 도전자 버전 생성 → Backtest → Aggregate → Score → Gate
           → Iteration 기록 → 승격(챔피언 교체) 또는 거절(rejected)
           거절 + stop_on_failure면 중단
        5. 트라이얼마다 commit (중간에 죽어도 끝난 트라이얼은 남음)

[ 호출하는 곳 ]
    - run_iteration.py (진입점, 스케줄러/수동 실행)
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import numpy as np

from strategy_lab.backtest.executor import BacktestExecutor, wait_for_run
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.storage.models import (
    ExperimentGroup,
    Iteration,
    RunStatus,
    Strategy,
    StrategyVersion,
    VersionStatus,
)
from strategy_lab.storage.repository import Repository
from strategy_lab.tuning.gates import GateConfig, evaluate_gates
from strategy_lab.tuning.mutation import mutate_params
from strategy_lab.tuning.schema import ParamSchema
from strategy_lab.tuning.scoring import MetricSnapshot, ObjectiveConfig, aggregate_best_metrics
from strategy_lab.versions.version_service import create_version, load_schema, set_version_status

logger = logging.getLogger("strategy_lab.iteration")

TRIGGER_TYPES = ("manual", "auto_tuner", "ai_advice", "scheduled")


# ─── 요청 / 응답 ────────────────────────────────────────────────────────────

@dataclass
class IterationRequest:
    """반복 실행 요청."""
    experiment_group_id: str
    trigger_type: str = "manual"
    max_iterations: int = 10
    mutation_aggressiveness: float = 0.5
    stop_on_failure: bool = False
    gates: Optional[dict[str, Any]] = None
    seed: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationRequest":
        if not data.get("experiment_group_id"):
            raise ConfigurationError("experiment_group_id가 필요합니다.")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class IterationResult:
    """트라이얼 1건 결과."""
    iteration_number: int
    accepted: bool
    challenger_id: str
    param_diff: dict[str, Any]
    gate_results: dict[str, Any]
    reject_reason: Optional[str]
    score_before: float
    score_after: float


@dataclass
class IterationResponse:
    iterations_run: int
    successful_iterations: int
    current_champion_id: Optional[str]
    results: list[IterationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ─── 엔진 ───────────────────────────────────────────────────────────────────

class IterationEngine:
    """실험 그룹 단위 hill climbing 루프."""

    def __init__(
        self,
        repo: Repository,
        executor: BacktestExecutor,
        gate_config: Optional[GateConfig] = None,
        max_iterations_limit: int = 100,
        backtest_timeout: float = 300.0,
        poll_interval: float = 1.0,
    ):
        self.repo = repo
        self.executor = executor
        self.gate_config = gate_config or GateConfig()
        self.max_iterations_limit = max_iterations_limit
        self.backtest_timeout = backtest_timeout
        self.poll_interval = poll_interval

    def run(self, request: IterationRequest) -> IterationResponse:
        """반복 실행. max_iterations가 0 이하면 아무것도 바꾸지 않는다."""
        group = self.repo.get_group(request.experiment_group_id)
        if group is None:
            raise ConfigurationError(f"실험 그룹을 찾을 수 없습니다: {request.experiment_group_id}")
        if request.trigger_type not in TRIGGER_TYPES:
            raise ConfigurationError(f"알 수 없는 trigger_type: {request.trigger_type}")

        if request.max_iterations <= 0:
            logger.info(f"[{group.name}] max_iterations=0, 실행 안 함")
            return IterationResponse(0, 0, group.champion_version_id)

        schema = load_schema(self.repo, group.template_id)
        if not schema.numeric_params():
            raise ConfigurationError(f"템플릿 {group.template_id}에 변이할 숫자형 파라미터가 없습니다.")
        if not group.dataset_id:
            raise ConfigurationError(f"실험 그룹 {group.id}에 데이터셋이 없습니다.")

        objective = ObjectiveConfig.from_dict(group.objective_config)
        gates = self.gate_config.merged(request.gates)
        aggressiveness = min(1.0, max(0.0, float(request.mutation_aggressiveness)))
        n_trials = min(int(request.max_iterations), self.max_iterations_limit)
        rng = np.random.default_rng(request.seed)

        champion = self.repo.find_group_champion(group) or self._seed_champion(group, schema)
        if group.champion_version_id != champion.id or not champion.is_champion:
            self.repo.set_group_champion(group, champion)
        champion_metrics = self._champion_metrics(champion, group)
        self.repo.commit()

        logger.info(
            f"[{group.name}] 반복 시작: trials={n_trials}, aggressiveness={aggressiveness:.2f}, "
            f"champion={champion.id} (trades={champion_metrics.trades_count}, pf={champion_metrics.profit_factor:.2f})"
        )

        response = IterationResponse(0, 0, champion.id)
        for _ in range(n_trials):
            try:
                result, challenger, challenger_metrics = self._run_trial(
                    group, champion, champion_metrics, schema, objective, gates, aggressiveness, rng,
                    request.trigger_type,
                )
            except Exception:
                # 번호 발급과 챌린저 버전까지 함께 되돌린다
                self.repo.rollback()
                logger.error(f"[{group.name}] 트라이얼 중단, 미완료 변경 롤백")
                raise
            self.repo.commit()

            response.iterations_run += 1
            response.results.append(result)
            if result.accepted:
                response.successful_iterations += 1
                champion, champion_metrics = challenger, challenger_metrics
                response.current_champion_id = champion.id
            elif request.stop_on_failure:
                logger.info(f"[{group.name}] 거절 발생, stop_on_failure로 중단")
                break

        logger.info(
            f"[{group.name}] 반복 종료: {response.iterations_run}회 중 {response.successful_iterations}회 승격, "
            f"champion={response.current_champion_id}"
        )
        return response

    # ─── 내부 단계 ──────────────────────────────────────────────────────────

    def _seed_champion(self, group: ExperimentGroup, schema: ParamSchema) -> StrategyVersion:
        """챔피언이 없는 그룹: 스키마 기본값으로 시드 버전 생성."""
        strategy = Strategy(name=f"{group.name} (seed)", template_id=group.template_id)
        self.repo.add(strategy)
        self.repo.flush()
        version = create_version(
            self.repo, strategy, schema.defaults(),
            experiment_group_id=group.id, notes="seed from schema defaults", schema=schema,
        )
        logger.info(f"[{group.name}] 시드 버전 생성: {version.id}")
        return version

    def _backtest(self, version: StrategyVersion, dataset_id: str) -> Optional[str]:
        run_id = self.executor.execute(version.id, dataset_id)
        run = wait_for_run(self.repo, run_id, self.backtest_timeout, self.poll_interval)
        if run.status == RunStatus.FAILED:
            logger.warning(f"백테스트 실패: version={version.id}, run={run.id}: {run.error}")
            return None
        return run.id

    def _champion_metrics(self, champion: StrategyVersion, group: ExperimentGroup) -> MetricSnapshot:
        """챔피언 집계 지표. 완료 런이 없으면 베이스라인 백테스트를 먼저 돌린다."""
        metrics = self.repo.completed_run_metrics(champion.id)
        if not metrics:
            logger.info(f"[{group.name}] 챔피언 베이스라인 백테스트: {champion.id}")
            if self._backtest(champion, group.dataset_id) and champion.status == VersionStatus.DRAFT:
                set_version_status(champion, VersionStatus.BACKTESTED)
            metrics = self.repo.completed_run_metrics(champion.id)
        return aggregate_best_metrics(metrics)

    def _run_trial(
        self,
        group: ExperimentGroup,
        champion: StrategyVersion,
        champion_metrics: MetricSnapshot,
        schema: ParamSchema,
        objective: ObjectiveConfig,
        gates: GateConfig,
        aggressiveness: float,
        rng: np.random.Generator,
        trigger_type: str,
    ) -> tuple[IterationResult, StrategyVersion, MetricSnapshot]:
        mutation = mutate_params(champion.params, schema, aggressiveness, rng)
        iteration_number = self.repo.next_iteration_number(group.id)
        strategy = self.repo.get_strategy(champion.strategy_id)

        challenger = create_version(
            self.repo, strategy, mutation.params, champion.risk_limits,
            experiment_group_id=group.id,
            notes=f"iteration #{iteration_number}: {mutation.key} {mutation.old_value} → {mutation.new_value}",
            schema=schema,
        )
        self._backtest(challenger, group.dataset_id)
        challenger_metrics = aggregate_best_metrics(self.repo.completed_run_metrics(challenger.id))

        evaluation = evaluate_gates(champion_metrics, challenger_metrics, objective, gates)
        self.repo.add(Iteration(
            experiment_group_id=group.id,
            parent_version_id=champion.id,
            child_version_id=challenger.id,
            iteration_number=iteration_number,
            trigger_type=trigger_type,
            param_diff=mutation.param_diff,
            metric_before=champion_metrics.to_dict(),
            metric_after=challenger_metrics.to_dict(),
            gate_results=evaluation.gate_results,
            score_before=evaluation.score_before,
            score_after=evaluation.score_after,
            accepted=evaluation.accepted,
            reject_reason=evaluation.reject_reason,
            rationale=f"Auto-tuned {mutation.key} with {aggressiveness * 100:.0f}% aggressiveness",
        ))

        if evaluation.accepted:
            set_version_status(challenger, VersionStatus.BACKTESTED)
            self.repo.set_group_champion(group, challenger)
            logger.info(
                f"[{group.name}] #{iteration_number} 승격: {mutation.key} {mutation.old_value} → "
                f"{mutation.new_value}, score {evaluation.score_before:.3f} → {evaluation.score_after:.3f}"
            )
        else:
            set_version_status(challenger, VersionStatus.REJECTED)
            logger.info(f"[{group.name}] #{iteration_number} 거절: {evaluation.reject_reason}")

        result = IterationResult(
            iteration_number=iteration_number,
            accepted=evaluation.accepted,
            challenger_id=challenger.id,
            param_diff=mutation.param_diff,
            gate_results=evaluation.gate_results,
            reject_reason=evaluation.reject_reason,
            score_before=evaluation.score_before,
            score_after=evaluation.score_after,
        )
        return result, challenger, challenger_metrics
