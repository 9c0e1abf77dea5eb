"""
상태 저장소 리포지토리.

[ 역할 ]
    세션 위에서 도메인 단위 조회/갱신을 제공.
    동시 실행에서 깨지기 쉬운 부분은 여기서 원자적으로 처리한다:
        - 버전/이터레이션 번호: UPDATE ... SET seq = seq + 1 (행 잠금) 후 읽기
        - 배포 단일 작성자: lease_owner / lease_expires_at 조건부 UPDATE (CAS)
        - 브로커 주문 미러 / 일별 지표: 자연키 기준 upsert

[ 호출하는 곳 ]
    - tuning/iteration_engine.py, tuning/tuning_job.py
    - backtest/executor.py
    - execution/execution_loop.py, execution/deployment_service.py
    - versions/version_service.py
"""

import json
from datetime import date, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from strategy_lab.core.broker_api import BrokerOrder
from strategy_lab.storage.models import (
    Dataset,
    DeploymentStatus,
    ExperimentGroup,
    Iteration,
    PaperDailyMetrics,
    PaperDeployment,
    PaperOrder,
    PositionSnapshot,
    Run,
    RunMetrics,
    RunStatus,
    RunnerLog,
    Strategy,
    StrategyTemplate,
    StrategyVersion,
    TuningJob,
    TuningTrial,
    utc_now,
)


class Repository:
    """SQLAlchemy 세션 래퍼."""

    def __init__(self, session: Session):
        self.session = session

    # ─── 트랜잭션 ───────────────────────────────────────────────────────────

    def add(self, obj: Any) -> Any:
        self.session.add(obj)
        return obj

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def refresh(self, obj: Any) -> None:
        self.session.refresh(obj)

    # ─── 단건 조회 ──────────────────────────────────────────────────────────

    def get_template(self, template_id: str) -> Optional[StrategyTemplate]:
        return self.session.get(StrategyTemplate, template_id)

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        return self.session.get(Strategy, strategy_id)

    def get_version(self, version_id: str) -> Optional[StrategyVersion]:
        return self.session.get(StrategyVersion, version_id)

    def get_group(self, group_id: str) -> Optional[ExperimentGroup]:
        return self.session.get(ExperimentGroup, group_id)

    def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        return self.session.get(Dataset, dataset_id)

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.session.get(Run, run_id)

    def get_deployment(self, deployment_id: str) -> Optional[PaperDeployment]:
        return self.session.get(PaperDeployment, deployment_id)

    def get_tuning_job(self, job_id: str) -> Optional[TuningJob]:
        return self.session.get(TuningJob, job_id)

    # ─── 템플릿 ─────────────────────────────────────────────────────────────

    def upsert_template(
        self,
        template_id: str,
        name: str,
        param_schema: dict[str, Any],
        description: str = "",
    ) -> StrategyTemplate:
        template = self.get_template(template_id)
        if template is None:
            template = StrategyTemplate(id=template_id)
            self.session.add(template)
        template.name = name
        template.description = description
        template.param_schema = json.dumps(param_schema)
        template.is_active = True
        return template

    def sync_registered_templates(self) -> list[str]:
        """strategies 레지스트리의 템플릿을 strategy_templates 테이블에 반영."""
        from strategy_lab.strategies import TEMPLATE_REGISTRY

        for template in TEMPLATE_REGISTRY.values():
            self.upsert_template(
                template.template_id, template.name, template.param_schema, template.description
            )
        self.session.flush()
        return sorted(TEMPLATE_REGISTRY.keys())

    # ─── 원자적 번호 발급 ───────────────────────────────────────────────────

    def next_version_number(self, strategy_id: str) -> int:
        """봇의 다음 version_number. 같은 트랜잭션 안에서 증가 후 읽는다."""
        self.session.flush()
        self.session.execute(
            update(Strategy)
            .where(Strategy.id == strategy_id)
            .values(version_seq=Strategy.version_seq + 1)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(
            select(Strategy.version_seq).where(Strategy.id == strategy_id)
        ).scalar_one()

    def next_iteration_number(self, group_id: str) -> int:
        """그룹의 다음 iteration_number. 호출 간에도 단조 증가."""
        self.session.flush()
        self.session.execute(
            update(ExperimentGroup)
            .where(ExperimentGroup.id == group_id)
            .values(iteration_seq=ExperimentGroup.iteration_seq + 1)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(
            select(ExperimentGroup.iteration_seq).where(ExperimentGroup.id == group_id)
        ).scalar_one()

    # ─── 버전 / 챔피언 ──────────────────────────────────────────────────────

    def group_versions(self, group_id: str) -> list[StrategyVersion]:
        return list(self.session.execute(
            select(StrategyVersion)
            .where(StrategyVersion.experiment_group_id == group_id)
            .order_by(StrategyVersion.created_at, StrategyVersion.version_number)
        ).scalars())

    def find_group_champion(self, group: ExperimentGroup) -> Optional[StrategyVersion]:
        """챔피언 포인터 → is_champion 플래그 → 가장 최근 버전 순으로 찾는다."""
        if group.champion_version_id:
            version = self.get_version(group.champion_version_id)
            if version is not None:
                return version

        versions = self.group_versions(group.id)
        for version in versions:
            if version.is_champion:
                return version
        return versions[-1] if versions else None

    def set_group_champion(self, group: ExperimentGroup, champion: StrategyVersion) -> None:
        """그룹 내 챔피언을 하나로 유지하며 교체."""
        for version in self.group_versions(group.id):
            if version.id != champion.id and version.is_champion:
                version.is_champion = False
        champion.is_champion = True
        group.champion_version_id = champion.id

    def versions_by_strategy(self, strategy_id: str) -> list[StrategyVersion]:
        return list(self.session.execute(
            select(StrategyVersion)
            .where(StrategyVersion.strategy_id == strategy_id)
            .order_by(StrategyVersion.version_number)
        ).scalars())

    # ─── 런 ─────────────────────────────────────────────────────────────────

    def completed_runs(self, version_id: str, run_types: Iterable[str] = ("backtest",)) -> list[Run]:
        return list(self.session.execute(
            select(Run)
            .where(Run.strategy_version_id == version_id)
            .where(Run.status == RunStatus.DONE)
            .where(Run.run_type.in_(list(run_types)))
            .order_by(Run.created_at)
        ).scalars())

    def completed_run_metrics(self, version_id: str, run_type: str = "backtest") -> list[RunMetrics]:
        return list(self.session.execute(
            select(RunMetrics)
            .join(Run, RunMetrics.run_id == Run.id)
            .where(Run.strategy_version_id == version_id)
            .where(Run.status == RunStatus.DONE)
            .where(Run.run_type == run_type)
        ).scalars())

    # ─── 이터레이션 / 튜닝 ──────────────────────────────────────────────────

    def list_iterations(self, group_id: str) -> list[Iteration]:
        return list(self.session.execute(
            select(Iteration)
            .where(Iteration.experiment_group_id == group_id)
            .order_by(Iteration.iteration_number)
        ).scalars())

    def list_trials(self, job_id: str) -> list[TuningTrial]:
        return list(self.session.execute(
            select(TuningTrial).where(TuningTrial.job_id == job_id).order_by(TuningTrial.trial_number)
        ).scalars())

    # ─── 배포 ───────────────────────────────────────────────────────────────

    def list_running_deployments(self) -> list[PaperDeployment]:
        return list(self.session.execute(
            select(PaperDeployment)
            .where(PaperDeployment.status == DeploymentStatus.RUNNING)
            .order_by(PaperDeployment.started_at)
        ).scalars())

    def acquire_deployment_lease(self, deployment_id: str, owner: str, ttl_seconds: int) -> bool:
        """배포 처리 임대 획득 (compare-and-swap). 만료됐거나 비어 있거나 내 것일 때만 성공."""
        now = utc_now()
        result = self.session.execute(
            update(PaperDeployment)
            .where(PaperDeployment.id == deployment_id)
            .where(or_(
                PaperDeployment.lease_expires_at.is_(None),
                PaperDeployment.lease_expires_at < now,
                PaperDeployment.lease_owner == owner,
            ))
            .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def release_deployment_lease(self, deployment_id: str, owner: str) -> None:
        self.session.execute(
            update(PaperDeployment)
            .where(PaperDeployment.id == deployment_id)
            .where(PaperDeployment.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def upsert_order(self, deployment_id: str, order: BrokerOrder) -> PaperOrder:
        """broker_order_id 기준 주문 미러 upsert."""
        row = self.session.execute(
            select(PaperOrder).where(PaperOrder.broker_order_id == order.order_id)
        ).scalar_one_or_none()
        if row is None:
            row = PaperOrder(deployment_id=deployment_id, broker_order_id=order.order_id)
            self.session.add(row)

        row.symbol = order.symbol
        row.side = order.side
        row.qty = int(order.qty)
        row.order_type = order.order_type
        row.status = order.status
        row.submitted_at = order.submitted_at
        row.filled_at = order.filled_at
        row.filled_qty = int(order.filled_qty or 0)
        row.filled_price = order.filled_avg_price
        row.raw_json = dict(order.raw)
        return row

    def list_orders(self, deployment_id: str) -> list[PaperOrder]:
        return list(self.session.execute(
            select(PaperOrder).where(PaperOrder.deployment_id == deployment_id)
        ).scalars())

    def add_snapshot(
        self,
        deployment_id: str,
        equity: float,
        cash: float,
        positions: list[dict[str, Any]] | None = None,
    ) -> PositionSnapshot:
        snapshot = PositionSnapshot(
            deployment_id=deployment_id,
            ts=utc_now(),
            equity=float(equity),
            cash=float(cash),
            positions_json=list(positions or []),
        )
        self.session.add(snapshot)
        return snapshot

    def list_snapshots(self, deployment_id: str) -> list[PositionSnapshot]:
        return list(self.session.execute(
            select(PositionSnapshot)
            .where(PositionSnapshot.deployment_id == deployment_id)
            .order_by(PositionSnapshot.ts, PositionSnapshot.id)
        ).scalars())

    def upsert_daily_metrics(
        self,
        deployment_id: str,
        day: date,
        equity: float,
        trades_count: int,
        default_start_equity: float,
    ) -> PaperDailyMetrics:
        """(deployment, date) 기준 일별 지표 upsert.

        시작 자산은 전날 종료 자산, 없으면 배포 시작 자산.
        낙폭은 당일 고점 대비 비율.
        """
        row = self.session.execute(
            select(PaperDailyMetrics)
            .where(PaperDailyMetrics.deployment_id == deployment_id)
            .where(PaperDailyMetrics.date == day)
        ).scalar_one_or_none()

        if row is None:
            previous = self.session.execute(
                select(PaperDailyMetrics)
                .where(PaperDailyMetrics.deployment_id == deployment_id)
                .where(PaperDailyMetrics.date < day)
                .order_by(PaperDailyMetrics.date.desc())
                .limit(1)
            ).scalar_one_or_none()
            start_equity = previous.equity_end if previous is not None else default_start_equity
            row = PaperDailyMetrics(
                deployment_id=deployment_id,
                date=day,
                equity_start=start_equity,
                peak_equity=max(start_equity, equity),
            )
            self.session.add(row)

        row.peak_equity = max(row.peak_equity or 0.0, equity)
        row.equity_end = equity
        row.pnl = equity - (row.equity_start or 0.0)
        row.drawdown = (row.peak_equity - equity) / row.peak_equity if row.peak_equity > 0 else 0.0
        row.trades_count = int(trades_count)
        return row

    def list_daily_metrics(self, deployment_id: str) -> list[PaperDailyMetrics]:
        return list(self.session.execute(
            select(PaperDailyMetrics)
            .where(PaperDailyMetrics.deployment_id == deployment_id)
            .order_by(PaperDailyMetrics.date)
        ).scalars())

    def add_runner_log(
        self,
        deployment_id: str,
        log_type: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> RunnerLog:
        log = RunnerLog(
            deployment_id=deployment_id,
            ts=utc_now(),
            log_type=log_type,
            message=message,
            data_json=dict(data or {}),
        )
        self.session.add(log)
        return log

    def list_runner_logs(self, deployment_id: str, log_type: Optional[str] = None) -> list[RunnerLog]:
        stmt = select(RunnerLog).where(RunnerLog.deployment_id == deployment_id)
        if log_type:
            stmt = stmt.where(RunnerLog.log_type == log_type)
        return list(self.session.execute(stmt.order_by(RunnerLog.id)).scalars())

    # ─── 리스크 한도 판단용 집계 ─────────────────────────────────────────────

    def peak_equity(self, deployment_id: str) -> Optional[float]:
        """스냅샷 기준 배포 기간 최고 자산."""
        return self.session.execute(
            select(func.max(PositionSnapshot.equity)).where(PositionSnapshot.deployment_id == deployment_id)
        ).scalar_one_or_none()

    def loss_streak(self, deployment_id: str, trade_date: Optional[str] = None) -> int:
        """최근 청산부터 거꾸로 센 연속 손실 횟수. trade_date가 주어지면 그 날짜 청산만 센다."""
        streak = 0
        for log in reversed(self.list_runner_logs(deployment_id, "order")):
            data = log.data_json or {}
            if "pnl" not in data:
                continue
            if trade_date is not None and data.get("trade_date") != trade_date:
                break
            if float(data["pnl"]) >= 0:
                break
            streak += 1
        return streak
