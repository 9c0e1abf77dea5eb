"""
상태 저장소 ORM 모델 (SQLAlchemy).

[ 역할 ]
    봇/버전/런/실험 그룹/이터레이션/튜닝 잡/페이퍼 배포의 영속 상태 정의.
    모든 호출은 상태 없이 실행되고, 필요한 상태는 전부 이 테이블들에 남는다.

[ 테이블 구성 ]
    strategy_templates    - 템플릿 ID + 파라미터 스키마(JSON)
    strategies            - 봇. version_seq로 버전 번호를 원자적으로 발급
    strategy_versions     - 파라미터/리스크 한도 불변 스냅샷 (content_hash)
    datasets              - 백테스트 데이터 구간 (symbol, timeframe, 기간)
    runs / run_metrics / trades - 백테스트 실행과 결과
    experiment_groups     - 챔피언 포인터, 목적함수, iteration_seq
    iterations            - 반복 루프 감사 로그 (append-only)
    tuning_jobs / tuning_trials - 구간 분할 튜닝 잡
    paper_deployments     - 실행 루프 상태 + 단일 작성자 임대(lease)
    paper_orders / position_snapshots / paper_daily_metrics / runner_logs

[ 호출하는 곳 ]
    - storage/repository.py (조회/갱신 헬퍼)
    - storage/database.py::init_db() (테이블 생성)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """UTC 기준 naive datetime. DB 저장값과 비교할 때 이 형식을 쓴다."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ─── 버전 상태 상수 ─────────────────────────────────────────────────────────

class VersionStatus:
    DRAFT = "draft"
    BACKTESTED = "backtested"
    APPROVED_PAPER = "approved_paper"
    APPROVED_LIVE = "approved_live"
    REJECTED = "rejected"


class Lifecycle:
    DRAFT = "DRAFT"
    BACKTEST_WINNER = "BACKTEST_WINNER"
    PAPER_RUNNING = "PAPER_RUNNING"
    LIVE_READY = "LIVE_READY"
    REJECTED = "REJECTED"


class RunStatus:
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class DeploymentStatus:
    RUNNING = "running"
    EVALUATING = "evaluating"
    STOPPED = "stopped"


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"


# ─── 템플릿 / 봇 / 버전 ─────────────────────────────────────────────────────

class StrategyTemplate(Base):
    __tablename__ = "strategy_templates"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    param_schema = Column(Text, nullable=False, comment="JSON: {params: [...]}")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class Strategy(Base):
    """봇. 하나의 템플릿에 묶인 버전들의 소유자."""
    __tablename__ = "strategies"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    template_id = Column(String(64), ForeignKey("strategy_templates.id"), nullable=False)
    version_seq = Column(Integer, default=0, nullable=False, comment="마지막으로 발급한 version_number")
    archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    versions = relationship("StrategyVersion", back_populates="strategy")


class StrategyVersion(Base):
    """불변 파라미터 스냅샷. 생성 후에는 status / lifecycle_status / is_champion만 바뀐다."""
    __tablename__ = "strategy_versions"
    __table_args__ = (
        UniqueConstraint("strategy_id", "version_number", name="uq_version_number"),
        Index("idx_version_group", "experiment_group_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    strategy_id = Column(String(36), ForeignKey("strategies.id"), nullable=False)
    experiment_group_id = Column(String(36), ForeignKey("experiment_groups.id"), nullable=True)
    version_number = Column(Integer, nullable=False)
    params_json = Column(JSON, nullable=False, default=dict)
    risk_limits_json = Column(JSON, nullable=False, default=dict)
    params_hash = Column(String(64), nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=VersionStatus.DRAFT)
    lifecycle_status = Column(String(20), nullable=False, default=Lifecycle.DRAFT)
    is_champion = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, default="")
    created_at = Column(DateTime, default=utc_now, nullable=False)

    strategy = relationship("Strategy", back_populates="versions")

    @property
    def params(self) -> dict:
        return dict(self.params_json or {})

    @property
    def risk_limits(self) -> dict:
        return dict(self.risk_limits_json or {})


# ─── 데이터셋 / 런 ──────────────────────────────────────────────────────────

class Dataset(Base):
    __tablename__ = "datasets"

    id = Column(String(36), primary_key=True, default=new_id)
    symbol = Column(String(20), nullable=False)
    timeframe = Column(String(10), nullable=False, default="5m")
    start_ts = Column(DateTime, nullable=False)
    end_ts = Column(DateTime, nullable=False)
    session = Column(String(10), default="RTH")
    source = Column(String(20), default="clickhouse")
    bar_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class Run(Base):
    __tablename__ = "runs"
    __table_args__ = (Index("idx_run_version_status", "strategy_version_id", "status"),)

    id = Column(String(36), primary_key=True, default=new_id)
    strategy_version_id = Column(String(36), ForeignKey("strategy_versions.id"), nullable=False)
    dataset_id = Column(String(36), ForeignKey("datasets.id"), nullable=True)
    run_type = Column(String(20), nullable=False, default="backtest", comment="backtest/paper/shadow/live")
    status = Column(String(20), nullable=False, default=RunStatus.QUEUED)
    cost_model_json = Column(JSON, default=dict)
    error = Column(Text, nullable=True)
    start_ts = Column(DateTime, nullable=True)
    end_ts = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    metrics = relationship("RunMetrics", uselist=False, back_populates="run")


class RunMetrics(Base):
    __tablename__ = "run_metrics"

    id = Column(String(36), primary_key=True, default=new_id)
    run_id = Column(String(36), ForeignKey("runs.id"), nullable=False, unique=True)
    profit_factor = Column(Float, default=0.0)
    net_pnl_usd = Column(Float, default=0.0)
    gross_profit = Column(Float, default=0.0)
    gross_loss = Column(Float, default=0.0)
    max_drawdown = Column(Float, default=0.0, comment="고점 대비 비율 [0, 1]")
    trades_count = Column(Integer, default=0)
    win_rate = Column(Float, default=0.0, comment="[0, 1]")
    avg_trade = Column(Float, default=0.0)
    median_trade = Column(Float, default=0.0)
    fees_paid = Column(Float, default=0.0)
    slippage_est = Column(Float, default=0.0)
    max_consecutive_losses = Column(Integer, default=0)
    biggest_loss = Column(Float, default=0.0)
    sharpe_ratio = Column(Float, default=0.0)

    run = relationship("Run", back_populates="metrics")


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("runs.id"), nullable=False, index=True)
    ts_entry = Column(DateTime, nullable=False)
    ts_exit = Column(DateTime, nullable=False)
    side = Column(String(10), nullable=False)
    entry_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=False)
    qty = Column(Integer, nullable=False)
    pnl_usd = Column(Float, nullable=False)
    pnl_points = Column(Float, nullable=False)
    fees = Column(Float, default=0.0)
    slippage = Column(Float, default=0.0)
    reason_code = Column(String(30), default="")


# ─── 실험 그룹 / 이터레이션 ─────────────────────────────────────────────────

class ExperimentGroup(Base):
    __tablename__ = "experiment_groups"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    template_id = Column(String(64), ForeignKey("strategy_templates.id"), nullable=False)
    dataset_id = Column(String(36), ForeignKey("datasets.id"), nullable=True)
    timeframe = Column(String(10), default="5m")
    session = Column(String(10), default="RTH")
    objective_config = Column(JSON, default=dict)
    champion_version_id = Column(String(36), nullable=True)
    iteration_seq = Column(Integer, default=0, nullable=False, comment="마지막으로 발급한 iteration_number")
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class Iteration(Base):
    """반복 루프의 트라이얼 1건. 한 번 쓰면 수정하지 않는다."""
    __tablename__ = "iterations"
    __table_args__ = (
        UniqueConstraint("experiment_group_id", "iteration_number", name="uq_iteration_number"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    experiment_group_id = Column(String(36), ForeignKey("experiment_groups.id"), nullable=False)
    parent_version_id = Column(String(36), ForeignKey("strategy_versions.id"), nullable=False)
    child_version_id = Column(String(36), ForeignKey("strategy_versions.id"), nullable=False)
    iteration_number = Column(Integer, nullable=False)
    trigger_type = Column(String(20), nullable=False, default="manual")
    param_diff = Column(JSON, default=dict)
    metric_before = Column(JSON, default=dict)
    metric_after = Column(JSON, default=dict)
    gate_results = Column(JSON, default=dict)
    score_before = Column(Float, nullable=True)
    score_after = Column(Float, nullable=True)
    accepted = Column(Boolean, nullable=False, default=False)
    reject_reason = Column(Text, nullable=True)
    rationale = Column(Text, default="")
    created_at = Column(DateTime, default=utc_now, nullable=False)


# ─── 튜닝 잡 ────────────────────────────────────────────────────────────────

class TuningJob(Base):
    __tablename__ = "tuning_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    strategy_id = Column(String(36), ForeignKey("strategies.id"), nullable=False)
    base_version_id = Column(String(36), ForeignKey("strategy_versions.id"), nullable=False)
    champion_version_id = Column(String(36), nullable=False)
    dataset_id = Column(String(36), ForeignKey("datasets.id"), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING)
    instructions = Column(Text, default="")
    objective_config = Column(JSON, default=dict)
    constraints = Column(JSON, default=dict)
    mutation_bias = Column(JSON, default=dict)
    max_trials = Column(Integer, nullable=False, default=50)
    trials_completed = Column(Integer, nullable=False, default=0)
    train_pct = Column(Float, default=0.6)
    val_pct = Column(Float, default=0.2)
    test_pct = Column(Float, default=0.2)
    best_score = Column(Float, nullable=True)
    champion_test_score = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class TuningTrial(Base):
    __tablename__ = "tuning_trials"
    __table_args__ = (UniqueConstraint("job_id", "trial_number", name="uq_trial_number"),)

    id = Column(String(36), primary_key=True, default=new_id)
    job_id = Column(String(36), ForeignKey("tuning_jobs.id"), nullable=False)
    trial_number = Column(Integer, nullable=False)
    base_version_id = Column(String(36), nullable=False)
    candidate_version_id = Column(String(36), nullable=True)
    params_json = Column(JSON, default=dict)
    param_diff = Column(JSON, default=dict)
    train_metrics = Column(JSON, default=dict)
    val_metrics = Column(JSON, default=dict)
    test_metrics = Column(JSON, default=dict)
    train_score = Column(Float, nullable=True)
    val_score = Column(Float, nullable=True)
    test_score = Column(Float, nullable=True)
    accepted = Column(Boolean, nullable=False, default=False)
    reject_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


# ─── 페이퍼 배포 ────────────────────────────────────────────────────────────

class PaperDeployment(Base):
    __tablename__ = "paper_deployments"

    id = Column(String(36), primary_key=True, default=new_id)
    strategy_version_id = Column(String(36), ForeignKey("strategy_versions.id"), nullable=False)
    status = Column(String(20), nullable=False, default=DeploymentStatus.RUNNING)
    symbols = Column(JSON, default=list)
    timeframe = Column(String(10), default="5m")
    target_days = Column(Integer, default=5)
    config_json = Column(JSON, default=dict, comment="starting_equity, starting_cash")
    pass_criteria = Column(JSON, default=dict)

    halted = Column(Boolean, nullable=False, default=False)
    halt_reason = Column(Text, nullable=True)
    current_position = Column(JSON, nullable=True)
    daily_pnl = Column(Float, default=0.0)
    daily_trades = Column(Integer, default=0)
    trades_date = Column(Date, nullable=True, comment="daily_trades 기준일")
    last_signal_type = Column(String(20), nullable=True)
    last_signal_at = Column(DateTime, nullable=True)
    last_bar_price = Column(Float, nullable=True)
    last_bar_time = Column(DateTime, nullable=True)

    passed = Column(Boolean, nullable=True)
    result_summary = Column(JSON, nullable=True)
    reject_reason = Column(Text, nullable=True)

    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    started_at = Column(DateTime, default=utc_now, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    @property
    def starting_equity(self) -> float:
        return float((self.config_json or {}).get("starting_equity") or 0.0)


class PaperOrder(Base):
    """브로커 주문 미러. broker_order_id 기준 upsert."""
    __tablename__ = "paper_orders"

    id = Column(String(36), primary_key=True, default=new_id)
    deployment_id = Column(String(36), ForeignKey("paper_deployments.id"), nullable=False, index=True)
    broker_order_id = Column(String(64), nullable=False, unique=True)
    symbol = Column(String(20), nullable=False)
    side = Column(String(10), nullable=False)
    qty = Column(Integer, nullable=False)
    order_type = Column(String(20), default="market")
    status = Column(String(30), nullable=False)
    submitted_at = Column(String(40), nullable=True)
    filled_at = Column(String(40), nullable=True)
    filled_qty = Column(Integer, default=0)
    filled_price = Column(Float, nullable=True)
    raw_json = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class PositionSnapshot(Base):
    __tablename__ = "position_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(String(36), ForeignKey("paper_deployments.id"), nullable=False, index=True)
    ts = Column(DateTime, default=utc_now, nullable=False)
    equity = Column(Float, nullable=False)
    cash = Column(Float, nullable=False)
    positions_json = Column(JSON, default=list)


class PaperDailyMetrics(Base):
    __tablename__ = "paper_daily_metrics"
    __table_args__ = (UniqueConstraint("deployment_id", "date", name="uq_daily_metrics"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(String(36), ForeignKey("paper_deployments.id"), nullable=False)
    date = Column(Date, nullable=False)
    pnl = Column(Float, default=0.0)
    drawdown = Column(Float, default=0.0)
    trades_count = Column(Integer, default=0)
    equity_start = Column(Float, default=0.0)
    equity_end = Column(Float, default=0.0)
    peak_equity = Column(Float, default=0.0)


class RunnerLog(Base):
    """실행 루프의 상태 전이 기록. data_json으로 판단 근거를 재구성할 수 있다."""
    __tablename__ = "runner_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(String(36), ForeignKey("paper_deployments.id"), nullable=False, index=True)
    ts = Column(DateTime, default=utc_now, nullable=False)
    log_type = Column(String(20), nullable=False, comment="signal/market/order/risk/error")
    message = Column(Text, nullable=False)
    data_json = Column(JSON, default=dict)
