"""
전략 버전 관리 모듈.

[ 역할 ]
    - create_version(): 스키마 검증 → 버전 번호 발급 → 해시 계산 → 버전 행 생성
    - duplicate_version(): 기존 버전에서 변형(variant) N개 생성 (tweak_plan 순환 적용)
    - promote_version(): 승격 규칙 검사 후 status / lifecycle_status 변경

[ 승격 규칙 ]
    backtested      ← draft          : 거래수 ≥ 10
    approved_paper  ← backtested     : 거래수 ≥ 30, PF ≥ 1.0, 낙폭 ≤ 0.5
    approved_live   ← approved_paper : 거래수 ≥ 50, PF ≥ 1.2, 낙폭 ≤ 0.3, 페이퍼 통과 이력 필요

    PF는 거래수 가중 평균, 거래수는 합계, 낙폭은 최대값 (완료된 백테스트 런 기준).

[ 호출하는 곳 ]
    - tuning/iteration_engine.py (시드/도전자 버전 생성)
    - tuning/tuning_job.py (승인된 후보 버전 생성)
    - execution/deployment_service.py (lifecycle 전환)
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select

from strategy_lab.core.exceptions import ConfigurationError, PromotionError
from strategy_lab.core.trading_strategy import RiskLimits
from strategy_lab.storage.models import (
    Lifecycle,
    PaperDeployment,
    Strategy,
    StrategyVersion,
    VersionStatus,
)
from strategy_lab.storage.repository import Repository
from strategy_lab.tuning.schema import ParamSchema

logger = logging.getLogger("strategy_lab.versions")

STATUS_TO_LIFECYCLE = {
    VersionStatus.DRAFT: Lifecycle.DRAFT,
    VersionStatus.BACKTESTED: Lifecycle.BACKTEST_WINNER,
    VersionStatus.APPROVED_PAPER: Lifecycle.PAPER_RUNNING,
    VersionStatus.APPROVED_LIVE: Lifecycle.LIVE_READY,
    VersionStatus.REJECTED: Lifecycle.REJECTED,
}


@dataclass(frozen=True)
class PromotionRule:
    required_status: str
    min_trades: int
    min_profit_factor: Optional[float] = None
    max_drawdown: Optional[float] = None
    requires_paper: bool = False


PROMOTION_RULES = {
    VersionStatus.BACKTESTED: PromotionRule(VersionStatus.DRAFT, min_trades=10),
    VersionStatus.APPROVED_PAPER: PromotionRule(
        VersionStatus.BACKTESTED, min_trades=30, min_profit_factor=1.0, max_drawdown=0.5,
    ),
    VersionStatus.APPROVED_LIVE: PromotionRule(
        VersionStatus.APPROVED_PAPER, min_trades=50, min_profit_factor=1.2, max_drawdown=0.3,
        requires_paper=True,
    ),
}


# ─── 해시 ───────────────────────────────────────────────────────────────────

def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def params_hash(params: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(params).encode("utf-8")).hexdigest()


def content_hash(params: dict[str, Any], risk_limits: dict[str, Any]) -> str:
    """파라미터 + 리스크 한도의 SHA-256. 같은 내용이면 같은 해시."""
    payload = canonical_json({"params": params, "risk_limits": risk_limits})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ─── 버전 생성 ──────────────────────────────────────────────────────────────

def load_schema(repo: Repository, template_id: str) -> ParamSchema:
    """템플릿 행에서 파라미터 스키마 로드.

    Raises:
        ConfigurationError: 템플릿이 없거나 스키마가 잘못된 경우
    """
    template = repo.get_template(template_id)
    if template is None:
        raise ConfigurationError(f"템플릿을 찾을 수 없습니다: {template_id}")
    return ParamSchema.from_json(template.param_schema)


def create_version(
    repo: Repository,
    strategy: Strategy,
    params: dict[str, Any],
    risk_limits: dict[str, Any] | None = None,
    status: str = VersionStatus.DRAFT,
    experiment_group_id: Optional[str] = None,
    notes: str = "",
    schema: Optional[ParamSchema] = None,
) -> StrategyVersion:
    """새 버전 생성. 파라미터는 템플릿 스키마로 검증한다."""
    schema = schema or load_schema(repo, strategy.template_id)
    schema.validate(params)

    risk_limits = RiskLimits.from_dict(risk_limits).to_dict()
    version = StrategyVersion(
        strategy_id=strategy.id,
        experiment_group_id=experiment_group_id,
        version_number=repo.next_version_number(strategy.id),
        params_json=dict(params),
        risk_limits_json=risk_limits,
        params_hash=params_hash(params),
        content_hash=content_hash(params, risk_limits),
        status=status,
        lifecycle_status=STATUS_TO_LIFECYCLE.get(status, Lifecycle.DRAFT),
        notes=notes,
    )
    repo.add(version)
    repo.flush()
    logger.debug(f"버전 생성: {strategy.name} v{version.version_number} ({version.content_hash[:8]})")
    return version


def set_version_status(version: StrategyVersion, status: str) -> None:
    version.status = status
    version.lifecycle_status = STATUS_TO_LIFECYCLE.get(status, version.lifecycle_status)


def duplicate_version(
    repo: Repository,
    version_id: str,
    count: int,
    tweak_plan: list[dict[str, Any]] | None = None,
) -> list[StrategyVersion]:
    """버전 복제. tweak_plan = [{"param": key, "variations": [...]}, ...]

    i번째 변형은 각 param에 variations[i % len(variations)] 값을 넣는다.
    """
    if count < 1:
        raise ConfigurationError("count는 1 이상이어야 합니다.")
    source = repo.get_version(version_id)
    if source is None:
        raise ConfigurationError(f"버전을 찾을 수 없습니다: {version_id}")
    strategy = repo.get_strategy(source.strategy_id)
    schema = load_schema(repo, strategy.template_id)

    created = []
    for i in range(count):
        params = source.params
        for tweak in tweak_plan or []:
            variations = tweak.get("variations") or []
            if variations:
                params[tweak["param"]] = variations[i % len(variations)]
        created.append(create_version(
            repo, strategy, params, source.risk_limits,
            experiment_group_id=source.experiment_group_id,
            notes=f"duplicate of v{source.version_number} #{i + 1}",
            schema=schema,
        ))

    logger.info(f"버전 복제: v{source.version_number} → {len(created)}개 변형")
    return created


# ─── 승격 ───────────────────────────────────────────────────────────────────

def promote_version(repo: Repository, version_id: str, target_status: str) -> StrategyVersion:
    """승격 규칙을 검사하고 status / lifecycle_status를 변경.

    Raises:
        ConfigurationError: 버전이 없거나 알 수 없는 목표 상태
        PromotionError: 규칙 위반 (violations에 모든 사유)
    """
    version = repo.get_version(version_id)
    if version is None:
        raise ConfigurationError(f"버전을 찾을 수 없습니다: {version_id}")
    rule = PROMOTION_RULES.get(target_status)
    if rule is None:
        raise ConfigurationError(f"승격할 수 없는 상태: {target_status}")

    violations = []
    if version.status != rule.required_status:
        violations.append(f"현재 상태 {version.status} (필요: {rule.required_status})")

    runs = repo.completed_runs(version.id, ("backtest",))
    metrics = [r.metrics for r in runs if r.metrics is not None]
    total_trades = sum(int(m.trades_count or 0) for m in metrics)
    weighted_pf = (
        sum(float(m.profit_factor or 0) * int(m.trades_count or 0) for m in metrics) / total_trades
        if total_trades > 0 else 0.0
    )
    worst_dd = max((float(m.max_drawdown or 0) for m in metrics), default=0.0)

    if total_trades < rule.min_trades:
        violations.append(f"거래수 {total_trades} < {rule.min_trades}")
    if rule.min_profit_factor is not None and weighted_pf < rule.min_profit_factor:
        violations.append(f"PF {weighted_pf:.2f} < {rule.min_profit_factor}")
    if rule.max_drawdown is not None and worst_dd > rule.max_drawdown:
        violations.append(f"낙폭 {worst_dd:.3f} > {rule.max_drawdown}")
    if rule.requires_paper and not _has_paper_history(repo, version.id):
        violations.append("페이퍼/섀도 실행 이력 없음")

    if violations:
        raise PromotionError(f"승격 실패 ({target_status}): " + "; ".join(violations), violations)

    set_version_status(version, target_status)
    logger.info(f"버전 승격: {version.id} → {target_status} (trades={total_trades}, pf={weighted_pf:.2f})")
    return version


def _has_paper_history(repo: Repository, version_id: str) -> bool:
    if repo.completed_runs(version_id, ("paper", "shadow")):
        return True
    passed = repo.session.execute(
        select(PaperDeployment.id)
        .where(PaperDeployment.strategy_version_id == version_id)
        .where(PaperDeployment.passed.is_(True))
        .limit(1)
    ).first()
    return passed is not None
