"""
페이퍼 배포 생명주기 (시작 / 중지 / 평가 / 정지 해제).

[ 상태 전이 ]
    버전 lifecycle:  BACKTEST_WINNER → (start) → PAPER_RUNNING
                     PAPER_RUNNING   → (stop)  → BACKTEST_WINNER
                     PAPER_RUNNING   → (evaluate) → LIVE_READY | REJECTED
    배포 status:     running → evaluating (실행 루프가 target_days 경과 시) → stopped

[ 평가 기준 (pass_criteria) ]
    min_trades     - 일별 거래수 합계 하한
    max_dd         - 스냅샷 자산 곡선의 최대 낙폭 (비율)
    max_daily_loss - 하루 손실 한도 ($). 위반한 날이 하나라도 있으면 실패
    profitable     - 총 손익 > 0

[ 호출하는 곳 ]
    - run_paper.py start / stop / evaluate / clear-halt
"""

import logging
from typing import Any, Optional

from strategy_lab.core.broker_api import BrokerAPI
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.storage.models import DeploymentStatus, Lifecycle, PaperDeployment, utc_now
from strategy_lab.storage.repository import Repository

logger = logging.getLogger("strategy_lab.deployment")

DEFAULT_PASS_CRITERIA = {
    "max_dd": 0.1,
    "max_daily_loss": 500,
    "min_trades": 5,
}
DEFAULT_SYMBOLS = ["QQQ"]


def _require_deployment(repo: Repository, deployment_id: str) -> PaperDeployment:
    deployment = repo.get_deployment(deployment_id)
    if deployment is None:
        raise ConfigurationError(f"배포를 찾을 수 없습니다: {deployment_id}")
    return deployment


def start_deployment(
    repo: Repository,
    broker: BrokerAPI,
    version_id: str,
    symbols: Optional[list[str]] = None,
    timeframe: str = "5m",
    target_days: int = 5,
    pass_criteria: Optional[dict[str, Any]] = None,
) -> PaperDeployment:
    """BACKTEST_WINNER 버전을 페이퍼 배포로 시작. 시작 자산을 기록하고 첫 스냅샷을 남긴다."""
    version = repo.get_version(version_id)
    if version is None:
        raise ConfigurationError(f"버전을 찾을 수 없습니다: {version_id}")
    if version.lifecycle_status != Lifecycle.BACKTEST_WINNER:
        raise ConfigurationError(
            f"BACKTEST_WINNER 버전만 배포할 수 있습니다 (현재: {version.lifecycle_status})"
        )

    account = broker.get_account()
    deployment = PaperDeployment(
        strategy_version_id=version.id,
        status=DeploymentStatus.RUNNING,
        symbols=list(symbols or DEFAULT_SYMBOLS),
        timeframe=timeframe,
        target_days=int(target_days),
        config_json={"starting_equity": account.equity, "starting_cash": account.cash},
        pass_criteria={**DEFAULT_PASS_CRITERIA, **(pass_criteria or {})},
        started_at=utc_now(),
    )
    repo.add(deployment)
    repo.flush()

    repo.add_snapshot(deployment.id, account.equity, account.cash, [p.to_dict() for p in broker.get_positions()])
    repo.add_runner_log(deployment.id, "market", "deployment started", {
        "version_id": version.id, "starting_equity": account.equity, "symbols": deployment.symbols,
    })
    version.lifecycle_status = Lifecycle.PAPER_RUNNING
    repo.commit()
    logger.info(f"배포 시작: {deployment.id} (version={version.id}, equity={account.equity:,.2f}$)")
    return deployment


def stop_deployment(
    repo: Repository,
    broker: BrokerAPI,
    deployment_id: str,
    reason: str = "Manually stopped",
) -> PaperDeployment:
    """미체결 주문 전체 취소 후 중지. 버전은 BACKTEST_WINNER로 되돌린다.

    보유 포지션은 시장가로 청산하지 않고 기록에서만 지운다 (브로커 잔고는 운영자가 정리).
    """
    deployment = _require_deployment(repo, deployment_id)
    broker.cancel_all_orders()

    if deployment.current_position:
        repo.add_runner_log(deployment.id, "order", "position abandoned on stop", {
            "position": dict(deployment.current_position), "reason": reason,
        })
        logger.warning(f"[{deployment.id}] 중지로 포지션 기록 삭제: {deployment.current_position}")
        deployment.current_position = None

    deployment.status = DeploymentStatus.STOPPED
    deployment.reject_reason = reason
    deployment.ended_at = utc_now()
    version = repo.get_version(deployment.strategy_version_id)
    if version is not None:
        version.lifecycle_status = Lifecycle.BACKTEST_WINNER
    repo.add_runner_log(deployment.id, "market", f"deployment stopped: {reason}")
    repo.commit()
    logger.info(f"배포 중지: {deployment.id} ({reason})")
    return deployment


def clear_halt(repo: Repository, deployment_id: str, operator: str = "operator") -> PaperDeployment:
    """운영자 수동 조치로 일일 손실 정지 해제."""
    deployment = _require_deployment(repo, deployment_id)
    if not deployment.halted:
        return deployment
    previous = deployment.halt_reason
    deployment.halted = False
    deployment.halt_reason = None
    repo.add_runner_log(deployment.id, "risk", "halt cleared", {"operator": operator, "previous_reason": previous})
    repo.commit()
    logger.info(f"정지 해제: {deployment.id} by {operator}")
    return deployment


def evaluate_deployment(repo: Repository, deployment_id: str) -> dict[str, Any]:
    """일별 지표 + 스냅샷으로 합격 여부 판정. 버전은 LIVE_READY 또는 REJECTED."""
    deployment = _require_deployment(repo, deployment_id)
    criteria = {**DEFAULT_PASS_CRITERIA, **(deployment.pass_criteria or {})}
    daily = repo.list_daily_metrics(deployment.id)
    snapshots = repo.list_snapshots(deployment.id)

    total_trades = sum(int(d.trades_count or 0) for d in daily)
    total_pnl = sum(float(d.pnl or 0) for d in daily)

    peak = 0.0
    max_drawdown = 0.0
    for snap in snapshots:
        peak = max(peak, snap.equity)
        if peak > 0:
            max_drawdown = max(max_drawdown, (peak - snap.equity) / peak)

    max_daily_loss = float(criteria["max_daily_loss"])
    breaches = [d for d in daily if float(d.pnl or 0) < -max_daily_loss]

    checks = {
        "min_trades": {
            "required": criteria["min_trades"], "actual": total_trades,
            "passed": total_trades >= int(criteria["min_trades"]),
        },
        "max_drawdown": {
            "required": criteria["max_dd"], "actual": max_drawdown,
            "passed": max_drawdown <= float(criteria["max_dd"]),
        },
        "daily_loss_limit": {
            "required": max_daily_loss, "breaches": len(breaches),
            "passed": not breaches,
        },
        "profitable": {
            "required": True, "actual": total_pnl > 0,
            "passed": total_pnl > 0,
        },
    }
    passed = all(c["passed"] for c in checks.values())
    failed = [name for name, c in checks.items() if not c["passed"]]
    summary = {
        "total_trades": total_trades,
        "total_pnl": total_pnl,
        "max_drawdown": max_drawdown,
        "days_with_loss_breach": len(breaches),
        "checks": checks,
    }

    deployment.status = DeploymentStatus.STOPPED
    deployment.ended_at = utc_now()
    deployment.passed = passed
    deployment.result_summary = summary
    deployment.reject_reason = None if passed else f"Failed checks: {', '.join(failed)}"

    version = repo.get_version(deployment.strategy_version_id)
    if version is not None:
        version.lifecycle_status = Lifecycle.LIVE_READY if passed else Lifecycle.REJECTED
    repo.add_runner_log(
        deployment.id, "market", f"paper trading {'PASSED' if passed else 'FAILED'}", summary,
    )
    repo.commit()

    log = logger.info if passed else logger.warning
    log(f"배포 평가: {deployment.id} → {'PASSED' if passed else 'FAILED'} "
        f"(trades={total_trades}, pnl={total_pnl:,.2f}$, dd={max_drawdown:.3f})")
    return {
        "deployment_id": deployment.id,
        "passed": passed,
        "reject_reason": deployment.reject_reason,
        "evaluation": summary,
    }
