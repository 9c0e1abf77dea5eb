"""
페이퍼 배포 실행 루프 (시그널 → 주문 상태 머신).

[ 역할 ]
    스케줄러가 주기적으로 호출하는 무상태 1회 실행(tick).
    호출 사이에 메모리 상태를 들고 있지 않고, 필요한 상태는 전부 PaperDeployment 행에 남긴다.

[ tick 흐름 ] (status=running 인 배포 1건)
    0. 임대(lease) 획득. 다른 워커가 잡고 있으면 건너뜀
    1. 장 시간 확인
         닫힘 → runner_log만 남기고 종료 (강제 테스트 주문 요청이면 명시적 에러)
    2. 계좌 조회, 일일 카운터 리셋
    3. halted 상태 → 스냅샷만 남기고 종료
       equity - starting_equity < -max_daily_loss → halted=True (1회만 기록) 후 종료
    4. 최근 봉 조회 (min_bars 미만이면 hold 처리)
    5. 시그널 생성 → RiskManager 판단 → OPEN / CLOSE 주문
       주문 응답을 받으면 포지션 + 주문 미러를 즉시 commit (이후 단계가 실패해도 유지)
    6. 브로커 주문 동기화 (broker_order_id 기준 upsert)
    7. 스냅샷, 일별 지표, target_days 경과 시 evaluating 전환
    8. commit, 임대 해제

[ 오류 격리 ]
    여러 배포를 한 번에 돌릴 때 한 배포의 실패가 나머지를 막지 않는다.
    실패는 runner_logs(error)와 결과 목록에 기록된다.

[ 호출하는 곳 ]
    - run_paper.py tick (진입점)
"""

import logging
import socket
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pandas as pd

from strategy_lab.core.broker_api import AccountInfo, BrokerAPI, OrderSide, OrderType
from strategy_lab.core.data_provider import DataProvider
from strategy_lab.core.exceptions import ConfigurationError, StrategyLabError
from strategy_lab.core.trading_strategy import (
    Position,
    PositionSide,
    RiskLimits,
    Signal,
    SignalType,
)
from strategy_lab.execution.market_hours import MARKET_TZ, is_market_open
from strategy_lab.execution.risk_manager import RiskAction, RiskDecision, RiskManager, stop_and_target
from strategy_lab.storage.models import DeploymentStatus, PaperDeployment
from strategy_lab.storage.repository import Repository
from strategy_lab.strategies import get_template
from strategy_lab.tuning.schema import ParamSchema

logger = logging.getLogger("strategy_lab.execution")

DEFAULT_SYMBOL = "QQQ"
FORCED_TRADE_REASON = "forced test trade"


@dataclass
class ExecutionResult:
    """배포 1건의 tick 결과."""
    deployment_id: str
    success: bool = True
    signal: Optional[str] = None
    signal_reason: str = ""
    current_position: Optional[dict[str, Any]] = None
    order_placed: bool = False
    equity: Optional[float] = None
    daily_pnl: Optional[float] = None
    market_open: bool = False
    halted: bool = False
    skipped: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"deployment_id": self.deployment_id, "success": False, "error": self.error}
        return asdict(self)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ExecutionLoop:
    """배포 단위 실행 루프."""

    def __init__(
        self,
        repo: Repository,
        broker: BrokerAPI,
        data_provider: DataProvider,
        clock: Callable[[], datetime] = _utc_now,
        market_hours: Callable[[datetime], bool] = is_market_open,
        lease_owner: Optional[str] = None,
        lease_ttl_seconds: int = 120,
        min_bars: int = 20,
        bars_limit: int = 100,
        order_sync_limit: int = 50,
        buying_power_fraction: float = 0.9,
    ):
        self.repo = repo
        self.broker = broker
        self.data_provider = data_provider
        self.clock = clock
        self.market_hours = market_hours
        self.lease_owner = lease_owner or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self.lease_ttl_seconds = lease_ttl_seconds
        self.min_bars = min_bars
        self.bars_limit = bars_limit
        self.order_sync_limit = order_sync_limit
        self.buying_power_fraction = buying_power_fraction

    # ─── 진입점 ─────────────────────────────────────────────────────────────

    def run(self, deployment_id: Optional[str] = None, force_test_trade: bool = False) -> list[ExecutionResult]:
        """배포 1건(deployment_id) 또는 running 배포 전체 처리."""
        if deployment_id:
            ids = [deployment_id]
        else:
            ids = [d.id for d in self.repo.list_running_deployments()]
            logger.info(f"running 배포 {len(ids)}건 처리 시작")

        results = []
        for dep_id in ids:
            try:
                results.append(self.process_deployment(dep_id, force_test_trade))
            except StrategyLabError as e:
                results.append(self._record_failure(dep_id, e))
            except Exception as e:
                logger.exception(f"[{dep_id}] 예상치 못한 오류")
                results.append(self._record_failure(dep_id, e))
        return results

    def process_deployment(self, deployment_id: str, force_test_trade: bool = False) -> ExecutionResult:
        deployment = self.repo.get_deployment(deployment_id)
        if deployment is None:
            raise ConfigurationError(f"배포를 찾을 수 없습니다: {deployment_id}")
        if deployment.status != DeploymentStatus.RUNNING:
            return ExecutionResult(deployment_id, skipped=f"status={deployment.status}")

        if not self.repo.acquire_deployment_lease(deployment_id, self.lease_owner, self.lease_ttl_seconds):
            logger.info(f"[{deployment_id}] 다른 워커가 처리 중, 건너뜀")
            return ExecutionResult(deployment_id, skipped="lease held by another worker")

        try:
            result = self._tick(self.repo.get_deployment(deployment_id), force_test_trade)
            self.repo.commit()
            return result
        except Exception:
            self.repo.rollback()
            raise
        finally:
            self.repo.release_deployment_lease(deployment_id, self.lease_owner)

    def _record_failure(self, deployment_id: str, error: Exception) -> ExecutionResult:
        logger.error(f"[{deployment_id}] tick 실패: {error}")
        data = {"error_type": type(error).__name__}
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            data["status_code"] = status_code
            data["body"] = getattr(error, "body", "")[:2000]
        if self.repo.get_deployment(deployment_id) is not None:
            self.repo.add_runner_log(deployment_id, "error", str(error), data)
            self.repo.commit()
        return ExecutionResult(deployment_id, success=False, error=str(error))

    # ─── tick ───────────────────────────────────────────────────────────────

    def _tick(self, deployment: PaperDeployment, force_test_trade: bool) -> ExecutionResult:
        now = self.clock()
        result = ExecutionResult(deployment.id, current_position=deployment.current_position)

        result.market_open = self.market_hours(now)
        if not result.market_open:
            if force_test_trade:
                message = "Market is closed: test trade rejected"
                self.repo.add_runner_log(deployment.id, "market", message, {"now": now.isoformat()})
                result.success = False
                result.error = message
                return result
            result.skipped = "market closed"
            self.repo.add_runner_log(deployment.id, "market", "market closed, tick skipped", {"now": now.isoformat()})
            return result

        version = self.repo.get_version(deployment.strategy_version_id)
        if version is None:
            raise ConfigurationError(f"배포 {deployment.id}의 버전이 없습니다: {deployment.strategy_version_id}")
        strategy = self.repo.get_strategy(version.strategy_id)
        template = get_template(strategy.template_id)
        params = {**ParamSchema.from_dict(template.param_schema).defaults(), **version.params}
        risk = RiskManager(params, RiskLimits.from_dict(version.risk_limits), self.buying_power_fraction)

        account = self.broker.get_account()
        self._reset_daily_counters(deployment, now)
        starting_equity = deployment.starting_equity or account.equity
        deployment.daily_pnl = account.equity - starting_equity
        result.equity = account.equity
        result.daily_pnl = deployment.daily_pnl

        if deployment.halted:
            result.halted = True
            result.skipped = "halted"
            self._finish(deployment, account, now, result)
            return result

        if risk.daily_loss_breached(account.equity, starting_equity):
            self._halt(deployment, account, starting_equity, risk)
            result.halted = True
            self._finish(deployment, account, now, result)
            return result

        symbol = (deployment.symbols or [DEFAULT_SYMBOL])[0]
        bars = self.data_provider.get_recent_bars(symbol, deployment.timeframe or "5m", self.bars_limit)
        if len(bars) < self.min_bars:
            result.signal = SignalType.HOLD.value
            result.signal_reason = f"insufficient data: {len(bars)} bars < {self.min_bars}"
            logger.info(f"[{deployment.id}] {result.signal_reason}")
            self._finish(deployment, account, now, result)
            return result

        price = float(bars["close"].iloc[-1])
        deployment.last_bar_price = price
        deployment.last_bar_time = _naive_utc(pd.Timestamp(bars["ts"].iloc[-1]).to_pydatetime())

        position = Position.from_dict(deployment.current_position)
        signal = self._signal(template, bars, params, position, force_test_trade)
        deployment.last_signal_type = signal.signal_type.value
        deployment.last_signal_at = _naive_utc(now)
        result.signal = signal.signal_type.value
        result.signal_reason = signal.reason
        if signal.signal_type != SignalType.HOLD:
            self.repo.add_runner_log(deployment.id, "signal", signal.reason, {
                "signal": signal.signal_type.value, "price": price, "symbol": symbol, **signal.metadata,
            })

        if position is None and signal.signal_type.is_entry:
            max_entries = int(params.get("max_trades_per_day", 0) or 0)
            if max_entries and (deployment.daily_trades or 0) >= max_entries and not force_test_trade:
                signal = Signal.hold(f"max_trades_per_day reached ({deployment.daily_trades}/{max_entries})")
                result.signal_reason = signal.reason

        drawdown_usd, loss_streak = 0.0, 0
        if position is None and signal.signal_type.is_entry:
            peak = max(self.repo.peak_equity(deployment.id) or 0.0, starting_equity, account.equity)
            drawdown_usd = peak - account.equity
            loss_streak = self.repo.loss_streak(deployment.id, str(deployment.trades_date))

        decision = risk.decide(signal, position, price, bars, account.buying_power, drawdown_usd, loss_streak)
        if decision.action == RiskAction.OPEN:
            result.order_placed = self._open(deployment, symbol, decision, price, params, now)
        elif decision.action == RiskAction.CLOSE:
            result.order_placed = self._close(deployment, position, decision, price)
        elif signal.signal_type.is_entry:
            self.repo.add_runner_log(deployment.id, "risk", f"entry skipped: {decision.reason}", {
                "price": price, "buying_power": account.buying_power,
                "drawdown_usd": drawdown_usd, "loss_streak": loss_streak,
            })

        if result.order_placed:
            account = self.broker.get_account()
            result.equity = account.equity
            deployment.daily_pnl = account.equity - starting_equity
            result.daily_pnl = deployment.daily_pnl

        result.current_position = deployment.current_position
        self._finish(deployment, account, now, result)
        return result

    # ─── 단계별 ─────────────────────────────────────────────────────────────

    def _signal(self, template, bars, params, position: Optional[Position], force_test_trade: bool) -> Signal:
        if force_test_trade:
            if position is None:
                return Signal(SignalType.ENTRY_LONG, FORCED_TRADE_REASON)
            return Signal(SignalType.EXIT, FORCED_TRADE_REASON)
        return template.generate(bars, params, position)

    def _reset_daily_counters(self, deployment: PaperDeployment, now: datetime) -> None:
        today = now.astimezone(MARKET_TZ).date()
        if deployment.trades_date != today:
            deployment.trades_date = today
            deployment.daily_trades = 0

    def _halt(self, deployment: PaperDeployment, account: AccountInfo, starting_equity: float, risk: RiskManager) -> None:
        limit = float(risk.risk_limits.max_daily_loss_usd)
        reason = (
            f"Daily loss limit breached: {account.equity - starting_equity:,.2f} < -{limit:,.2f}"
        )
        deployment.halted = True
        deployment.halt_reason = reason
        self.repo.add_runner_log(deployment.id, "risk", reason, {
            "equity": account.equity,
            "starting_equity": starting_equity,
            "max_daily_loss_usd": limit,
            "cash": account.cash,
        })
        logger.warning(f"[{deployment.id}] 거래 정지: {reason}")

    def _open(
        self,
        deployment: PaperDeployment,
        symbol: str,
        decision: RiskDecision,
        price: float,
        params: dict[str, Any],
        now: datetime,
    ) -> bool:
        side = OrderSide.BUY if decision.side == PositionSide.LONG else OrderSide.SELL
        order = self.broker.submit_order(symbol, decision.qty, side, OrderType.MARKET)
        self.repo.upsert_order(deployment.id, order)

        log_data = {
            "order_id": order.order_id, "status": order.status, "side": side.value, "qty": decision.qty,
            "price": price, **decision.data,
        }
        if not order.succeeded:
            self.repo.add_runner_log(deployment.id, "order", f"entry order {order.status}", log_data)
            self.repo.commit()
            logger.warning(f"[{deployment.id}] 진입 주문 실패: {order.status}")
            return False

        entry_price = float(order.filled_avg_price or price)
        stop_loss, take_profit = stop_and_target(decision.side, entry_price, decision.data["atr"], params)
        position = Position(
            side=decision.side,
            entry_price=entry_price,
            entry_time=now.isoformat(),
            qty=decision.qty,
            stop_loss=stop_loss,
            take_profit=take_profit,
            symbol=symbol,
        )
        deployment.current_position = position.to_dict()
        deployment.daily_trades = (deployment.daily_trades or 0) + 1
        self.repo.add_runner_log(deployment.id, "order", f"opened {decision.side.value} {symbol} x{decision.qty}", {
            **log_data, "entry_price": entry_price, "stop_loss": stop_loss, "take_profit": take_profit,
        })
        # 체결된 주문은 이후 브로커 조회가 실패해도 되돌리지 않는다
        self.repo.commit()
        logger.info(
            f"[{deployment.id}] 진입: {decision.side.value} {symbol} x{decision.qty} @ {entry_price:.2f} "
            f"(SL {stop_loss:.2f} / TP {take_profit:.2f})"
        )
        return True

    def _close(self, deployment: PaperDeployment, position: Position, decision: RiskDecision, price: float) -> bool:
        side = OrderSide.SELL if position.is_long else OrderSide.BUY
        order = self.broker.submit_order(position.symbol, position.qty, side, OrderType.MARKET)
        self.repo.upsert_order(deployment.id, order)

        log_data = {
            "order_id": order.order_id, "status": order.status, "reason": decision.reason, "price": price,
            "entry_price": position.entry_price, "stop_loss": position.stop_loss,
            "take_profit": position.take_profit, "qty": position.qty,
        }
        if not order.succeeded:
            self.repo.add_runner_log(deployment.id, "order", f"exit order {order.status}", log_data)
            self.repo.commit()
            logger.warning(f"[{deployment.id}] 청산 주문 실패: {order.status}")
            return False

        exit_price = float(order.filled_avg_price or price)
        deployment.current_position = None
        self.repo.add_runner_log(deployment.id, "order", f"closed {position.side.value} {position.symbol} ({decision.reason})", {
            **log_data, "exit_price": exit_price, "pnl": position.unrealized_pnl(exit_price),
            "trade_date": str(deployment.trades_date),
        })
        self.repo.commit()
        logger.info(
            f"[{deployment.id}] 청산: {position.side.value} {position.symbol} x{position.qty} @ {exit_price:.2f} "
            f"({decision.reason}), pnl {position.unrealized_pnl(exit_price):,.2f}$"
        )
        return True

    def _finish(self, deployment: PaperDeployment, account: AccountInfo, now: datetime, result: ExecutionResult) -> None:
        """주문 동기화 + 스냅샷 + 일별 지표 + 평가 전환."""
        for order in self.broker.list_orders("all", self.order_sync_limit):
            self.repo.upsert_order(deployment.id, order)

        positions = [p.to_dict() for p in self.broker.get_positions()]
        self.repo.add_snapshot(deployment.id, account.equity, account.cash, positions)

        starting_equity = deployment.starting_equity or account.equity
        self.repo.upsert_daily_metrics(
            deployment.id, deployment.trades_date or now.astimezone(MARKET_TZ).date(),
            account.equity, deployment.daily_trades or 0, starting_equity,
        )

        started_at = deployment.started_at or _naive_utc(now)
        days_passed = (_naive_utc(now) - started_at).days
        if deployment.target_days and days_passed >= deployment.target_days:
            deployment.status = DeploymentStatus.EVALUATING
            self.repo.add_runner_log(deployment.id, "market", "target days reached, evaluating", {
                "days_passed": days_passed, "target_days": deployment.target_days,
            })
            logger.info(f"[{deployment.id}] {days_passed}일 경과, evaluating 전환")
