"""
포지션 / 리스크 관리 모듈.

[ 역할 ]
    시그널을 실제 행동(진입 / 청산 / 무시 / 정지)으로 바꾸는 규칙 모음.
    배포당 포지션은 최대 1개. 상태는 갖지 않고 매 틱 입력만으로 판단한다.

[ 판단 순서 ]
    1. 일일 손실 한도: equity - starting_equity < -max_daily_loss → HALT
    2. 포지션 보유 중
         ├── 현재가가 손절/익절 가격을 넘음 → CLOSE (stop_loss / take_profit)
         └── 시그널 EXIT                  → CLOSE
    3. 포지션 없음 + 진입 시그널
         ├── 배포 고점 대비 손실 > max_drawdown_usd        → 진입 차단
         ├── 당일 연속 손실 >= max_consecutive_losses       → 진입 차단
         ├── 수량 = floor(min(max_position_size_usd, buying_power * 0.9) / 가격)
         ├── 수량 0 이면 무시
         └── SL/TP = 진입가 ∓/± ATR * stop_atr_mult / takeprofit_atr_mult → OPEN

[ 호출하는 곳 ]
    - execution/execution_loop.py (실시간 틱)
    - backtest/engine.py (stop_and_target으로 같은 SL/TP 규칙 사용)
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import pandas as pd

from strategy_lab.core.trading_strategy import (
    Position,
    PositionSide,
    RiskLimits,
    Signal,
    SignalType,
)
from strategy_lab.data.indicators import atr

DEFAULT_ATR_PERIOD = 14
DEFAULT_STOP_ATR_MULT = 1.5
DEFAULT_TAKEPROFIT_ATR_MULT = 2.5


class RiskAction(Enum):
    NONE = "none"
    OPEN = "open"
    CLOSE = "close"
    HALT = "halt"


@dataclass
class RiskDecision:
    """RiskManager.decide()의 반환값."""
    action: RiskAction
    reason: str = ""
    side: Optional[PositionSide] = None
    qty: int = 0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    data: dict[str, Any] = field(default_factory=dict)


def stop_and_target(
    side: PositionSide,
    entry_price: float,
    atr_value: float,
    params: dict[str, Any],
) -> tuple[float, float]:
    """ATR 기반 손절/익절 가격."""
    stop_distance = atr_value * float(params.get("stop_atr_mult", DEFAULT_STOP_ATR_MULT))
    target_distance = atr_value * float(params.get("takeprofit_atr_mult", DEFAULT_TAKEPROFIT_ATR_MULT))
    if side == PositionSide.LONG:
        return entry_price - stop_distance, entry_price + target_distance
    return entry_price + stop_distance, entry_price - target_distance


def entry_side(signal: Signal) -> Optional[PositionSide]:
    if signal.signal_type == SignalType.ENTRY_LONG:
        return PositionSide.LONG
    if signal.signal_type == SignalType.ENTRY_SHORT:
        return PositionSide.SHORT
    return None


class RiskManager:
    """버전 파라미터 + 리스크 한도로 만든 판단기."""

    def __init__(
        self,
        params: dict[str, Any],
        risk_limits: RiskLimits,
        buying_power_fraction: float = 0.9,
    ):
        self.params = params
        self.risk_limits = risk_limits
        self.buying_power_fraction = buying_power_fraction

    def daily_loss_breached(self, equity: float, starting_equity: float) -> bool:
        return equity - starting_equity < -float(self.risk_limits.max_daily_loss_usd)

    def entry_block_reason(self, drawdown_usd: float = 0.0, loss_streak: int = 0) -> Optional[str]:
        """신규 진입을 막는 한도 위반 사유. 보유 포지션 청산은 막지 않는다."""
        limits = self.risk_limits
        if limits.max_drawdown_usd is not None and drawdown_usd > float(limits.max_drawdown_usd):
            return f"max drawdown exceeded: {drawdown_usd:,.2f} > {float(limits.max_drawdown_usd):,.2f}"
        if limits.max_consecutive_losses is not None and loss_streak >= int(limits.max_consecutive_losses):
            return f"consecutive losses reached: {loss_streak} >= {int(limits.max_consecutive_losses)}"
        return None

    def position_size(self, price: float, buying_power: float) -> int:
        if price <= 0:
            return 0
        budget = min(float(self.risk_limits.max_position_size_usd), buying_power * self.buying_power_fraction)
        return max(0, math.floor(budget / price))

    def decide(
        self,
        signal: Signal,
        position: Optional[Position],
        price: float,
        bars: pd.DataFrame,
        buying_power: float,
        drawdown_usd: float = 0.0,
        loss_streak: int = 0,
    ) -> RiskDecision:
        """시그널 + 현재 상태 → 행동 결정. (일일 손실 한도는 호출 측에서 먼저 확인)"""
        if position is not None:
            hit = position.stop_or_target_hit(price)
            if hit:
                return RiskDecision(
                    RiskAction.CLOSE, hit, position.side, position.qty,
                    data={"price": price, "stop_loss": position.stop_loss, "take_profit": position.take_profit},
                )
            if signal.signal_type == SignalType.EXIT:
                return RiskDecision(RiskAction.CLOSE, signal.reason, position.side, position.qty,
                                    data={"price": price})
            return RiskDecision(RiskAction.NONE, "holding position")

        side = entry_side(signal)
        if side is None:
            return RiskDecision(RiskAction.NONE, signal.reason)

        blocked = self.entry_block_reason(drawdown_usd, loss_streak)
        if blocked:
            return RiskDecision(RiskAction.NONE, blocked)

        qty = self.position_size(price, buying_power)
        if qty <= 0:
            return RiskDecision(RiskAction.NONE, f"position size 0 (price={price:.2f}, buying_power={buying_power:.2f})")

        atr_value = atr(bars, int(self.params.get("atr_period", DEFAULT_ATR_PERIOD)))
        if atr_value <= 0:
            return RiskDecision(RiskAction.NONE, "ATR unavailable")

        stop_loss, take_profit = stop_and_target(side, price, atr_value, self.params)
        return RiskDecision(
            RiskAction.OPEN, signal.reason, side, qty, stop_loss, take_profit,
            data={"price": price, "atr": atr_value, "buying_power": buying_power},
        )
