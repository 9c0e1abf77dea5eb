"""
RSI 극단값 평균회귀 전략 (mean_reversion_extremes_v1).

[ 전략 흐름 ]
    현재 RSI와 직전 봉까지의 RSI를 비교
        ├── 포지션 없음
        │     ├── RSI가 rsi_oversold 아래로 교차   → ENTRY_LONG
        │     └── RSI가 rsi_overbought 위로 교차   → ENTRY_SHORT
        │
        └── 포지션 보유
              ├── 롱: RSI ≥ 50 → EXIT
              └── 숏: RSI ≤ 50 → EXIT

[ 파라미터 ]
    rsi_period, rsi_oversold, rsi_overbought, trade_direction
"""

from typing import Any, Optional

import pandas as pd

from strategy_lab.core.trading_strategy import (
    Position,
    PositionSide,
    Signal,
    SignalType,
    direction_allowed,
)
from strategy_lab.data.indicators import rsi
from strategy_lab.strategies import register
from strategy_lab.strategies._params import MEAN_REVERSION_PARAMS, RISK_PARAMS

PARAM_SCHEMA = {"params": MEAN_REVERSION_PARAMS + RISK_PARAMS}

DEFAULT_PARAMS = {p["key"]: p["default"] for p in PARAM_SCHEMA["params"]}

RSI_MIDLINE = 50.0


@register("mean_reversion_extremes_v1", schema=PARAM_SCHEMA, name="Mean Reversion Extremes")
def generate_mean_reversion_signal(
    bars: pd.DataFrame,
    params: dict[str, Any],
    position: Optional[Position],
) -> Signal:
    """RSI 과매도/과매수 교차 시 역방향 진입, 50선 복귀 시 청산."""
    params = {**DEFAULT_PARAMS, **(params or {})}
    period = int(params["rsi_period"])
    oversold = float(params["rsi_oversold"])
    overbought = float(params["rsi_overbought"])

    if len(bars) < period + 2:
        return Signal.hold(f"데이터 부족 (최소 {period + 2}봉 필요)")

    closes = bars["close"]
    rsi_now = rsi(closes, period)
    rsi_prev = rsi(closes.iloc[:-1], period)
    metadata = {"rsi": rsi_now, "rsi_prev": rsi_prev, "price": float(closes.iloc[-1])}

    if position is not None:
        if position.is_long and rsi_now >= RSI_MIDLINE:
            return Signal(SignalType.EXIT, f"RSI {rsi_now:.1f} back above {RSI_MIDLINE:.0f}", metadata)
        if not position.is_long and rsi_now <= RSI_MIDLINE:
            return Signal(SignalType.EXIT, f"RSI {rsi_now:.1f} back below {RSI_MIDLINE:.0f}", metadata)
        return Signal(SignalType.HOLD, f"In position, RSI {rsi_now:.1f}", metadata)

    if rsi_prev >= oversold > rsi_now and direction_allowed(params, PositionSide.LONG):
        return Signal(SignalType.ENTRY_LONG, f"RSI crossed below {oversold:.0f} ({rsi_now:.1f})", metadata)
    if rsi_prev <= overbought < rsi_now and direction_allowed(params, PositionSide.SHORT):
        return Signal(SignalType.ENTRY_SHORT, f"RSI crossed above {overbought:.0f} ({rsi_now:.1f})", metadata)
    return Signal(SignalType.HOLD, f"RSI {rsi_now:.1f} within [{oversold:.0f}, {overbought:.0f}]", metadata)
