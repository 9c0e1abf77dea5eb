"""
모멘텀 돌파 전략 (momentum_breakout_v1).

[ 전략 흐름 ]
    마지막 봉 직전 lookback_bars개 봉으로 채널(최고가/최저가) 계산
        ├── 포지션 없음
        │     ├── 종가 > 채널 고가 * (1 + breakout_pct) → ENTRY_LONG
        │     └── 종가 < 채널 저가 * (1 - breakout_pct) → ENTRY_SHORT
        │
        └── 포지션 보유
              ├── 롱: 종가 < 채널 저가 → EXIT
              └── 숏: 종가 > 채널 고가 → EXIT

    진입은 여유 비율을 더한 밴드, 청산은 여유 없는 반대편 극값.
    진입 직후 같은 봉 근처에서 진입/청산이 반복되지 않는다.

[ 파라미터 ]
    lookback_bars, breakout_pct, trade_direction
    (atr_period, stop_atr_mult, takeprofit_atr_mult는 리스크 매니저가 사용)
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
from strategy_lab.strategies import register
from strategy_lab.strategies._params import BREAKOUT_PARAMS, RISK_PARAMS

PARAM_SCHEMA = {"params": BREAKOUT_PARAMS + RISK_PARAMS}

DEFAULT_PARAMS = {p["key"]: p["default"] for p in PARAM_SCHEMA["params"]}


def channel(bars: pd.DataFrame, lookback: int) -> Optional[tuple[float, float]]:
    """마지막 봉을 제외한 직전 lookback개 봉의 (최고가, 최저가)."""
    if lookback <= 0 or len(bars) < lookback + 1:
        return None
    window = bars.iloc[-(lookback + 1):-1]
    return float(window["high"].max()), float(window["low"].min())


@register("momentum_breakout_v1", schema=PARAM_SCHEMA, name="Momentum Breakout")
def generate_breakout_signal(
    bars: pd.DataFrame,
    params: dict[str, Any],
    position: Optional[Position],
) -> Signal:
    """채널 돌파 시 진입, 반대편 채널 극값 이탈 시 청산."""
    params = {**DEFAULT_PARAMS, **(params or {})}
    lookback = int(params["lookback_bars"])
    breakout_pct = float(params["breakout_pct"])

    extremes = channel(bars, lookback)
    if extremes is None:
        return Signal.hold(f"데이터 부족 (최소 {lookback + 1}봉 필요)")

    high, low = extremes
    price = float(bars["close"].iloc[-1])
    upper = high * (1 + breakout_pct)
    lower = low * (1 - breakout_pct)
    metadata = {"price": price, "channel_high": high, "channel_low": low, "upper": upper, "lower": lower}

    if position is not None:
        if position.is_long and price < low:
            return Signal(SignalType.EXIT, f"Price {price:.2f} fell below channel low {low:.2f}", metadata)
        if not position.is_long and price > high:
            return Signal(SignalType.EXIT, f"Price {price:.2f} rose above channel high {high:.2f}", metadata)
        return Signal(SignalType.HOLD, "In position, channel intact", metadata)

    if price > upper and direction_allowed(params, PositionSide.LONG):
        return Signal(SignalType.ENTRY_LONG, f"Breakout above {upper:.2f} (price {price:.2f})", metadata)
    if price < lower and direction_allowed(params, PositionSide.SHORT):
        return Signal(SignalType.ENTRY_SHORT, f"Breakdown below {lower:.2f} (price {price:.2f})", metadata)
    return Signal(SignalType.HOLD, f"Price {price:.2f} inside band [{lower:.2f}, {upper:.2f}]", metadata)
