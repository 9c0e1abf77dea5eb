"""
변동성 국면 전환 전략 (regime_switcher_v1).

[ 전략 흐름 ]
    최근 trend_lookback개 단순수익률의 표준편차(실현 변동성) 계산
        ├── 변동성 > volatility_threshold → 돌파 전략에 위임
        └── 그 외                         → 평균회귀 전략에 위임

    판단만 하고 시그널 로직은 하위 전략 그대로 사용 (reason 앞에 국면 표시).
"""

from typing import Any, Optional

import pandas as pd

from strategy_lab.core.trading_strategy import Position, Signal
from strategy_lab.data.indicators import realized_volatility
from strategy_lab.strategies import register
from strategy_lab.strategies._params import BREAKOUT_PARAMS, MEAN_REVERSION_PARAMS, RISK_PARAMS
from strategy_lab.strategies.breakout import generate_breakout_signal
from strategy_lab.strategies.mean_reversion import generate_mean_reversion_signal

PARAM_SCHEMA = {
    "params": [
        {"key": "trend_lookback", "type": "int", "min": 5, "max": 100, "step": 1, "default": 20,
         "label": "변동성 계산 기간"},
        {"key": "volatility_threshold", "type": "float", "min": 0.001, "max": 0.05, "step": 0.0005,
         "default": 0.01, "label": "고변동성 기준"},
    ] + BREAKOUT_PARAMS + MEAN_REVERSION_PARAMS + RISK_PARAMS,
}

DEFAULT_PARAMS = {p["key"]: p["default"] for p in PARAM_SCHEMA["params"]}


@register("regime_switcher_v1", schema=PARAM_SCHEMA, name="Regime Switcher")
def generate_regime_signal(
    bars: pd.DataFrame,
    params: dict[str, Any],
    position: Optional[Position],
) -> Signal:
    """실현 변동성으로 국면을 판단해 돌파 / 평균회귀 생성기로 위임."""
    params = {**DEFAULT_PARAMS, **(params or {})}
    lookback = int(params["trend_lookback"])
    threshold = float(params["volatility_threshold"])

    if len(bars) < lookback + 1:
        return Signal.hold(f"데이터 부족 (최소 {lookback + 1}봉 필요)")

    vol = realized_volatility(bars["close"], lookback)
    if vol > threshold:
        regime = "breakout"
        signal = generate_breakout_signal(bars, params, position)
    else:
        regime = "mean_reversion"
        signal = generate_mean_reversion_signal(bars, params, position)

    signal.reason = f"[{regime} vol={vol:.4f}] {signal.reason}"
    signal.metadata = {**signal.metadata, "regime": regime, "volatility": vol}
    return signal
