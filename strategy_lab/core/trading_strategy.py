"""
매매 시그널 / 포지션 타입 정의.

[ 역할 ]
    시그널 생성기(strategies/)와 리스크 매니저(execution/), 백테스트 엔진이
    공유하는 데이터 타입을 정의.
    시그널 생성기는 순수 함수: (bars, params, position) → Signal

[ 구현체 ]
    - strategies/breakout.py::generate_breakout_signal        (모멘텀 돌파)
    - strategies/mean_reversion.py::generate_mean_reversion_signal (RSI 평균회귀)
    - strategies/regime_switch.py::generate_regime_signal     (변동성 국면 전환)

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine.simulate() 에서 봉마다 호출
    - execution/execution_loop.py 에서 실행 틱마다 호출

[ 데이터 흐름 ]
    bars(OHLCV DataFrame) + Position | None → SignalGenerator → Signal
    Signal.signal_type이 ENTRY_*이면 진입, EXIT이면 청산
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import pandas as pd


class SignalType(Enum):
    """시그널 생성기가 반환하는 시그널 종류."""
    ENTRY_LONG = "entry_long"
    ENTRY_SHORT = "entry_short"
    EXIT = "exit"
    HOLD = "hold"

    @property
    def is_entry(self) -> bool:
        return self in (SignalType.ENTRY_LONG, SignalType.ENTRY_SHORT)


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"


@dataclass
class Signal:
    """시그널 생성기의 반환값. reason은 로그/런너 로그에 그대로 기록된다."""
    signal_type: SignalType
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def hold(cls, reason: str, **metadata: Any) -> "Signal":
        return cls(SignalType.HOLD, reason, dict(metadata))


@dataclass
class Position:
    """배포(deployment)당 최대 1개만 존재하는 미결제 포지션.

    PaperDeployment.current_position 컬럼에 to_dict() 결과가 JSON으로 저장된다.
    """
    side: PositionSide
    entry_price: float
    entry_time: str           # ISO-8601
    qty: int
    stop_loss: float
    take_profit: float
    symbol: str

    @property
    def is_long(self) -> bool:
        return self.side == PositionSide.LONG

    def stop_or_target_hit(self, price: float) -> Optional[str]:
        """현재가가 손절/익절 가격을 넘었으면 사유 코드 반환."""
        if self.is_long:
            if price <= self.stop_loss:
                return "stop_loss"
            if price >= self.take_profit:
                return "take_profit"
        else:
            if price >= self.stop_loss:
                return "stop_loss"
            if price <= self.take_profit:
                return "take_profit"
        return None

    def unrealized_pnl(self, price: float) -> float:
        direction = 1 if self.is_long else -1
        return (price - self.entry_price) * self.qty * direction

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Optional["Position"]:
        if not data:
            return None
        return cls(
            side=PositionSide(data["side"]),
            entry_price=float(data["entry_price"]),
            entry_time=str(data["entry_time"]),
            qty=int(data["qty"]),
            stop_loss=float(data["stop_loss"]),
            take_profit=float(data["take_profit"]),
            symbol=str(data["symbol"]),
        )


@dataclass
class RiskLimits:
    """버전별 리스크 한도. StrategyVersion.risk_limits_json에 저장된다."""
    max_position_size_usd: float = 2000.0
    max_daily_loss_usd: float = 50.0
    max_drawdown_usd: Optional[float] = None        # 배포 고점 대비 손실 한도, 넘으면 신규 진입 차단
    max_consecutive_losses: Optional[int] = None    # 당일 연속 손실 한도, 도달하면 신규 진입 차단

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RiskLimits":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        return cls(**known)


# 시그널 생성기 시그니처: (bars, params, position) → Signal
SignalGenerator = Callable[[pd.DataFrame, dict[str, Any], Optional[Position]], Signal]


def direction_allowed(params: dict[str, Any], side: PositionSide) -> bool:
    """trade_direction 파라미터(long / short / both) 필터."""
    direction = str(params.get("trade_direction", "both")).lower()
    if direction == "both":
        return True
    return direction == side.value
