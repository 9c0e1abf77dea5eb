"""
시뮬레이션 포트폴리오 모듈.

[ 역할 ]
    백테스트에서 단일 포지션 장부를 관리.
    진입/청산 시 비용 모델(수수료, 슬리피지, 건당 고정비)을 적용하고
    청산된 거래(TradeRecord)와 누적 손익 곡선을 남긴다.

[ 주요 클래스 ]
    CostModel   - 주당 수수료 / 주당 슬리피지 / 건당 고정비
    TradeRecord - 왕복 거래 1건 (진입~청산, 손익 포함)
    Portfolio   - 현재 포지션 1개 + 거래 내역 + 자산 곡선

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine.simulate()
    - backtest/metrics.py (trade_history, equity_curve로 성과 계산)
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from strategy_lab.core.trading_strategy import Position, PositionSide


@dataclass
class CostModel:
    """비용 모델. 청산 시점에 왕복 비용으로 한 번 차감."""
    commission_per_share: float = 0.01
    slippage_per_share: float = 0.005
    fixed_cost_per_trade: float = 0.0

    def fees(self, qty: int) -> float:
        return self.commission_per_share * qty + self.fixed_cost_per_trade

    def slippage(self, qty: int) -> float:
        return self.slippage_per_share * qty

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CostModel":
        data = data or {}
        return cls(**{k: float(v) for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class TradeRecord:
    """왕복 거래 기록. metrics.py에서 승률/손익 계산에 사용됨."""
    ts_entry: str
    ts_exit: str
    side: str               # "long" or "short"
    entry_price: float
    exit_price: float
    qty: int
    pnl_usd: float          # 비용 차감 후 실현 손익
    pnl_points: float       # 주당 가격 차이 (방향 반영)
    fees: float = 0.0
    slippage: float = 0.0
    reason_code: str = ""   # stop_loss / take_profit / signal_exit / end_of_data


class Portfolio:
    """단일 포지션 포트폴리오.

    BacktestEngine이 소유하며, 진입/청산 결과를 반영.
    equity_curve는 거래 청산마다 한 점씩 추가된다 (시작 자본 포함).
    """

    def __init__(self, initial_capital: float, cost_model: Optional[CostModel] = None):
        self.initial_capital = initial_capital
        self.cost_model = cost_model or CostModel()
        self.position: Optional[Position] = None
        self.trade_history: list[TradeRecord] = []
        self.equity_curve: list[float] = [initial_capital]

    @property
    def realized_pnl(self) -> float:
        return sum(t.pnl_usd for t in self.trade_history)

    @property
    def equity(self) -> float:
        return self.initial_capital + self.realized_pnl

    def open_position(
        self,
        symbol: str,
        side: PositionSide,
        price: float,
        qty: int,
        ts: str,
        stop_loss: float,
        take_profit: float,
    ) -> Position:
        if self.position is not None:
            raise RuntimeError("이미 포지션이 있습니다. 단일 포지션만 허용.")
        self.position = Position(
            side=side,
            entry_price=price,
            entry_time=ts,
            qty=qty,
            stop_loss=stop_loss,
            take_profit=take_profit,
            symbol=symbol,
        )
        return self.position

    def close_position(self, price: float, ts: str, reason_code: str) -> Optional[TradeRecord]:
        """포지션 전량 청산. 포지션이 없으면 None."""
        position = self.position
        if position is None:
            return None

        direction = 1 if position.is_long else -1
        pnl_points = (price - position.entry_price) * direction
        fees = self.cost_model.fees(position.qty)
        slippage = self.cost_model.slippage(position.qty)

        trade = TradeRecord(
            ts_entry=position.entry_time,
            ts_exit=ts,
            side=position.side.value,
            entry_price=position.entry_price,
            exit_price=price,
            qty=position.qty,
            pnl_usd=pnl_points * position.qty - fees - slippage,
            pnl_points=pnl_points,
            fees=fees,
            slippage=slippage,
            reason_code=reason_code,
        )
        self.trade_history.append(trade)
        self.equity_curve.append(self.equity)
        self.position = None
        return trade

    def get_summary(self) -> dict[str, Any]:
        """포트폴리오 요약."""
        return {
            "initial_capital": self.initial_capital,
            "equity": self.equity,
            "realized_pnl": self.realized_pnl,
            "num_trades": len(self.trade_history),
            "open_position": self.position.to_dict() if self.position else None,
        }
