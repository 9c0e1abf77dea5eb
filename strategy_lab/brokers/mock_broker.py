"""
테스트용 Mock 브로커 및 데이터 제공자 구현.

[ 역할 ]
    실제 브로커 API 없이 실행 루프를 돌려보기 위한 메모리 구현.
    시장가 주문은 제출 즉시 현재가(± 슬리피지)로 전량 체결된다.

[ 포함 클래스 ]
    MockDataProvider - core/data_provider.py::DataProvider 구현체
                       미리 로드된 DataFrame에서 봉 데이터 제공

    MockBroker       - core/broker_api.py::BrokerAPI 구현체
                       가상 잔고로 롱/숏 포지션 시뮬레이션

[ 호출하는 곳 ]
    - tests/ (실행 루프, 배포 서비스 테스트)
    - run_paper.py --mock (브로커 키 없이 드라이런)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

import pandas as pd

from strategy_lab.core.broker_api import (
    AccountInfo,
    BrokerAPI,
    BrokerOrder,
    BrokerPosition,
    OrderSide,
    OrderType,
)
from strategy_lab.core.data_provider import DataProvider, empty_bars, normalize_bars


# ─── Mock 데이터 제공자 ──────────────────────────────────────────────────────

class MockDataProvider(DataProvider):
    """DataFrame 기반 Mock 데이터 제공자.

    사용법:
        provider = MockDataProvider()
        provider.load_data("QQQ", bars_df)
        df = provider.get_recent_bars("QQQ", "5m", limit=100)
    """

    def __init__(self):
        self._data: dict[str, pd.DataFrame] = {}  # symbol → 봉 DataFrame

    def load_data(self, symbol: str, df: pd.DataFrame) -> None:
        """데이터 로드. df columns: ts, open, high, low, close, volume"""
        self._data[symbol] = normalize_bars(df)

    def get_bars(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> pd.DataFrame:
        if symbol not in self._data:
            return empty_bars()
        df = self._data[symbol]
        start_ts = pd.Timestamp(start)
        end_ts = pd.Timestamp(end)
        if start_ts.tzinfo is None:
            start_ts = start_ts.tz_localize("UTC")
        if end_ts.tzinfo is None:
            end_ts = end_ts.tz_localize("UTC")
        mask = (df["ts"] >= start_ts) & (df["ts"] <= end_ts)
        return df[mask].copy().reset_index(drop=True)

    def get_recent_bars(self, symbol: str, timeframe: str, limit: int = 100) -> pd.DataFrame:
        if symbol not in self._data:
            return empty_bars()
        return self._data[symbol].tail(limit).reset_index(drop=True)

    def get_symbols(self) -> list[str]:
        return list(self._data.keys())


# ─── Mock 브로커 ─────────────────────────────────────────────────────────────

class MockBroker(BrokerAPI):
    """Mock 브로커. 실제 주문 없이 가상 잔고로 매매 시뮬레이션.

    매수 시: 가격 * (1 + slippage) 로 불리하게 체결
    매도 시: 가격 * (1 - slippage) 로 불리하게 체결
    보유 없이 매도하면 숏 포지션 (qty 음수)
    """

    def __init__(self, initial_cash: float = 100_000, slippage_rate: float = 0.0):
        self.initial_cash = initial_cash
        self.cash = initial_cash
        self.slippage_rate = slippage_rate

        self._positions: dict[str, BrokerPosition] = {}  # symbol → 포지션
        self._orders: list[BrokerOrder] = []
        self._prices: dict[str, float] = {}              # symbol → 현재가 (set_price로 설정)
        self._reject_next: Optional[str] = None
        self.cancel_calls = 0

    def set_price(self, symbol: str, price: float) -> None:
        """종목 현재가 설정 (시뮬레이션용)."""
        self._prices[symbol] = price
        position = self._positions.get(symbol)
        if position is not None:
            position.market_value = position.qty * price
            position.unrealized_pl = (price - position.avg_entry_price) * position.qty

    def reject_next_order(self, reason: str = "insufficient buying power") -> None:
        """다음 주문 1건을 rejected로 돌려준다."""
        self._reject_next = reason

    def get_account(self) -> AccountInfo:
        equity = self.cash + sum(
            p.qty * self._prices.get(p.symbol, p.avg_entry_price) for p in self._positions.values()
        )
        return AccountInfo(account_id="MOCK_ACCOUNT", equity=equity, cash=self.cash, buying_power=max(0.0, equity))

    def get_positions(self) -> list[BrokerPosition]:
        return list(self._positions.values())

    def list_orders(self, status: str = "all", limit: int = 50) -> list[BrokerOrder]:
        orders = self._orders if status == "all" else [o for o in self._orders if o.status == status]
        return list(reversed(orders))[:limit]

    def submit_order(
        self,
        symbol: str,
        qty: int,
        side: OrderSide,
        order_type: OrderType = OrderType.MARKET,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        now = datetime.now(timezone.utc).isoformat()
        order = BrokerOrder(
            order_id=str(uuid.uuid4()),
            symbol=symbol,
            side=side.value,
            qty=int(qty),
            order_type=order_type.value,
            status="new",
            submitted_at=now,
        )
        self._orders.append(order)

        price = self._prices.get(symbol, 0.0)
        if self._reject_next or price <= 0 or qty <= 0:
            order.status = "rejected"
            order.raw = {"reason": self._reject_next or "no price"}
            self._reject_next = None
            return order

        exec_price = price * (1 + self.slippage_rate) if side == OrderSide.BUY else price * (1 - self.slippage_rate)
        signed_qty = int(qty) if side == OrderSide.BUY else -int(qty)
        self.cash -= signed_qty * exec_price
        self._apply_fill(symbol, signed_qty, exec_price)

        order.status = "filled"
        order.filled_at = now
        order.filled_qty = int(qty)
        order.filled_avg_price = exec_price
        order.raw = {"id": order.order_id, "status": "filled", "filled_avg_price": str(exec_price)}
        return order

    def _apply_fill(self, symbol: str, signed_qty: int, exec_price: float) -> None:
        position = self._positions.get(symbol)
        if position is None:
            self._positions[symbol] = BrokerPosition(symbol, signed_qty, exec_price)
            self.set_price(symbol, self._prices[symbol])
            return

        new_qty = position.qty + signed_qty
        if new_qty == 0:
            del self._positions[symbol]
            return
        if (position.qty > 0) == (signed_qty > 0):
            position.avg_entry_price = (
                position.avg_entry_price * abs(position.qty) + exec_price * abs(signed_qty)
            ) / abs(new_qty)
        elif (position.qty > 0) != (new_qty > 0):
            position.avg_entry_price = exec_price
        position.qty = new_qty
        self.set_price(symbol, self._prices[symbol])

    def cancel_all_orders(self) -> None:
        self.cancel_calls += 1
        for order in self._orders:
            if order.status in ("new", "accepted", "partially_filled"):
                order.status = "canceled"
