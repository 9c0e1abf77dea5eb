"""
브로커 API 추상 클래스 정의.

[ 역할 ]
    페이퍼/실계좌 브로커와의 통신을 추상화하는 인터페이스 정의.
    브로커 교체 시 이 클래스만 구현하면 됨.

[ 구현체 ]
    - brokers/alpaca_broker.py::AlpacaBroker  (Alpaca 페이퍼 REST)
    - brokers/mock_broker.py::MockBroker      (테스트용 즉시 체결 시뮬레이션)

[ 호출하는 곳 ]
    - execution/execution_loop.py (계좌 조회, 주문, 주문 동기화)
    - execution/deployment_service.py (시작 시 계좌 조회, 중지 시 전체 주문 취소)

[ 계약 ]
    수량은 정수, 가격은 소수. 2xx 이외 응답은 UpstreamServiceError로 올린다.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# ─── 주문 관련 Enum / Dataclass ─────────────────────────────────────────────

class OrderType(Enum):
    """주문 타입: 시장가(MARKET) 또는 지정가(LIMIT)."""
    MARKET = "market"
    LIMIT = "limit"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


# 체결 실패로 간주하는 브로커 주문 상태
FAILED_ORDER_STATUSES = frozenset({"rejected", "canceled", "cancelled", "expired", "failed"})


@dataclass
class BrokerOrder:
    """submit_order(), list_orders()의 반환값. 브로커 주문의 미러."""
    order_id: str
    symbol: str
    side: str
    qty: int
    order_type: str
    status: str
    submitted_at: Optional[str] = None
    filled_at: Optional[str] = None
    filled_qty: int = 0
    filled_avg_price: Optional[float] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status.lower() not in FAILED_ORDER_STATUSES


@dataclass
class AccountInfo:
    """get_account()의 반환값."""
    account_id: str
    equity: float           # 총 평가금액
    cash: float             # 현금
    buying_power: float     # 매수 가능 금액


@dataclass
class BrokerPosition:
    """get_positions()에서 반환하는 개별 보유 종목 정보."""
    symbol: str
    qty: int                # 숏이면 음수
    avg_entry_price: float
    market_value: float = 0.0
    unrealized_pl: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "qty": self.qty,
            "avg_entry_price": self.avg_entry_price,
            "market_value": self.market_value,
            "unrealized_pl": self.unrealized_pl,
        }


# ─── 추상 클래스 ────────────────────────────────────────────────────────────

class BrokerAPI(ABC):
    """브로커 API 추상 클래스.

    모든 브로커 구현체는 이 클래스를 상속받아 아래 메서드를 구현해야 한다.
    """

    @abstractmethod
    def get_account(self) -> AccountInfo:
        """계좌 정보 조회 (equity, cash, buying_power)."""
        ...

    @abstractmethod
    def get_positions(self) -> list[BrokerPosition]:
        """보유 포지션 조회."""
        ...

    @abstractmethod
    def list_orders(self, status: str = "all", limit: int = 50) -> list[BrokerOrder]:
        """최근 주문 목록 조회."""
        ...

    @abstractmethod
    def submit_order(
        self,
        symbol: str,
        qty: int,
        side: OrderSide,
        order_type: OrderType = OrderType.MARKET,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        """주문 제출.

        Args:
            symbol: 종목 코드
            qty: 주문 수량 (정수)
            side: 매수/매도
            order_type: 주문 타입 (시장가/지정가)
            time_in_force: 주문 유효 기간 (기본 day)
        """
        ...

    @abstractmethod
    def cancel_all_orders(self) -> None:
        """미체결 주문 전체 취소."""
        ...
