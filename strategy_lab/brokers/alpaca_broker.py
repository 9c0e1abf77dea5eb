"""
Alpaca 페이퍼 브로커 / 시세 API 연동.

[ 역할 ]
    AlpacaBroker       - core/broker_api.py::BrokerAPI 구현체 (paper-api.alpaca.markets/v2)
    AlpacaDataProvider - core/data_provider.py::DataProvider 구현체 (data.alpaca.markets/v2)

[ 인증 ]
    헤더 APCA-API-KEY-ID / APCA-API-SECRET-KEY
    키는 config.yaml의 broker 섹션 또는 환경변수 ALPACA_API_KEY / ALPACA_SECRET_KEY

[ 오류 규약 ]
    2xx 이외 응답, 네트워크 오류 → UpstreamServiceError (status_code, body 포함)

[ 호출하는 곳 ]
    - run_paper.py (실행 루프 / 배포 시작·중지)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pandas as pd
import requests

from strategy_lab.core.broker_api import (
    AccountInfo,
    BrokerAPI,
    BrokerOrder,
    BrokerPosition,
    OrderSide,
    OrderType,
)
from strategy_lab.core.data_provider import TIMEFRAME_MAP, DataProvider, empty_bars, normalize_bars
from strategy_lab.core.exceptions import ConfigurationError, UpstreamServiceError

logger = logging.getLogger("strategy_lab.broker")

PAPER_BASE_URL = "https://paper-api.alpaca.markets/v2"
DATA_BASE_URL = "https://data.alpaca.markets/v2"
MAX_BARS_PER_REQUEST = 10000

# timeframe → 봉 1개 길이(분). 최근 봉 조회 구간 계산용
_TIMEFRAME_MINUTES = {"1m": 1, "5m": 5, "15m": 15, "1h": 60, "1d": 1440}


class _AlpacaClient:
    """공통 세션 / 요청 처리."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if not api_key or not secret_key:
            raise ConfigurationError("Alpaca API 키가 설정되지 않았습니다 (ALPACA_API_KEY / ALPACA_SECRET_KEY).")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": secret_key,
        })

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise UpstreamServiceError(f"Alpaca 요청 실패: {method} {path}: {e}") from e

        if not 200 <= resp.status_code < 300:
            logger.error(f"Alpaca 오류 응답: {method} {path} → {resp.status_code} {resp.text[:200]}")
            raise UpstreamServiceError(f"Alpaca API error: {method} {path}", resp.status_code, resp.text)

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()


# ─── 브로커 ─────────────────────────────────────────────────────────────────

class AlpacaBroker(_AlpacaClient, BrokerAPI):
    """Alpaca 페이퍼 트레이딩 REST 브로커."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str = PAPER_BASE_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(api_key, secret_key, base_url, timeout, session)

    def get_account(self) -> AccountInfo:
        data = self._request("GET", "/account")
        return AccountInfo(
            account_id=str(data.get("id", "")),
            equity=float(data.get("equity") or 0),
            cash=float(data.get("cash") or 0),
            buying_power=float(data.get("buying_power") or 0),
        )

    def get_positions(self) -> list[BrokerPosition]:
        return [
            BrokerPosition(
                symbol=p["symbol"],
                qty=int(float(p.get("qty") or 0)),
                avg_entry_price=float(p.get("avg_entry_price") or 0),
                market_value=float(p.get("market_value") or 0),
                unrealized_pl=float(p.get("unrealized_pl") or 0),
            )
            for p in self._request("GET", "/positions") or []
        ]

    def list_orders(self, status: str = "all", limit: int = 50) -> list[BrokerOrder]:
        data = self._request("GET", "/orders", params={"status": status, "limit": limit})
        return [_parse_order(o) for o in data or []]

    def submit_order(
        self,
        symbol: str,
        qty: int,
        side: OrderSide,
        order_type: OrderType = OrderType.MARKET,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        payload = {
            "symbol": symbol,
            "qty": str(int(qty)),
            "side": side.value,
            "type": order_type.value,
            "time_in_force": time_in_force,
        }
        logger.info(f"주문 제출: {side.value.upper()} {symbol} x{qty} ({order_type.value})")
        return _parse_order(self._request("POST", "/orders", json=payload))

    def cancel_all_orders(self) -> None:
        self._request("DELETE", "/orders")
        logger.info("미체결 주문 전체 취소")


def _parse_order(data: dict[str, Any]) -> BrokerOrder:
    filled_price = data.get("filled_avg_price")
    return BrokerOrder(
        order_id=str(data["id"]),
        symbol=data.get("symbol", ""),
        side=data.get("side", ""),
        qty=int(float(data.get("qty") or 0)),
        order_type=data.get("type") or data.get("order_type") or "market",
        status=data.get("status", ""),
        submitted_at=data.get("submitted_at"),
        filled_at=data.get("filled_at"),
        filled_qty=int(float(data.get("filled_qty") or 0)),
        filled_avg_price=float(filled_price) if filled_price is not None else None,
        raw=dict(data),
    )


# ─── 시세 ───────────────────────────────────────────────────────────────────

class AlpacaDataProvider(_AlpacaClient, DataProvider):
    """Alpaca 시세 API 봉 데이터 제공자 (분할 조정)."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str = DATA_BASE_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        symbols: Optional[list[str]] = None,
        feed: Optional[str] = None,
    ):
        super().__init__(api_key, secret_key, base_url, timeout, session)
        self._symbols = list(symbols or [])
        self.feed = feed

    def get_bars(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> pd.DataFrame:
        if timeframe not in TIMEFRAME_MAP:
            raise ConfigurationError(f"지원하지 않는 timeframe: {timeframe}")
        params = {
            "timeframe": TIMEFRAME_MAP[timeframe],
            "start": _rfc3339(start),
            "end": _rfc3339(end),
            "limit": MAX_BARS_PER_REQUEST,
            "adjustment": "split",
        }
        if self.feed:
            params["feed"] = self.feed
        data = self._request("GET", f"/stocks/{symbol}/bars", params=params) or {}
        bars = data.get("bars") or []
        if not bars:
            return empty_bars()

        df = pd.DataFrame(bars).rename(columns={
            "t": "ts", "o": "open", "h": "high", "l": "low", "c": "close", "v": "volume",
        })
        return normalize_bars(df)

    def get_recent_bars(self, symbol: str, timeframe: str, limit: int = 100) -> pd.DataFrame:
        """최근 N개 봉. 장 마감 시간을 고려해 넉넉한 구간을 조회한 뒤 뒤에서 자른다."""
        minutes = _TIMEFRAME_MINUTES.get(timeframe, 5)
        end = datetime.now(timezone.utc)
        start = end - timedelta(minutes=minutes * limit * 4) - timedelta(days=4)
        df = self.get_bars(symbol, timeframe, start, end)
        return df.tail(limit).reset_index(drop=True)

    def get_symbols(self) -> list[str]:
        return list(self._symbols)


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
