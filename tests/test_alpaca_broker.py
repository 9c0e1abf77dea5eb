import json
from datetime import datetime, timezone

import pytest
import requests

from strategy_lab.brokers.alpaca_broker import AlpacaBroker, AlpacaDataProvider
from strategy_lab.core.broker_api import OrderSide
from strategy_lab.core.exceptions import ConfigurationError, UpstreamServiceError


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else json.dumps(payload)
        self.content = self.text.encode()

    def json(self):
        return self._payload


class FakeSession:
    """요청을 기록하고 준비된 응답을 순서대로 돌려준다."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _broker(*responses):
    session = FakeSession(*responses)
    return AlpacaBroker("key", "secret", base_url="https://paper.test/v2/", session=session), session


def test_missing_keys():
    with pytest.raises(ConfigurationError):
        AlpacaBroker("", "secret", session=FakeSession())
    with pytest.raises(ConfigurationError):
        AlpacaDataProvider("key", "", session=FakeSession())


def test_auth_headers_and_account_parsing():
    broker, session = _broker(FakeResponse(200, {
        "id": "acc-1", "equity": "100250.5", "cash": "98000", "buying_power": "196000",
    }))
    account = broker.get_account()

    assert session.headers == {"APCA-API-KEY-ID": "key", "APCA-API-SECRET-KEY": "secret"}
    assert session.calls[0]["method"] == "GET"
    assert session.calls[0]["url"] == "https://paper.test/v2/account"
    assert account.equity == 100250.5
    assert account.buying_power == 196000.0


def test_positions_parsing():
    broker, _ = _broker(FakeResponse(200, [
        {"symbol": "QQQ", "qty": "-19", "avg_entry_price": "450.1", "market_value": "-8551.9"},
    ]))
    positions = broker.get_positions()
    assert positions[0].qty == -19
    assert positions[0].unrealized_pl == 0.0


def test_submit_order_payload_and_parsing():
    broker, session = _broker(FakeResponse(200, {
        "id": "ord-1", "symbol": "QQQ", "side": "buy", "qty": "19", "type": "market",
        "status": "filled", "filled_qty": "19", "filled_avg_price": "450.25",
    }))
    order = broker.submit_order("QQQ", 19, OrderSide.BUY)

    assert session.calls[0]["json"] == {
        "symbol": "QQQ", "qty": "19", "side": "buy", "type": "market", "time_in_force": "day",
    }
    assert order.order_id == "ord-1"
    assert order.filled_avg_price == 450.25
    assert order.succeeded
    assert order.raw["status"] == "filled"


def test_non_2xx_raises_upstream_error():
    broker, _ = _broker(FakeResponse(403, {"message": "insufficient buying power"}))
    with pytest.raises(UpstreamServiceError) as exc:
        broker.submit_order("QQQ", 1000, OrderSide.BUY)
    assert exc.value.status_code == 403
    assert "insufficient buying power" in exc.value.body
    assert "status=403" in str(exc.value)


def test_network_error_raises_upstream_error():
    broker, _ = _broker(requests.ConnectionError("connection refused"))
    with pytest.raises(UpstreamServiceError) as exc:
        broker.get_account()
    assert exc.value.status_code is None


def test_cancel_all_orders_handles_empty_body():
    broker, session = _broker(FakeResponse(204))
    broker.cancel_all_orders()
    assert session.calls[0]["method"] == "DELETE"
    assert session.calls[0]["url"].endswith("/orders")


def test_list_orders_params():
    broker, session = _broker(FakeResponse(200, [{"id": "o1", "status": "rejected", "qty": "5"}]))
    orders = broker.list_orders("all", 20)
    assert session.calls[0]["params"] == {"status": "all", "limit": 20}
    assert not orders[0].succeeded


def test_get_bars_params_and_columns():
    session = FakeSession(FakeResponse(200, {"bars": [
        {"t": "2024-06-03T13:35:00Z", "o": 450.0, "h": 451.0, "l": 449.5, "c": 450.5, "v": 1200},
        {"t": "2024-06-03T13:30:00Z", "o": 449.0, "h": 450.2, "l": 448.8, "c": 450.0, "v": 1500},
    ]}))
    provider = AlpacaDataProvider("key", "secret", base_url="https://data.test/v2", session=session, feed="iex")

    bars = provider.get_bars(
        "QQQ", "5m", datetime(2024, 6, 3), datetime(2024, 6, 4, tzinfo=timezone.utc),
    )

    call = session.calls[0]
    assert call["url"] == "https://data.test/v2/stocks/QQQ/bars"
    assert call["params"]["timeframe"] == "5Min"
    assert call["params"]["start"] == "2024-06-03T00:00:00Z"
    assert call["params"]["end"] == "2024-06-04T00:00:00Z"
    assert call["params"]["adjustment"] == "split"
    assert call["params"]["feed"] == "iex"

    assert list(bars.columns) == ["ts", "open", "high", "low", "close", "volume"]
    assert bars["close"].tolist() == [450.0, 450.5]


def test_get_bars_empty_and_bad_timeframe():
    provider = AlpacaDataProvider("key", "secret", session=FakeSession(FakeResponse(200, {"bars": None})))
    assert provider.get_bars("QQQ", "5m", datetime(2024, 6, 3), datetime(2024, 6, 4)).empty
    with pytest.raises(ConfigurationError):
        provider.get_bars("QQQ", "7m", datetime(2024, 6, 3), datetime(2024, 6, 4))


def test_recent_bars_tail():
    rows = [
        {"t": f"2024-06-03T{13 + (30 + 5 * i) // 60}:{(30 + 5 * i) % 60:02d}:00Z",
         "o": 1.0, "h": 1.0, "l": 1.0, "c": float(i), "v": 1}
        for i in range(10)
    ]
    provider = AlpacaDataProvider("key", "secret", session=FakeSession(FakeResponse(200, {"bars": rows})))
    bars = provider.get_recent_bars("QQQ", "5m", limit=3)
    assert bars["close"].tolist() == [7.0, 8.0, 9.0]
