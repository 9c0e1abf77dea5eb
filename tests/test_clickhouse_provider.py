from datetime import datetime, timezone

import pandas as pd

from strategy_lab.data.clickhouse_provider import ClickHouseDataProvider


class FakeResult:
    def __init__(self, rows):
        self.result_rows = rows


class FakeClient:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.queries = []
        self.inserts = []

    def query(self, query, parameters=None):
        self.queries.append((query, parameters))
        return FakeResult(self.rows)

    def insert(self, table, rows, column_names=None):
        self.inserts.append((table, rows, column_names))


def _row(minute, close):
    return (datetime(2024, 6, 3, 13, minute, tzinfo=timezone.utc), close, close + 1, close - 1, close, 100)


def test_get_bars_normalizes_rows():
    client = FakeClient([_row(35, 101.0), _row(30, 100.0)])
    provider = ClickHouseDataProvider(client=client)

    bars = provider.get_bars("QQQ", "5m", datetime(2024, 6, 3), datetime(2024, 6, 4))

    _, params = client.queries[0]
    assert params["symbol"] == "QQQ"
    assert params["timeframe"] == "5m"
    assert bars["close"].tolist() == [100.0, 101.0]
    assert str(bars["ts"].dt.tz) == "UTC"


def test_empty_result():
    provider = ClickHouseDataProvider(client=FakeClient())
    assert provider.get_bars("QQQ", "5m", datetime(2024, 6, 3), datetime(2024, 6, 4)).empty
    assert provider.get_recent_bars("QQQ", "5m", 10).empty


def test_recent_bars_sorted_ascending():
    client = FakeClient([_row(40, 102.0), _row(35, 101.0), _row(30, 100.0)])
    bars = ClickHouseDataProvider(client=client).get_recent_bars("QQQ", "5m", limit=3)
    assert client.queries[0][1]["limit"] == 3
    assert bars["close"].tolist() == [100.0, 101.0, 102.0]


def test_symbols():
    client = FakeClient([("IWM",), ("QQQ",)])
    assert ClickHouseDataProvider(client=client).get_symbols() == ["IWM", "QQQ"]


def test_insert_bars():
    client = FakeClient()
    provider = ClickHouseDataProvider(client=client)
    bars = pd.DataFrame({
        "ts": ["2024-06-03T13:30:00Z"], "open": [1], "high": [2], "low": [0.5], "close": [1.5], "volume": [10],
    })

    assert provider.insert_bars("QQQ", "5m", bars) == 1
    table, rows, columns = client.inserts[0]
    assert table == "market_bars"
    assert rows[0][:2] == ["QQQ", "5m"]
    assert columns[0] == "symbol"
    assert provider.insert_bars("QQQ", "5m", pd.DataFrame()) == 0
