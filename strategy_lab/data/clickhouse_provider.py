"""
ClickHouse 기반 DataProvider 구현.

[ 역할 ]
    ClickHouse market_bars 테이블에 저장된 분봉/일봉을 조회하여 백테스트에 제공.
    DataProvider 인터페이스를 구현하여 MarketDataManager와 호환.

[ 테이블 ]
    market_bars (symbol, timeframe, ts, open, high, low, close, volume)
    ReplacingMergeTree, (symbol, timeframe, ts) 기준 중복 제거

[ 호출하는 곳 ]
    - run_backtest.py / run_iteration.py / run_tuning.py (데이터셋 봉 조회)
"""

import logging
from datetime import datetime
from typing import Optional

import clickhouse_connect
import pandas as pd
from clickhouse_connect.driver import Client

from strategy_lab.core.data_provider import BAR_COLUMNS, DataProvider, empty_bars, normalize_bars

logger = logging.getLogger("strategy_lab.data")

CREATE_MARKET_BARS = """
CREATE TABLE IF NOT EXISTS market_bars (
    symbol String,
    timeframe LowCardinality(String),
    ts DateTime64(3, 'UTC'),
    open Float64,
    high Float64,
    low Float64,
    close Float64,
    volume UInt64,
    ingestion_time DateTime DEFAULT now()
)
ENGINE = ReplacingMergeTree(ingestion_time)
PARTITION BY toYYYYMM(ts)
ORDER BY (symbol, timeframe, ts)
"""


def get_client(
    host: str = "localhost",
    port: int = 8123,
    database: str = "default",
    user: str = "default",
    password: str = "password",
) -> Client:
    """ClickHouse 클라이언트 연결 생성."""
    return clickhouse_connect.get_client(
        host=host,
        port=port,
        database=database,
        username=user,
        password=password,
    )


def initialize_schema(client: Client) -> None:
    """market_bars 테이블 생성 (이미 존재하면 무시)."""
    client.command(CREATE_MARKET_BARS)
    logger.info("ClickHouse 스키마 초기화 완료 (market_bars)")


class ClickHouseDataProvider(DataProvider):
    """ClickHouse 기반 데이터 제공자.

    사용 예:
        provider = ClickHouseDataProvider('localhost', 8123, 'default', password='password')
        df = provider.get_bars('QQQ', '5m', datetime(2024, 1, 2), datetime(2024, 1, 31))
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8123,
        database: str = "default",
        user: str = "default",
        password: str = "password",
        client: Optional[Client] = None,
    ):
        self.client: Client = client or get_client(host, port, database, user, password)

    def get_bars(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> pd.DataFrame:
        query = """
            SELECT ts, open, high, low, close, volume
            FROM market_bars FINAL
            WHERE symbol = %(symbol)s
              AND timeframe = %(timeframe)s
              AND ts >= %(start)s
              AND ts <= %(end)s
            ORDER BY ts ASC
        """
        result = self.client.query(
            query,
            parameters={"symbol": symbol, "timeframe": timeframe, "start": start, "end": end},
        )
        if not result.result_rows:
            return empty_bars()
        return normalize_bars(pd.DataFrame(result.result_rows, columns=BAR_COLUMNS))

    def get_recent_bars(self, symbol: str, timeframe: str, limit: int = 100) -> pd.DataFrame:
        query = """
            SELECT ts, open, high, low, close, volume
            FROM market_bars FINAL
            WHERE symbol = %(symbol)s AND timeframe = %(timeframe)s
            ORDER BY ts DESC
            LIMIT %(limit)s
        """
        result = self.client.query(
            query, parameters={"symbol": symbol, "timeframe": timeframe, "limit": int(limit)}
        )
        if not result.result_rows:
            return empty_bars()
        return normalize_bars(pd.DataFrame(result.result_rows, columns=BAR_COLUMNS))

    def get_symbols(self) -> list[str]:
        result = self.client.query("SELECT DISTINCT symbol FROM market_bars ORDER BY symbol")
        return [row[0] for row in result.result_rows]

    def insert_bars(self, symbol: str, timeframe: str, bars: pd.DataFrame) -> int:
        """봉 저장 (같은 ts는 ReplacingMergeTree가 최신값으로 정리)."""
        bars = normalize_bars(bars)
        if bars.empty:
            return 0
        rows = [
            [symbol, timeframe, row.ts.to_pydatetime(), row.open, row.high, row.low, row.close, int(row.volume)]
            for row in bars.itertuples(index=False)
        ]
        self.client.insert(
            "market_bars",
            rows,
            column_names=["symbol", "timeframe", "ts", "open", "high", "low", "close", "volume"],
        )
        logger.info(f"봉 저장: {symbol} {timeframe} {len(rows)}개")
        return len(rows)

    def close(self):
        """ClickHouse 연결 종료."""
        if hasattr(self.client, "close"):
            self.client.close()
