"""
가격 봉(bar) 데이터 제공 추상 클래스 정의.

[ 역할 ]
    OHLCV(시가/고가/저가/종가/거래량) 봉 데이터를 제공하는 인터페이스.
    데이터 소스(ClickHouse, 시세 API, 메모리)에 독립적으로
    백테스트 / 실행 루프에 데이터 공급.

[ 구현체 ]
    - data/clickhouse_provider.py::ClickHouseDataProvider (과거 봉 저장소)
    - brokers/alpaca_broker.py::AlpacaDataProvider      (실시간 시세 API)
    - brokers/mock_broker.py::MockDataProvider          (DataFrame 기반, 테스트용)

[ 호출하는 곳 ]
    - data/market_data.py::MarketDataManager (데이터셋 캐싱)
    - execution/execution_loop.py (최근 봉 조회)

[ 봉 DataFrame 규약 ]
    columns: [ts, open, high, low, close, volume], ts 오름차순 정렬
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import pandas as pd

BAR_COLUMNS = ["ts", "open", "high", "low", "close", "volume"]

# 내부 timeframe 표기 → 시세 API 표기
TIMEFRAME_MAP = {
    "1m": "1Min",
    "5m": "5Min",
    "15m": "15Min",
    "1h": "1Hour",
    "1d": "1Day",
}


@dataclass
class Bar:
    """단일 봉(캔들) 데이터."""
    ts: datetime
    open: float      # 시가
    high: float      # 고가
    low: float       # 저가
    close: float     # 종가
    volume: int      # 거래량


def empty_bars() -> pd.DataFrame:
    return pd.DataFrame(columns=BAR_COLUMNS)


def normalize_bars(df: pd.DataFrame) -> pd.DataFrame:
    """컬럼 순서/타입을 맞추고 ts 오름차순으로 정렬."""
    if df.empty:
        return empty_bars()
    df = df.copy()
    df["ts"] = pd.to_datetime(df["ts"], utc=True)
    for col in ("open", "high", "low", "close"):
        df[col] = df[col].astype(float)
    df["volume"] = df["volume"].fillna(0).astype("int64")
    return df[BAR_COLUMNS].sort_values("ts").reset_index(drop=True)


class DataProvider(ABC):
    """봉 데이터 제공 추상 클래스.

    모든 데이터 제공자 구현체는 이 클래스를 상속받아 아래 메서드를 구현해야 한다.
    """

    @abstractmethod
    def get_bars(
        self,
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
    ) -> pd.DataFrame:
        """기간 봉 데이터 조회.

        Args:
            symbol: 종목 코드
            timeframe: 봉 주기 (1m, 5m, 15m, 1h, 1d)
            start: 시작 시각
            end: 종료 시각

        Returns:
            DataFrame with columns: [ts, open, high, low, close, volume]
        """
        ...

    @abstractmethod
    def get_recent_bars(self, symbol: str, timeframe: str, limit: int = 100) -> pd.DataFrame:
        """최근 N개 봉 조회."""
        ...

    @abstractmethod
    def get_symbols(self) -> list[str]:
        """조회 가능한 종목 코드 목록."""
        ...
