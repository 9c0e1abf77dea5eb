"""
샘플 봉 데이터 생성 모듈.

[ 역할 ]
    ClickHouse / 시세 API 없이 백테스트와 드라이런을 돌려보기 위한 가상 분봉 생성.
    정규장(09:30~16:00 America/New_York) 평일 봉만 만든다. 시드가 같으면 같은 데이터.

[ 호출하는 곳 ]
    - run_backtest.py --sample
    - utils/factory.py (source="sample" 데이터 제공자)
"""

import zlib
from datetime import date

import numpy as np
import pandas as pd

from strategy_lab.core.data_provider import normalize_bars

# timeframe → pandas 주기
_FREQ = {"1m": "1min", "5m": "5min", "15m": "15min", "1h": "1h", "1d": "1D"}


def _session_index(start: date, end: date, timeframe: str) -> pd.DatetimeIndex:
    days = pd.bdate_range(start=start, end=end)
    if timeframe == "1d":
        return pd.DatetimeIndex([d.tz_localize("America/New_York") + pd.Timedelta(hours=16) for d in days])

    freq = _FREQ.get(timeframe, "5min")
    stamps = []
    for d in days:
        open_ts = pd.Timestamp(d.date()).tz_localize("America/New_York") + pd.Timedelta(hours=9, minutes=30)
        close_ts = open_ts + pd.Timedelta(hours=6, minutes=30)
        stamps.extend(pd.date_range(open_ts, close_ts, freq=freq, inclusive="left"))
    return pd.DatetimeIndex(stamps)


def generate_sample_bars(
    symbol: str,
    start: date,
    end: date,
    timeframe: str = "5m",
    initial_price: float = 400.0,
    volatility: float = 0.002,
    seed: int | None = None,
) -> pd.DataFrame:
    """랜덤 워크 분봉 생성.

    Returns:
        DataFrame with columns: [ts, open, high, low, close, volume] (ts는 UTC)
    """
    rng = np.random.default_rng(zlib.crc32(symbol.encode()) if seed is None else seed)
    index = _session_index(start, end, timeframe)
    n = len(index)
    if n == 0:
        return normalize_bars(pd.DataFrame())

    returns = rng.normal(0.00002, volatility, n)
    closes = initial_price * np.cumprod(1 + returns)
    opens = np.concatenate([[initial_price], closes[:-1]])
    spread = np.abs(rng.normal(0, volatility / 2, n))

    df = pd.DataFrame({
        "ts": index.tz_convert("UTC"),
        "open": np.round(opens, 2),
        "high": np.round(np.maximum(opens, closes) * (1 + spread), 2),
        "low": np.round(np.minimum(opens, closes) * (1 - spread), 2),
        "close": np.round(closes, 2),
        "volume": rng.lognormal(9, 0.8, n).astype("int64"),
    })
    return normalize_bars(df)
