import sys
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from strategy_lab.storage.database import create_session_factory  # noqa: E402
from strategy_lab.storage.models import Dataset, Strategy  # noqa: E402
from strategy_lab.storage.repository import Repository  # noqa: E402
from strategy_lab.versions.version_service import create_version  # noqa: E402


def make_bars(closes, start="2024-06-03 13:30", freq="5min", spread=0.5) -> pd.DataFrame:
    """종가 목록으로 봉 DataFrame 생성. high/low는 종가 ± spread."""
    closes = [float(c) for c in closes]
    ts = pd.date_range(pd.Timestamp(start, tz="UTC"), periods=len(closes), freq=freq)
    return pd.DataFrame({
        "ts": ts,
        "open": closes,
        "high": [c + spread for c in closes],
        "low": [c - spread for c in closes],
        "close": closes,
        "volume": [1000] * len(closes),
    })


def channel_bars(n=20, last_close=105.0) -> pd.DataFrame:
    """[100, 101] 구간에서 n개 봉 + 마지막 봉 1개."""
    closes = [100.5] * n + [last_close]
    return make_bars(closes, spread=0.5)


@pytest.fixture
def bars_factory():
    return make_bars


@pytest.fixture
def repo():
    factory = create_session_factory("sqlite:///:memory:")
    session = factory()
    repository = Repository(session)
    repository.sync_registered_templates()
    repository.commit()
    yield repository
    session.close()


@pytest.fixture
def dataset(repo):
    ds = Dataset(
        symbol="QQQ",
        timeframe="5m",
        start_ts=datetime(2024, 6, 3),
        end_ts=datetime(2024, 6, 8),
    )
    repo.add(ds)
    repo.flush()
    return ds


@pytest.fixture
def breakout_strategy(repo):
    strategy = Strategy(name="QQQ breakout", template_id="momentum_breakout_v1")
    repo.add(strategy)
    repo.flush()
    return strategy


@pytest.fixture
def make_version(repo, breakout_strategy):
    def _make(params=None, risk_limits=None, **kwargs):
        return create_version(repo, breakout_strategy, params or {}, risk_limits, **kwargs)
    return _make


@pytest.fixture
def market_clock():
    """월요일 11:00 America/New_York (정규장)."""
    return lambda: datetime(2024, 6, 3, 15, 0, tzinfo=timezone.utc)
