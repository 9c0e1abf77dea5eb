"""
시장 데이터 관리 모듈.

[ 역할 ]
    DataProvider를 감싸서 캐싱 + 편의 메서드 제공.
    같은 데이터셋을 여러 번 백테스트할 때(이터레이션, 튜닝 트라이얼) 캐시에서 즉시 반환.

[ 의존성 ]
    - core/data_provider.py::DataProvider (데이터 소스 추상화)

[ 호출하는 곳 ]
    - backtest/executor.py::LocalBacktestExecutor
    - tuning/tuning_job.py::TuningWorker
"""

from datetime import datetime

import pandas as pd

from strategy_lab.core.data_provider import DataProvider, normalize_bars


class MarketDataManager:
    """DataProvider 위에 캐싱 레이어를 추가한 매니저.

    사용 예:
        provider = MockDataProvider()
        manager = MarketDataManager(provider)
        df = manager.get_bars("QQQ", "5m", start, end)
    """

    def __init__(self, data_provider: DataProvider):
        self.provider = data_provider
        self._cache: dict[str, pd.DataFrame] = {}  # "symbol_timeframe_start_end" → DataFrame

    def get_bars(
        self,
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
        use_cache: bool = True,
    ) -> pd.DataFrame:
        """기간 봉 데이터 조회 (캐싱 지원).

        Returns:
            DataFrame with columns: [ts, open, high, low, close, volume]
        """
        cache_key = f"{symbol}_{timeframe}_{start}_{end}"

        if use_cache and cache_key in self._cache:
            return self._cache[cache_key]

        df = normalize_bars(self.provider.get_bars(symbol, timeframe, start, end))
        if use_cache:
            self._cache[cache_key] = df
        return df

    def get_dataset_bars(self, dataset, use_cache: bool = True) -> pd.DataFrame:
        """storage.models.Dataset 행이 가리키는 구간의 봉."""
        return self.get_bars(dataset.symbol, dataset.timeframe, dataset.start_ts, dataset.end_ts, use_cache)

    def clear_cache(self) -> None:
        """캐시 초기화."""
        self._cache.clear()
