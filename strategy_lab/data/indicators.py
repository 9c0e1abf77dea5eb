"""
기술적 지표 계산 모듈.

[ 역할 ]
    봉 DataFrame에서 ATR, RSI, 실현 변동성을 계산하는 순수 함수 모음.
    같은 입력이면 항상 같은 결과 (상태 없음, 입력 변경 없음).

[ 지표 ]
    atr(bars, period)                 - 평균 진폭 (손절/익절 거리 산정)
    rsi(closes, period)               - 상대강도지수 [0, 100]
    realized_volatility(closes, n)    - 최근 n개 단순수익률의 표준편차 (국면 판단)

[ 호출하는 곳 ]
    - strategies/*.py (시그널 생성)
    - execution/risk_manager.py (진입 시 SL/TP 계산)
    - backtest/engine.py (백테스트 SL/TP 계산)
"""

import numpy as np
import pandas as pd


def true_ranges(bars: pd.DataFrame) -> np.ndarray:
    """두 번째 봉부터의 True Range 배열.

    TR_i = max(high_i - low_i, |high_i - close_{i-1}|, |low_i - close_{i-1}|)
    """
    if len(bars) < 2:
        return np.array([], dtype=float)

    high = bars["high"].to_numpy(dtype=float)[1:]
    low = bars["low"].to_numpy(dtype=float)[1:]
    prev_close = bars["close"].to_numpy(dtype=float)[:-1]

    return np.maximum.reduce([
        high - low,
        np.abs(high - prev_close),
        np.abs(low - prev_close),
    ])


def atr(bars: pd.DataFrame, period: int = 14) -> float:
    """ATR. 최근 period개 True Range의 단순 평균. 봉이 부족하면 0."""
    period = int(period)
    if period <= 0:
        return 0.0

    tr = true_ranges(bars)
    if len(tr) < period:
        return 0.0
    return float(tr[-period:].mean())


def rsi(closes: pd.Series | pd.DataFrame, period: int = 14) -> float:
    """RSI. 최근 period개 변화량의 평균 상승폭 / 평균 하락폭 비율로 계산.

    - 이력이 부족하면 (종가 period+1개 미만) 50 (중립)
    - 하락이 전혀 없으면 100
    """
    if isinstance(closes, pd.DataFrame):
        closes = closes["close"]

    period = int(period)
    values = closes.to_numpy(dtype=float)
    if period <= 0 or len(values) < period + 1:
        return 50.0

    changes = np.diff(values[-(period + 1):])
    avg_gain = float(np.clip(changes, 0, None).mean())
    avg_loss = float(np.clip(-changes, 0, None).mean())

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100 - 100 / (1 + rs))


def realized_volatility(closes: pd.Series | pd.DataFrame, lookback: int = 20) -> float:
    """최근 lookback개 단순수익률의 표본 표준편차. 데이터 부족 시 0."""
    if isinstance(closes, pd.DataFrame):
        closes = closes["close"]

    lookback = int(lookback)
    if lookback < 2 or len(closes) < lookback + 1:
        return 0.0

    returns = closes.iloc[-(lookback + 1):].astype(float).pct_change().dropna()
    std = returns.std(ddof=1)
    return 0.0 if pd.isna(std) else float(std)
