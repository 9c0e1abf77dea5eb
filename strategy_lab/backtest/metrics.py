"""
백테스트 성과 지표 계산 모듈.

[ 역할 ]
    백테스트 결과(왕복 거래 내역 + 자산 곡선)를 받아 성과 지표를 계산.
    calculate_metrics() 함수가 핵심.

[ 계산하는 지표 ]
    - 총이익 / 총손실 / 순손익, 수익 팩터 (손실 없으면 999)
    - 최대 낙폭 (자산 곡선 고점 대비 비율)
    - 승률 (비율), 평균/중앙값 거래 손익, 최대 손실 거래
    - 최대 연속 손실, 수수료/슬리피지 합계
    - 거래 단위 샤프 근사치

[ 호출하는 곳 ]
    - backtest/engine.py::BacktestEngine.simulate() 완료 시 호출
    - backtest/executor.py가 RunMetrics 행으로 저장
"""

from dataclasses import asdict, dataclass
from typing import Any

import numpy as np

from strategy_lab.data.portfolio import TradeRecord
from strategy_lab.tuning.scoring import MetricSnapshot

NO_LOSS_PROFIT_FACTOR = 999.0


@dataclass
class BacktestMetrics:
    """백테스트 성과 지표. summary()로 포맷된 리포트 출력 가능."""
    profit_factor: float = 0.0        # 총이익 / 총손실 (1 이상이면 수익)
    net_pnl_usd: float = 0.0          # 비용 차감 후 순손익 ($)
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    max_drawdown: float = 0.0         # 최대 낙폭 (비율, 0.1 = 10%)
    trades_count: int = 0
    win_rate: float = 0.0             # 승률 (비율)
    avg_trade: float = 0.0
    median_trade: float = 0.0
    fees_paid: float = 0.0
    slippage_est: float = 0.0
    max_consecutive_losses: int = 0
    biggest_loss: float = 0.0
    sharpe_ratio: float = 0.0         # 거래 단위 근사치

    def to_dict(self) -> dict[str, Any]:
        """딕셔너리 변환."""
        return asdict(self)

    def to_snapshot(self) -> MetricSnapshot:
        return MetricSnapshot(
            profit_factor=self.profit_factor,
            net_pnl_usd=self.net_pnl_usd,
            win_rate=self.win_rate,
            max_drawdown=self.max_drawdown,
            trades_count=self.trades_count,
            runs_count=1,
        )

    def summary(self) -> str:
        """성과 요약 문자열."""
        lines = [
            "=" * 50,
            "백테스트 성과 리포트",
            "=" * 50,
            f"순손익:          {self.net_pnl_usd:>12,.2f}$",
            f"수익 팩터:       {self.profit_factor:>12.2f}",
            f"최대 낙폭:       {self.max_drawdown * 100:>12.2f}%",
            f"샤프(거래단위):  {self.sharpe_ratio:>12.2f}",
            "-" * 50,
            f"총 거래 횟수:    {self.trades_count:>12d}",
            f"승률:            {self.win_rate * 100:>12.2f}%",
            f"평균 거래:       {self.avg_trade:>12,.2f}$",
            f"중앙값 거래:     {self.median_trade:>12,.2f}$",
            f"최대 손실 거래:  {self.biggest_loss:>12,.2f}$",
            f"최대 연속 손실:  {self.max_consecutive_losses:>12d}",
            "-" * 50,
            f"수수료:          {self.fees_paid:>12,.2f}$",
            f"슬리피지:        {self.slippage_est:>12,.2f}$",
            "=" * 50,
        ]
        return "\n".join(lines)


def max_drawdown_ratio(equity_curve: list[float]) -> float:
    """자산 곡선의 고점 대비 최대 하락 비율."""
    peak = None
    max_dd = 0.0
    for value in equity_curve:
        if peak is None or value > peak:
            peak = value
        if peak and peak > 0:
            max_dd = max(max_dd, (peak - value) / peak)
    return max_dd


def calculate_metrics(trade_history: list[TradeRecord], equity_curve: list[float]) -> BacktestMetrics:
    """성과 지표 계산. engine.py에서 백테스트 완료 후 호출됨.

    Args:
        trade_history: Portfolio.trade_history (청산된 왕복 거래)
        equity_curve: Portfolio.equity_curve (시작 자본 + 청산 시점 자산)
    """
    metrics = BacktestMetrics()
    metrics.max_drawdown = max_drawdown_ratio(equity_curve)

    if not trade_history:
        return metrics

    pnls = np.array([t.pnl_usd for t in trade_history], dtype=float)
    winners = pnls[pnls > 0]
    losers = pnls[pnls <= 0]

    metrics.trades_count = len(pnls)
    metrics.gross_profit = float(winners.sum())
    metrics.gross_loss = float(abs(losers.sum()))
    metrics.net_pnl_usd = float(pnls.sum())
    metrics.win_rate = len(winners) / len(pnls)
    metrics.avg_trade = float(pnls.mean())
    metrics.median_trade = float(np.median(pnls))
    metrics.biggest_loss = float(min(0.0, pnls.min()))
    metrics.fees_paid = float(sum(t.fees for t in trade_history))
    metrics.slippage_est = float(sum(t.slippage for t in trade_history))

    if metrics.gross_loss > 0:
        metrics.profit_factor = metrics.gross_profit / metrics.gross_loss
    elif metrics.gross_profit > 0:
        metrics.profit_factor = NO_LOSS_PROFIT_FACTOR

    # 연속 손실
    consecutive = 0
    for p in pnls:
        consecutive = consecutive + 1 if p <= 0 else 0
        metrics.max_consecutive_losses = max(metrics.max_consecutive_losses, consecutive)

    std = float(pnls.std(ddof=1)) if len(pnls) > 1 else 0.0
    if std > 0:
        metrics.sharpe_ratio = float(pnls.mean() / std * np.sqrt(len(pnls)))

    return metrics
