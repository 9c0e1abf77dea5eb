"""
백테스팅 엔진 모듈.

[ 역할 ]
    과거 봉 데이터에 시그널 생성기를 적용하여 가상 매매를 시뮬레이션하고 성과를 측정.
    실시간 실행 루프와 같은 시그널 생성기 / ATR 손절·익절 규칙을 쓴다.

[ 실행 흐름 ]
    simulate() 호출 시:
        1. 템플릿 스키마 기본값 + 버전 파라미터 병합
        2. 워밍업 이후 봉마다
           → 포지션 보유 중: 손절/익절 확인 → 시그널 EXIT 확인 → 청산
           → 포지션 없음: 일일 진입 한도 확인 → 시그널 ENTRY면 진입 (SL/TP 고정)
        3. 데이터 끝에서 남은 포지션 청산 (end_of_data)
        4. metrics.calculate_metrics()로 성과 지표 계산

[ 의존성 ]
    - strategies/ (템플릿 ID → 시그널 생성기)
    - data/portfolio.py::Portfolio (단일 포지션 장부 + 비용 모델)
    - execution/risk_manager.py::stop_and_target (SL/TP 규칙)
    - backtest/metrics.py::calculate_metrics() (성과 계산)

[ 호출하는 곳 ]
    - backtest/executor.py::LocalBacktestExecutor (Run 행 생성/저장)
    - tuning/tuning_job.py (구간별 백테스트)
    - run_backtest.py (진입점)
"""

import logging
from typing import Any, Optional

import pandas as pd

from strategy_lab.backtest.metrics import BacktestMetrics, calculate_metrics
from strategy_lab.core.trading_strategy import PositionSide, RiskLimits, SignalType
from strategy_lab.data.indicators import atr
from strategy_lab.data.portfolio import CostModel, Portfolio
from strategy_lab.execution.risk_manager import stop_and_target
from strategy_lab.strategies import get_template
from strategy_lab.tuning.schema import ParamSchema

logger = logging.getLogger("strategy_lab.backtest")

# 워밍업 길이를 결정하는 기간형 파라미터
WARMUP_KEYS = ("lookback_bars", "atr_period", "rsi_period", "trend_lookback")


def warmup_bars(params: dict[str, Any]) -> int:
    periods = [int(params[k]) for k in WARMUP_KEYS if params.get(k) is not None]
    return max(periods, default=14) + 1


class BacktestEngine:
    """백테스팅 엔진. simulate()로 시뮬레이션 실행."""

    def __init__(
        self,
        initial_capital: float = 100_000,
        cost_model: Optional[CostModel] = None,
        default_qty: int = 100,
        size_from_risk_limits: bool = False,
    ):
        self.initial_capital = initial_capital
        self.cost_model = cost_model or CostModel()
        self.default_qty = default_qty
        self.size_from_risk_limits = size_from_risk_limits

        # 시뮬레이션 후 채워지는 결과
        self.portfolio: Portfolio | None = None
        self.metrics: BacktestMetrics | None = None

    def _quantity(self, price: float, risk_limits: RiskLimits) -> int:
        if self.size_from_risk_limits and price > 0:
            return int(risk_limits.max_position_size_usd // price)
        return self.default_qty

    def simulate(
        self,
        bars: pd.DataFrame,
        template_id: str,
        params: dict[str, Any],
        risk_limits: RiskLimits | dict[str, Any] | None = None,
        symbol: str = "",
    ) -> BacktestMetrics:
        """백테스트 실행.

        Args:
            bars: 봉 DataFrame [ts, open, high, low, close, volume] (ts 오름차순)
            template_id: 시그널 생성기 템플릿 ID
            params: 버전 파라미터 (스키마 기본값을 덮어씀)
            risk_limits: 리스크 한도 (size_from_risk_limits일 때 수량 계산)
            symbol: 종목 코드 (포지션 기록용)

        Returns:
            BacktestMetrics: 성과 지표
        """
        template = get_template(template_id)
        params = {**ParamSchema.from_dict(template.param_schema).defaults(), **(params or {})}
        if not isinstance(risk_limits, RiskLimits):
            risk_limits = RiskLimits.from_dict(risk_limits)

        self.portfolio = Portfolio(self.initial_capital, self.cost_model)
        warmup = warmup_bars(params)
        window = warmup + 2
        atr_period = int(params.get("atr_period", 14))
        max_trades_per_day = int(params.get("max_trades_per_day", 6))

        if len(bars) <= warmup:
            logger.warning(f"봉 데이터 부족: {len(bars)}개 (워밍업 {warmup}개 필요)")
            self.metrics = calculate_metrics([], self.portfolio.equity_curve)
            return self.metrics

        timestamps = pd.to_datetime(bars["ts"])
        closes = bars["close"].to_numpy(dtype=float)
        current_day = None
        daily_entries = 0

        for i in range(warmup, len(bars)):
            ts = timestamps.iloc[i]
            price = closes[i]
            if ts.date() != current_day:
                current_day = ts.date()
                daily_entries = 0

            history = bars.iloc[max(0, i - window + 1): i + 1]
            position = self.portfolio.position

            if position is not None:
                hit = position.stop_or_target_hit(price)
                if hit:
                    self.portfolio.close_position(price, ts.isoformat(), hit)
                    continue
                signal = template.generate(history, params, position)
                if signal.signal_type == SignalType.EXIT:
                    self.portfolio.close_position(price, ts.isoformat(), "signal_exit")
                continue

            if daily_entries >= max_trades_per_day:
                continue

            signal = template.generate(history, params, None)
            if not signal.signal_type.is_entry:
                continue

            atr_value = atr(history, atr_period)
            qty = self._quantity(price, risk_limits)
            if atr_value <= 0 or qty <= 0:
                continue

            side = PositionSide.LONG if signal.signal_type == SignalType.ENTRY_LONG else PositionSide.SHORT
            stop_loss, take_profit = stop_and_target(side, price, atr_value, params)
            self.portfolio.open_position(symbol, side, price, qty, ts.isoformat(), stop_loss, take_profit)
            daily_entries += 1

        if self.portfolio.position is not None:
            last_ts = timestamps.iloc[-1].isoformat()
            self.portfolio.close_position(closes[-1], last_ts, "end_of_data")

        self.metrics = calculate_metrics(self.portfolio.trade_history, self.portfolio.equity_curve)
        logger.info(
            f"백테스트 완료 [{template_id}]: 거래 {self.metrics.trades_count}건, "
            f"순손익 {self.metrics.net_pnl_usd:,.2f}$, PF {self.metrics.profit_factor:.2f}"
        )
        return self.metrics

    def generate_report(self) -> dict[str, Any]:
        """백테스트 리포트 생성."""
        if self.metrics is None or self.portfolio is None:
            return {"error": "백테스트를 먼저 실행하세요."}

        return {
            "metrics": self.metrics.to_dict(),
            "portfolio_summary": self.portfolio.get_summary(),
            "trade_count": len(self.portfolio.trade_history),
            "trades": [
                {
                    "ts_entry": t.ts_entry,
                    "ts_exit": t.ts_exit,
                    "side": t.side,
                    "qty": t.qty,
                    "entry_price": t.entry_price,
                    "exit_price": t.exit_price,
                    "pnl_usd": t.pnl_usd,
                    "reason_code": t.reason_code,
                }
                for t in self.portfolio.trade_history
            ],
        }
