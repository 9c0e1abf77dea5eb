"""
백테스트 실행기 모듈.

[ 역할 ]
    (버전, 데이터셋) → Run 행 생성 → 시뮬레이션 → RunMetrics / Trade 행 저장.
    이터레이션 루프는 이 계약만 알면 된다: execute()가 run_id를 돌려주고,
    wait_for_run()이 done/failed가 될 때까지 상태를 폴링한다.

[ 구현체 ]
    - LocalBacktestExecutor: 같은 프로세스에서 BacktestEngine으로 동기 실행

[ 호출하는 곳 ]
    - tuning/iteration_engine.py (베이스라인 / 도전자 백테스트)
    - run_backtest.py --version (버전 백테스트)
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from strategy_lab.backtest.engine import BacktestEngine
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.data.portfolio import CostModel
from strategy_lab.storage.models import Run, RunMetrics, RunStatus, Trade, utc_now
from strategy_lab.storage.repository import Repository

logger = logging.getLogger("strategy_lab.backtest")


class BacktestExecutor(ABC):
    """백테스트 실행기 추상 클래스."""

    @abstractmethod
    def execute(self, strategy_version_id: str, dataset_id: str) -> str:
        """백테스트를 시작하고 run_id 반환."""
        ...


def wait_for_run(
    repo: Repository,
    run_id: str,
    timeout: float = 300.0,
    poll_interval: float = 1.0,
) -> Run:
    """Run 상태가 done/failed가 될 때까지 폴링.

    Raises:
        TimeoutError: timeout 안에 끝나지 않은 경우
    """
    deadline = time.monotonic() + timeout
    repo.flush()
    while True:
        run = repo.get_run(run_id)
        if run is None:
            raise ConfigurationError(f"런을 찾을 수 없습니다: {run_id}")
        repo.refresh(run)
        if run.status in (RunStatus.DONE, RunStatus.FAILED):
            return run
        if time.monotonic() >= deadline:
            raise TimeoutError(f"백테스트 대기 시간 초과: run={run_id}, status={run.status}")
        time.sleep(poll_interval)


class LocalBacktestExecutor(BacktestExecutor):
    """같은 프로세스에서 동기 실행하는 백테스트 실행기."""

    def __init__(
        self,
        repo: Repository,
        market_data: MarketDataManager,
        initial_capital: float = 100_000,
        cost_model: Optional[CostModel] = None,
        default_qty: int = 100,
    ):
        self.repo = repo
        self.market_data = market_data
        self.initial_capital = initial_capital
        self.cost_model = cost_model or CostModel()
        self.default_qty = default_qty

    def execute(self, strategy_version_id: str, dataset_id: str) -> str:
        version = self.repo.get_version(strategy_version_id)
        if version is None:
            raise ConfigurationError(f"버전을 찾을 수 없습니다: {strategy_version_id}")
        dataset = self.repo.get_dataset(dataset_id)
        if dataset is None:
            raise ConfigurationError(f"데이터셋을 찾을 수 없습니다: {dataset_id}")
        strategy = self.repo.get_strategy(version.strategy_id)

        run = Run(
            strategy_version_id=version.id,
            dataset_id=dataset.id,
            run_type="backtest",
            status=RunStatus.RUNNING,
            cost_model_json=self.cost_model.to_dict(),
            start_ts=utc_now(),
        )
        self.repo.add(run)
        self.repo.flush()

        try:
            bars = self.market_data.get_dataset_bars(dataset)
            engine = BacktestEngine(self.initial_capital, self.cost_model, self.default_qty)
            metrics = engine.simulate(
                bars, strategy.template_id, version.params, version.risk_limits, symbol=dataset.symbol,
            )
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"백테스트 실패: run={run.id}, version={version.id}: {e}")
            run.status = RunStatus.FAILED
            run.error = str(e)
            run.end_ts = utc_now()
            self.repo.flush()
            return run.id

        self.repo.add(RunMetrics(run_id=run.id, **metrics.to_dict()))
        for t in engine.portfolio.trade_history:
            self.repo.add(Trade(
                run_id=run.id,
                ts_entry=_parse_ts(t.ts_entry),
                ts_exit=_parse_ts(t.ts_exit),
                side=t.side,
                entry_price=t.entry_price,
                exit_price=t.exit_price,
                qty=t.qty,
                pnl_usd=t.pnl_usd,
                pnl_points=t.pnl_points,
                fees=t.fees,
                slippage=t.slippage,
                reason_code=t.reason_code,
            ))
        run.status = RunStatus.DONE
        run.end_ts = utc_now()
        self.repo.flush()
        logger.info(f"런 완료: run={run.id}, trades={metrics.trades_count}, pnl={metrics.net_pnl_usd:,.2f}$")
        return run.id


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is not None:
        ts = ts.replace(tzinfo=None) - ts.utcoffset()
    return ts
