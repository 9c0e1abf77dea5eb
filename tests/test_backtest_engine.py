import pytest

from conftest import make_bars
from strategy_lab.backtest.engine import BacktestEngine, warmup_bars
from strategy_lab.backtest.executor import LocalBacktestExecutor, wait_for_run
from strategy_lab.backtest.metrics import NO_LOSS_PROFIT_FACTOR, calculate_metrics, max_drawdown_ratio
from strategy_lab.brokers.mock_broker import MockDataProvider
from strategy_lab.core.data_provider import DataProvider
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.data.portfolio import CostModel, TradeRecord
from strategy_lab.storage.models import RunStatus, Trade

PARAMS = {"lookback_bars": 20, "atr_period": 14}


def breakout_bars():
    """횡보 30봉 뒤 상승 돌파."""
    return make_bars([100.5] * 30 + [103.0, 104.0, 106.0, 108.0])


def _trade(pnl):
    return TradeRecord("t0", "t1", "long", 100.0, 100.0 + pnl, 1, pnl, pnl)


def test_warmup_uses_longest_period():
    assert warmup_bars({"lookback_bars": 20, "atr_period": 14}) == 21
    assert warmup_bars({}) == 15


def test_breakout_take_profit_then_end_of_data():
    engine = BacktestEngine(initial_capital=100_000, default_qty=100)
    metrics = engine.simulate(breakout_bars(), "momentum_breakout_v1", PARAMS, symbol="QQQ")

    trades = engine.portfolio.trade_history
    assert metrics.trades_count == len(trades) == 2

    first = trades[0]
    assert first.side == "long"
    assert first.entry_price == 103.0
    assert first.exit_price == 106.0
    assert first.reason_code == "take_profit"
    # (106 - 103) * 100 - 수수료 1.0 - 슬리피지 0.5
    assert first.pnl_usd == pytest.approx(298.5)

    assert trades[-1].reason_code == "end_of_data"
    assert engine.portfolio.position is None


def test_too_few_bars_means_no_trades():
    engine = BacktestEngine()
    metrics = engine.simulate(make_bars([100.0] * 10), "momentum_breakout_v1", PARAMS)
    assert metrics.trades_count == 0
    assert metrics.profit_factor == 0.0


def test_flat_market_no_trades():
    engine = BacktestEngine()
    metrics = engine.simulate(make_bars([100.5] * 60), "momentum_breakout_v1", PARAMS)
    assert metrics.trades_count == 0


def test_max_trades_per_day_limits_entries():
    engine = BacktestEngine()
    params = {**PARAMS, "max_trades_per_day": 1}
    metrics = engine.simulate(breakout_bars(), "momentum_breakout_v1", params)
    assert metrics.trades_count == 1


def test_size_from_risk_limits():
    engine = BacktestEngine(size_from_risk_limits=True)
    engine.simulate(breakout_bars(), "momentum_breakout_v1", PARAMS, {"max_position_size_usd": 1030})
    assert engine.portfolio.trade_history[0].qty == 10


def test_generate_report():
    engine = BacktestEngine()
    assert "error" in engine.generate_report()

    engine.simulate(breakout_bars(), "momentum_breakout_v1", PARAMS)
    report = engine.generate_report()
    assert report["trade_count"] == 2
    assert report["trades"][0]["reason_code"] == "take_profit"


def test_calculate_metrics():
    trades = [_trade(100.0), _trade(-50.0), _trade(-50.0), _trade(200.0)]
    metrics = calculate_metrics(trades, [1000.0, 1100.0, 1050.0, 1000.0, 1200.0])

    assert metrics.trades_count == 4
    assert metrics.profit_factor == pytest.approx(3.0)
    assert metrics.net_pnl_usd == pytest.approx(200.0)
    assert metrics.win_rate == pytest.approx(0.5)
    assert metrics.max_consecutive_losses == 2
    assert metrics.biggest_loss == pytest.approx(-50.0)
    assert metrics.max_drawdown == pytest.approx(100 / 1100)


def test_profit_factor_without_losses():
    metrics = calculate_metrics([_trade(10.0), _trade(20.0)], [1000.0, 1010.0, 1030.0])
    assert metrics.profit_factor == NO_LOSS_PROFIT_FACTOR
    assert metrics.win_rate == 1.0
    assert calculate_metrics([], [1000.0]).profit_factor == 0.0


def test_max_drawdown_ratio():
    assert max_drawdown_ratio([100.0, 120.0, 90.0, 130.0]) == pytest.approx(0.25)
    assert max_drawdown_ratio([100.0]) == 0.0


def test_cost_model_from_dict():
    model = CostModel.from_dict({"commission_per_share": "0.02", "unknown": 1})
    assert model.fees(100) == pytest.approx(2.0)
    assert model.slippage(100) == pytest.approx(0.5)


# ─── 실행기 ─────────────────────────────────────────────────────────────────

def _executor(repo, provider):
    return LocalBacktestExecutor(repo, MarketDataManager(provider), default_qty=100)


def test_local_executor_stores_run_metrics_and_trades(repo, dataset, make_version):
    provider = MockDataProvider()
    provider.load_data("QQQ", breakout_bars())
    version = make_version(PARAMS)

    run_id = _executor(repo, provider).execute(version.id, dataset.id)
    run = wait_for_run(repo, run_id, timeout=1, poll_interval=0)

    assert run.status == RunStatus.DONE
    assert run.cost_model_json["commission_per_share"] == 0.01
    assert run.metrics.trades_count == 2
    assert run.end_ts is not None

    trades = repo.session.query(Trade).filter_by(run_id=run.id).all()
    assert len(trades) == 2
    assert {t.reason_code for t in trades} == {"take_profit", "end_of_data"}
    assert trades[0].ts_entry.tzinfo is None

    assert len(repo.completed_run_metrics(version.id)) == 1


class BrokenProvider(DataProvider):
    def get_bars(self, symbol, timeframe, start, end):
        raise RuntimeError("clickhouse down")

    def get_recent_bars(self, symbol, timeframe, limit=100):
        raise RuntimeError("clickhouse down")

    def get_symbols(self):
        return []


def test_local_executor_marks_failed_run(repo, dataset, make_version):
    version = make_version(PARAMS)
    run_id = _executor(repo, BrokenProvider()).execute(version.id, dataset.id)

    run = repo.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert "clickhouse down" in run.error
    assert repo.completed_run_metrics(version.id) == []


def test_local_executor_unknown_ids(repo, dataset, make_version):
    executor = _executor(repo, MockDataProvider())
    with pytest.raises(ConfigurationError):
        executor.execute("missing", dataset.id)
    with pytest.raises(ConfigurationError):
        executor.execute(make_version().id, "missing")
