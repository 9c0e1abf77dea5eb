from datetime import date

import pytest

from strategy_lab.brokers.mock_broker import MockBroker
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.execution.deployment_service import (
    DEFAULT_PASS_CRITERIA,
    clear_halt,
    evaluate_deployment,
    start_deployment,
    stop_deployment,
)
from strategy_lab.storage.models import DeploymentStatus, Lifecycle, VersionStatus


@pytest.fixture
def broker():
    return MockBroker(initial_cash=100_000)


@pytest.fixture
def winner(make_version):
    return make_version({"lookback_bars": 20}, status=VersionStatus.BACKTESTED)


def test_start_requires_backtest_winner(repo, broker, make_version):
    draft = make_version()
    with pytest.raises(ConfigurationError):
        start_deployment(repo, broker, draft.id)
    with pytest.raises(ConfigurationError):
        start_deployment(repo, broker, "missing")


def test_start_records_starting_state(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id, pass_criteria={"min_trades": 10})

    assert deployment.status == DeploymentStatus.RUNNING
    assert deployment.symbols == ["QQQ"]
    assert deployment.starting_equity == 100_000
    assert deployment.pass_criteria == {**DEFAULT_PASS_CRITERIA, "min_trades": 10}
    assert len(repo.list_snapshots(deployment.id)) == 1
    assert repo.list_runner_logs(deployment.id)[0].message == "deployment started"
    assert repo.get_version(winner.id).lifecycle_status == Lifecycle.PAPER_RUNNING


def test_stop_cancels_orders_and_restores_lifecycle(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id)
    stopped = stop_deployment(repo, broker, deployment.id)

    assert broker.cancel_calls == 1
    assert stopped.status == DeploymentStatus.STOPPED
    assert stopped.reject_reason == "Manually stopped"
    assert stopped.ended_at is not None
    assert repo.get_version(winner.id).lifecycle_status == Lifecycle.BACKTEST_WINNER

    with pytest.raises(ConfigurationError):
        stop_deployment(repo, broker, "missing")


def test_stop_clears_open_position(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id)
    position = {
        "side": "long", "entry_price": 105.0, "entry_time": "2024-06-03T15:00:00+00:00",
        "qty": 19, "stop_loss": 103.0, "take_profit": 108.0, "symbol": "QQQ",
    }
    deployment.current_position = position
    repo.commit()

    stopped = stop_deployment(repo, broker, deployment.id, reason="end of paper window")

    assert stopped.current_position is None
    assert repo.get_deployment(deployment.id).current_position is None
    abandoned = repo.list_runner_logs(deployment.id, "order")[-1]
    assert abandoned.message == "position abandoned on stop"
    assert abandoned.data_json == {"position": position, "reason": "end of paper window"}


def test_evaluate_pass_marks_live_ready(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id)
    repo.upsert_daily_metrics(deployment.id, date(2024, 6, 3), 100_300, 3, 100_000)
    repo.upsert_daily_metrics(deployment.id, date(2024, 6, 4), 100_600, 3, 100_000)
    repo.add_snapshot(deployment.id, 100_300, 98_000)
    repo.add_snapshot(deployment.id, 100_600, 98_000)
    repo.commit()

    report = evaluate_deployment(repo, deployment.id)

    assert report["passed"]
    assert report["reject_reason"] is None
    assert report["evaluation"]["total_trades"] == 6
    assert report["evaluation"]["total_pnl"] == pytest.approx(600)
    assert report["evaluation"]["max_drawdown"] == 0.0

    deployment = repo.get_deployment(deployment.id)
    assert deployment.status == DeploymentStatus.STOPPED
    assert deployment.passed is True
    assert repo.get_version(winner.id).lifecycle_status == Lifecycle.LIVE_READY


def test_evaluate_fail_lists_failed_checks(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id)
    repo.upsert_daily_metrics(deployment.id, date(2024, 6, 3), 99_400, 2, 100_000)
    repo.commit()

    report = evaluate_deployment(repo, deployment.id)

    assert not report["passed"]
    assert report["reject_reason"] == "Failed checks: min_trades, daily_loss_limit, profitable"
    assert report["evaluation"]["days_with_loss_breach"] == 1
    assert repo.get_deployment(deployment.id).status == DeploymentStatus.STOPPED
    assert repo.get_version(winner.id).lifecycle_status == Lifecycle.REJECTED


def test_evaluate_drawdown_check(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id, pass_criteria={"min_trades": 0})
    repo.upsert_daily_metrics(deployment.id, date(2024, 6, 3), 100_100, 1, 100_000)
    repo.add_snapshot(deployment.id, 80_000, 80_000)
    repo.add_snapshot(deployment.id, 100_100, 80_000)
    repo.commit()

    report = evaluate_deployment(repo, deployment.id)
    checks = report["evaluation"]["checks"]
    assert not checks["max_drawdown"]["passed"]
    assert checks["max_drawdown"]["actual"] == pytest.approx(0.2)
    assert report["reject_reason"] == "Failed checks: max_drawdown"


def test_daily_metrics_chain_previous_day_equity(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id)
    repo.upsert_daily_metrics(deployment.id, date(2024, 6, 3), 100_500, 1, 100_000)
    row = repo.upsert_daily_metrics(deployment.id, date(2024, 6, 4), 100_200, 1, 100_000)

    assert row.equity_start == 100_500
    assert row.pnl == pytest.approx(-300)
    assert row.drawdown == pytest.approx(300 / 100_500)


def test_clear_halt_without_halt_is_noop(repo, broker, winner):
    deployment = start_deployment(repo, broker, winner.id)
    before = len(repo.list_runner_logs(deployment.id))

    cleared = clear_halt(repo, deployment.id)
    assert not cleared.halted
    assert len(repo.list_runner_logs(deployment.id)) == before
