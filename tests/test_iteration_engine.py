import pytest

from strategy_lab.backtest.executor import BacktestExecutor
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.storage.models import (
    ExperimentGroup,
    Run,
    RunMetrics,
    RunStatus,
    StrategyVersion,
    VersionStatus,
    utc_now,
)
from strategy_lab.tuning.iteration_engine import IterationEngine, IterationRequest


class ScriptedExecutor(BacktestExecutor):
    """호출 순서대로 준비된 지표를 Run / RunMetrics 행으로 남긴다."""

    def __init__(self, repo, metrics_seq):
        self.repo = repo
        self.metrics_seq = list(metrics_seq)
        self.calls = []

    def execute(self, strategy_version_id, dataset_id):
        metrics = self.metrics_seq[min(len(self.calls), len(self.metrics_seq) - 1)]
        self.calls.append(strategy_version_id)
        run = Run(
            strategy_version_id=strategy_version_id,
            dataset_id=dataset_id,
            status=RunStatus.DONE,
            start_ts=utc_now(),
            end_ts=utc_now(),
        )
        self.repo.add(run)
        self.repo.flush()
        self.repo.add(RunMetrics(run_id=run.id, **metrics))
        self.repo.flush()
        return run.id


def m(pf, trades=40, pnl=200.0, dd=0.05, win=0.5):
    return {"profit_factor": pf, "trades_count": trades, "net_pnl_usd": pnl, "max_drawdown": dd, "win_rate": win}


@pytest.fixture
def group(repo, dataset):
    g = ExperimentGroup(name="QQQ breakout", template_id="momentum_breakout_v1", dataset_id=dataset.id)
    repo.add(g)
    repo.flush()
    return g


def _engine(repo, metrics_seq):
    executor = ScriptedExecutor(repo, metrics_seq)
    return IterationEngine(repo, executor, poll_interval=0.0), executor


def test_zero_iterations_is_noop(repo, group):
    engine, executor = _engine(repo, [m(1.0)])
    response = engine.run(IterationRequest(group.id, max_iterations=0))

    assert response.iterations_run == 0
    assert response.successful_iterations == 0
    assert response.results == []
    assert executor.calls == []
    assert repo.group_versions(group.id) == []
    assert repo.list_iterations(group.id) == []


def test_seeds_champion_and_accepts_improvements(repo, group):
    engine, executor = _engine(repo, [m(1.0), m(1.2), m(1.4), m(1.6)])
    response = engine.run(IterationRequest(group.id, max_iterations=3, seed=1))

    assert response.iterations_run == 3
    assert response.successful_iterations == 3
    assert [r.iteration_number for r in response.results] == [1, 2, 3]
    assert len(executor.calls) == 4                # 베이스라인 1 + 트라이얼 3

    versions = repo.group_versions(group.id)
    assert len(versions) == 4
    champions = [v for v in versions if v.is_champion]
    assert len(champions) == 1
    assert champions[0].id == response.current_champion_id == group.champion_version_id
    assert champions[0].status == VersionStatus.BACKTESTED

    iterations = repo.list_iterations(group.id)
    assert all(it.accepted for it in iterations)
    assert iterations[1].parent_version_id == iterations[0].child_version_id
    for it in iterations:
        assert len(it.param_diff) == 1
        assert it.rationale.startswith("Auto-tuned ")


def test_rejects_worse_challenger(repo, group):
    engine, _ = _engine(repo, [m(1.5), m(1.0)])
    response = engine.run(IterationRequest(group.id, max_iterations=2, seed=2))

    assert response.successful_iterations == 0
    seed_id = response.current_champion_id
    for result in response.results:
        assert not result.accepted
        assert result.reject_reason.startswith("Failed gates: ")
        assert "score:" in result.reject_reason
        challenger = repo.get_version(result.challenger_id)
        assert challenger.status == VersionStatus.REJECTED
        assert not challenger.is_champion
    assert repo.get_version(seed_id).is_champion


def test_rejects_insufficient_trades(repo, group):
    engine, _ = _engine(repo, [m(1.0), m(3.0, trades=2)])
    response = engine.run(IterationRequest(group.id, max_iterations=1, seed=3))

    result = response.results[0]
    assert not result.accepted
    assert result.gate_results["min_trades"]["passed"] is False
    assert "min_trades: 2 < 5" in result.reject_reason


def test_stop_on_failure(repo, group):
    engine, _ = _engine(repo, [m(1.5), m(1.0)])
    response = engine.run(IterationRequest(group.id, max_iterations=5, stop_on_failure=True, seed=4))
    assert response.iterations_run == 1


def test_iteration_numbers_continue_across_calls(repo, group):
    engine, _ = _engine(repo, [m(1.0), m(1.1), m(1.2), m(1.3), m(1.4), m(1.5)])
    engine.run(IterationRequest(group.id, max_iterations=2, seed=5))
    response = engine.run(IterationRequest(group.id, max_iterations=2, seed=6, trigger_type="scheduled"))

    assert [r.iteration_number for r in response.results] == [3, 4]
    numbers = [it.iteration_number for it in repo.list_iterations(group.id)]
    assert numbers == [1, 2, 3, 4]
    assert repo.list_iterations(group.id)[-1].trigger_type == "scheduled"


def test_existing_champion_is_used(repo, group, make_version):
    champion = make_version({"lookback_bars": 30}, experiment_group_id=group.id)
    group.champion_version_id = champion.id
    repo.flush()

    engine, _ = _engine(repo, [m(1.0), m(0.5)])
    response = engine.run(IterationRequest(group.id, max_iterations=1, seed=7))

    iteration = repo.list_iterations(group.id)[0]
    assert iteration.parent_version_id == champion.id
    assert response.current_champion_id == champion.id


def test_request_gate_overrides(repo, group):
    engine, _ = _engine(repo, [m(1.0), m(3.0, trades=8)])
    response = engine.run(IterationRequest(group.id, max_iterations=1, gates={"min_trades": 10}, seed=8))
    assert "min_trades: 8 < 10" in response.results[0].reject_reason


def test_missing_group_and_bad_trigger(repo, group):
    engine, _ = _engine(repo, [m(1.0)])
    with pytest.raises(ConfigurationError):
        engine.run(IterationRequest("missing-group"))
    with pytest.raises(ConfigurationError):
        engine.run(IterationRequest(group.id, trigger_type="cron"))


def test_group_without_dataset(repo):
    g = ExperimentGroup(name="no data", template_id="momentum_breakout_v1")
    repo.add(g)
    repo.flush()
    engine, _ = _engine(repo, [m(1.0)])
    with pytest.raises(ConfigurationError):
        engine.run(IterationRequest(g.id, max_iterations=1))


def test_request_from_dict():
    request = IterationRequest.from_dict({"experiment_group_id": "g1", "max_iterations": 3, "extra": True})
    assert request.max_iterations == 3
    with pytest.raises(ConfigurationError):
        IterationRequest.from_dict({"max_iterations": 3})


def test_response_to_dict(repo, group):
    engine, _ = _engine(repo, [m(1.0), m(1.2)])
    data = engine.run(IterationRequest(group.id, max_iterations=1, seed=9)).to_dict()
    assert set(data) == {"iterations_run", "successful_iterations", "current_champion_id", "results"}
    assert set(data["results"][0]) == {
        "iteration_number", "accepted", "challenger_id", "param_diff",
        "gate_results", "reject_reason", "score_before", "score_after",
    }
    assert isinstance(repo.get_version(data["current_champion_id"]), StrategyVersion)


class StalledExecutor(ScriptedExecutor):
    """베이스라인 런만 끝내고, 이후 런은 running 상태로 남긴다."""

    def execute(self, strategy_version_id, dataset_id):
        if not self.calls:
            return super().execute(strategy_version_id, dataset_id)
        self.calls.append(strategy_version_id)
        run = Run(strategy_version_id=strategy_version_id, dataset_id=dataset_id,
                  status=RunStatus.RUNNING, start_ts=utc_now())
        self.repo.add(run)
        self.repo.flush()
        return run.id


def test_timed_out_trial_rolls_back_number_and_challenger(repo, group):
    executor = StalledExecutor(repo, [m(1.0)])
    engine = IterationEngine(repo, executor, backtest_timeout=0.0, poll_interval=0.0)

    with pytest.raises(TimeoutError):
        engine.run(IterationRequest(group.id, max_iterations=3, seed=1))

    assert len(executor.calls) == 2
    assert repo.list_iterations(group.id) == []
    versions = repo.group_versions(group.id)
    assert len(versions) == 1
    assert versions[0].is_champion
    assert repo.next_iteration_number(group.id) == 1
