from datetime import date

import numpy as np
import pytest

from conftest import make_bars
from strategy_lab.brokers.mock_broker import MockDataProvider
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.data.market_data import MarketDataManager
from strategy_lab.data.sample_data import generate_sample_bars
from strategy_lab.storage.models import JobStatus, VersionStatus
from strategy_lab.tuning.instructions import parse_instructions
from strategy_lab.tuning.tuning_job import (
    DEFAULT_CONSTRAINTS,
    SplitScores,
    TuningWorker,
    split_bars,
    start_tuning_job,
)

GATE_PREFIXES = ("Insufficient trades", "Drawdown too high", "Score not improved", "Test score collapse")


def _worker(repo, bars, seed=0):
    provider = MockDataProvider()
    provider.load_data("QQQ", bars)
    return TuningWorker(repo, MarketDataManager(provider), rng=np.random.default_rng(seed))


def _scores(val_score=0.5, test_score=0.5, val_trades=40, val_dd=0.05):
    return SplitScores(
        train_score=0.5, val_score=val_score, test_score=test_score,
        train_metrics={}, val_metrics={"trades_count": val_trades, "max_drawdown": val_dd}, test_metrics={},
    )


# ─── 지시문 ─────────────────────────────────────────────────────────────────

def test_parse_empty_instructions_is_default():
    parsed = parse_instructions("   ")
    assert parsed.mutation_bias == {}
    assert parsed.objective.pf_weight == 0.35


def test_parse_drawdown_instructions():
    parsed = parse_instructions("Please MINIMIZE DRAWDOWN")
    assert parsed.objective.dd_penalty == 0.35
    assert parsed.mutation_bias == {"stop_atr_mult": "tighter", "takeprofit_atr_mult": "tighter"}
    assert parsed.summary.startswith("Prioritizing drawdown")


def test_parse_combined_instructions_accumulate_bias():
    parsed = parse_instructions("fewer trades and maximize return")
    assert parsed.objective.return_weight == 0.40
    assert parsed.mutation_bias["breakout_pct"] == "higher"
    assert parsed.mutation_bias["takeprofit_atr_mult"] == "wider"
    assert set(parsed.to_dict()) == {"objective_config", "mutation_bias", "parsed_summary"}


# ─── 잡 생성 ────────────────────────────────────────────────────────────────

def test_start_tuning_job(repo, dataset, make_version):
    version = make_version({"lookback_bars": 20})
    job = start_tuning_job(repo, version.id, dataset.id, instructions="minimize drawdown", max_trials=5)

    assert job.status == JobStatus.PENDING
    assert job.champion_version_id == version.id
    assert job.constraints == DEFAULT_CONSTRAINTS
    assert job.objective_config["dd_penalty"] == 0.35
    assert job.mutation_bias["stop_atr_mult"] == "tighter"
    assert job.test_pct == pytest.approx(0.2)


def test_start_tuning_job_validation(repo, dataset, make_version):
    version = make_version()
    with pytest.raises(ConfigurationError):
        start_tuning_job(repo, "missing", dataset.id)
    with pytest.raises(ConfigurationError):
        start_tuning_job(repo, version.id, "missing")
    with pytest.raises(ConfigurationError):
        start_tuning_job(repo, version.id, dataset.id, max_trials=0)
    with pytest.raises(ConfigurationError):
        start_tuning_job(repo, version.id, dataset.id, train_pct=0.8, val_pct=0.3)


# ─── 분할 / 게이트 ──────────────────────────────────────────────────────────

def test_split_bars_chronological():
    bars = make_bars([float(i) for i in range(100)])
    train, val, test = split_bars(bars, 0.6, 0.2)
    assert (len(train), len(val), len(test)) == (60, 20, 20)
    assert train["close"].iloc[-1] < val["close"].iloc[0] < test["close"].iloc[0]
    assert val.index[0] == 0


def test_check_gates_order_and_messages():
    check = TuningWorker._check_gates
    constraints = dict(DEFAULT_CONSTRAINTS)

    assert check(_scores(val_trades=10), 0.5, 0.5, constraints) == "Insufficient trades: 10 < 30"
    assert check(_scores(val_dd=0.2), 0.5, 0.5, constraints) == "Drawdown too high: 20.0% > 15.0%"
    assert check(_scores(val_score=0.51), 0.5, 0.5, constraints) == "Score not improved: 0.510 < 0.515"
    assert check(_scores(val_score=0.6, test_score=0.4), 0.5, 0.5, constraints) == (
        "Test score collapse: 0.400 < 0.495"
    )
    assert check(_scores(val_score=0.6, test_score=0.5), 0.5, 0.5, constraints) is None


# ─── 워커 ───────────────────────────────────────────────────────────────────

def test_too_few_bars_fails_job(repo, dataset, make_version):
    version = make_version()
    job = start_tuning_job(repo, version.id, dataset.id)
    repo.commit()

    worker = _worker(repo, make_bars([100.0] * 50))
    with pytest.raises(ConfigurationError):
        worker.process(job.id)

    job = repo.get_tuning_job(job.id)
    assert job.status == JobStatus.FAILED
    assert "100" in job.error


def test_batch_records_trials(repo, dataset, make_version):
    version = make_version({"lookback_bars": 20})
    job = start_tuning_job(repo, version.id, dataset.id, max_trials=5, constraints={"min_trades": 1})
    repo.commit()

    bars = generate_sample_bars("QQQ", date(2024, 6, 3), date(2024, 6, 5))
    worker = _worker(repo, bars, seed=11)

    progress = worker.process(job.id, batch_size=3)
    assert progress.trials_run == 3
    assert progress.trials_completed == 3
    assert progress.status == JobStatus.RUNNING
    assert progress.best_score is not None

    trials = repo.list_trials(job.id)
    assert [t.trial_number for t in trials] == [1, 2, 3]
    for trial in trials:
        assert len(trial.param_diff) == 1
        if trial.accepted:
            candidate = repo.get_version(trial.candidate_version_id)
            assert candidate.status == VersionStatus.BACKTESTED
        else:
            assert trial.reject_reason.startswith(GATE_PREFIXES)
            assert trial.candidate_version_id is None

    progress = worker.process(job.id, batch_size=10)
    assert progress.trials_run == 2
    assert progress.status == JobStatus.DONE
    assert len(repo.list_trials(job.id)) == 5


def test_paused_job_is_skipped(repo, dataset, make_version):
    version = make_version()
    job = start_tuning_job(repo, version.id, dataset.id)
    job.status = JobStatus.PAUSED
    repo.commit()

    progress = _worker(repo, make_bars([100.0] * 200)).process(job.id)
    assert progress.trials_run == 0
    assert progress.status == JobStatus.PAUSED
    assert repo.list_trials(job.id) == []


def test_unknown_job(repo):
    with pytest.raises(ConfigurationError):
        _worker(repo, make_bars([100.0] * 10)).process("missing")
