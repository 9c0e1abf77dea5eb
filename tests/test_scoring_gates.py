import pytest

from strategy_lab.tuning.gates import GateConfig, drawdown_ceiling, evaluate_gates
from strategy_lab.tuning.scoring import (
    MetricSnapshot,
    ObjectiveConfig,
    aggregate_best_metrics,
    calculate_score,
)


def snap(pf=1.5, pnl=500.0, win=0.5, dd=0.1, trades=40):
    return MetricSnapshot(profit_factor=pf, net_pnl_usd=pnl, win_rate=win, max_drawdown=dd, trades_count=trades)


def test_score_formula():
    # 0.35*1.5/3 + 0.25*0.5 - 0.15*0.2 + 0.25*0.5
    assert calculate_score(snap()) == pytest.approx(0.395)


def test_score_clamps():
    huge = snap(pf=999.0, pnl=1_000_000.0, win=1.0, dd=0.0)
    assert calculate_score(huge) == pytest.approx(0.35 * 5 / 3 + 0.25 * 2 + 0.25)

    awful = snap(pf=0.0, pnl=-50_000.0, win=0.0, dd=0.9)
    assert calculate_score(awful) == pytest.approx(-0.25 - 0.15)


def test_score_monotonic():
    base = calculate_score(snap())
    assert calculate_score(snap(pf=2.0)) > base
    assert calculate_score(snap(pnl=800.0)) > base
    assert calculate_score(snap(dd=0.2)) < base


def test_objective_weights_from_dict():
    objective = ObjectiveConfig.from_dict({"dd_penalty": 0.5, "unknown": 1})
    assert objective.dd_penalty == 0.5
    assert objective.pf_weight == 0.35


def test_aggregate_best_metrics_elementwise():
    runs = [snap(pf=1.2, pnl=900, win=0.4, dd=0.2, trades=10), snap(pf=1.8, pnl=100, win=0.6, dd=0.05, trades=30)]
    best = aggregate_best_metrics(runs)
    assert best.profit_factor == 1.8
    assert best.net_pnl_usd == 900
    assert best.win_rate == 0.6
    assert best.max_drawdown == 0.05
    assert best.trades_count == 30
    assert best.runs_count == 2

    assert aggregate_best_metrics([]) == MetricSnapshot()


def test_gate_accepts_better_challenger():
    result = evaluate_gates(snap(), snap(pf=2.0))
    assert result.accepted
    assert result.reject_reason is None
    assert all(g["passed"] for g in result.gate_results.values())


def test_gate_accepts_tie():
    assert evaluate_gates(snap(), snap()).accepted


def test_gate_rejects_lower_score():
    result = evaluate_gates(snap(), snap(pf=1.0))
    assert not result.accepted
    assert result.reject_reason.startswith("Failed gates: ")
    assert "score:" in result.reject_reason
    assert result.score_after < result.score_before


def test_gate_rejects_too_few_trades():
    result = evaluate_gates(snap(), snap(pf=3.0, trades=3))
    assert not result.accepted
    assert result.gate_results["min_trades"] == {"required": 5, "actual": 3, "passed": False}
    assert "min_trades: 3 < 5" in result.reject_reason


def test_drawdown_ceiling_relaxes_and_caps():
    config = GateConfig()
    assert drawdown_ceiling(snap(dd=0.1), config) == pytest.approx(0.20)
    assert drawdown_ceiling(snap(dd=0.2), config) == pytest.approx(0.25)

    capped = GateConfig(max_dd_hard_cap=0.22)
    assert drawdown_ceiling(snap(dd=0.2), capped) == pytest.approx(0.22)

    result = evaluate_gates(snap(dd=0.2), snap(pf=3.0, dd=0.24), config=capped)
    assert not result.accepted
    assert "max_dd:" in result.reject_reason


def test_gate_config_merge_ignores_unknown_and_none():
    merged = GateConfig().merged({"min_trades": 10, "max_dd": None, "bogus": 1})
    assert merged.min_trades == 10
    assert merged.max_dd == 0.20
