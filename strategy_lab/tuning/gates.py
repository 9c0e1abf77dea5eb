"""
승인 게이트(acceptance gate) 모듈.

[ 역할 ]
    도전자(challenger)가 챔피언을 대체할 수 있는지 판단.
    절대 기준 2개 + 상대 점수 비교 1개를 모두 통과해야 승인.

[ 게이트 ]
    min_trades : 도전자 거래수 ≥ min_trades (기본 5)
    max_dd     : 도전자 낙폭 ≤ max(max_dd, 챔피언 낙폭 * dd_relax_factor)
                 max_dd_hard_cap이 설정되면 그 값을 넘지 않는다
    score      : 도전자 점수 ≥ 챔피언 점수 (동점 승인)

[ 호출하는 곳 ]
    - tuning/iteration_engine.py::IterationEngine._run_trial()
"""

from dataclasses import dataclass, field, fields
from typing import Any, Optional

from strategy_lab.tuning.scoring import MetricSnapshot, ObjectiveConfig, calculate_score


@dataclass
class GateConfig:
    """게이트 설정. 요청의 gates 필드 또는 config.yaml iteration 섹션에서 온다."""
    min_trades: int = 5
    max_dd: float = 0.20
    dd_relax_factor: float = 1.25
    max_dd_hard_cap: Optional[float] = None

    def merged(self, overrides: Optional[dict[str, Any]]) -> "GateConfig":
        """요청별 오버라이드를 적용한 새 GateConfig."""
        if not overrides:
            return self
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            if key in values and value is not None:
                values[key] = value
        return GateConfig(**values)


@dataclass
class GateEvaluation:
    """evaluate_gates()의 반환값. gate_results는 Iteration 행에 그대로 저장된다."""
    accepted: bool
    score_before: float
    score_after: float
    gate_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    reject_reason: Optional[str] = None


def drawdown_ceiling(champion: MetricSnapshot, config: GateConfig) -> float:
    ceiling = max(config.max_dd, champion.max_drawdown * config.dd_relax_factor)
    if config.max_dd_hard_cap is not None:
        ceiling = min(ceiling, config.max_dd_hard_cap)
    return ceiling


def evaluate_gates(
    champion: MetricSnapshot,
    challenger: MetricSnapshot,
    objective: Optional[ObjectiveConfig] = None,
    config: Optional[GateConfig] = None,
) -> GateEvaluation:
    """챔피언 대비 도전자 게이트 평가."""
    config = config or GateConfig()
    score_before = calculate_score(champion, objective)
    score_after = calculate_score(challenger, objective)
    dd_limit = drawdown_ceiling(champion, config)

    gate_results = {
        "min_trades": {
            "required": config.min_trades,
            "actual": challenger.trades_count,
            "passed": challenger.trades_count >= config.min_trades,
        },
        "max_dd": {
            "required": round(dd_limit, 6),
            "actual": round(challenger.max_drawdown, 6),
            "passed": challenger.max_drawdown <= dd_limit,
        },
        "score": {
            "required": round(score_before, 6),
            "actual": round(score_after, 6),
            "passed": score_after >= score_before,
        },
    }

    failures = []
    for name, result in gate_results.items():
        if result["passed"]:
            continue
        comparator = ">" if name == "max_dd" else "<"
        failures.append(f"{name}: {_fmt(result['actual'])} {comparator} {_fmt(result['required'])}")

    accepted = not failures
    return GateEvaluation(
        accepted=accepted,
        score_before=score_before,
        score_after=score_after,
        gate_results=gate_results,
        reject_reason=None if accepted else "Failed gates: " + ", ".join(failures),
    )


def _fmt(value: Any) -> str:
    if isinstance(value, int):
        return str(value)
    return f"{value:.3f}"
