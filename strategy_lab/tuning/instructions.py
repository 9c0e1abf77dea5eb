"""
튜닝 지시문 파서.

[ 역할 ]
    "minimize drawdown, fewer trades" 같은 자연어 지시문을
    목적함수 가중치(ObjectiveConfig) + 파라미터별 변이 방향(mutation_bias)으로 바꾼다.
    키워드가 여러 개면 뒤에 나온 규칙이 가중치를 덮어쓰고, 편향은 누적된다.

[ 호출하는 곳 ]
    - tuning/tuning_job.py::start_tuning_job()
"""

from dataclasses import dataclass, field
from typing import Any

from strategy_lab.tuning.scoring import ObjectiveConfig


@dataclass
class ParsedInstructions:
    objective: ObjectiveConfig = field(default_factory=ObjectiveConfig)
    mutation_bias: dict[str, str] = field(default_factory=dict)
    summary: str = "Standard optimization: balanced PF, win rate, return with DD penalty."

    def to_dict(self) -> dict[str, Any]:
        return {
            "objective_config": self.objective.to_dict(),
            "mutation_bias": dict(self.mutation_bias),
            "parsed_summary": self.summary,
        }


# (키워드, 가중치 덮어쓰기, 변이 편향, 요약)
_RULES: list[tuple[tuple[str, ...], dict[str, float], dict[str, str], str]] = [
    (
        ("minimize drawdown", "reduce dd", "low drawdown"),
        {"dd_penalty": 0.35, "pf_weight": 0.25, "sharpe_weight": 0.25, "return_weight": 0.15},
        {"stop_atr_mult": "tighter", "takeprofit_atr_mult": "tighter"},
        "Prioritizing drawdown reduction: tighter stops, lower position risk.",
    ),
    (
        ("maximize return", "higher return", "more profit"),
        {"return_weight": 0.40, "pf_weight": 0.30, "dd_penalty": 0.10, "sharpe_weight": 0.20},
        {"takeprofit_atr_mult": "wider"},
        "Prioritizing returns: wider targets, accepting more risk.",
    ),
    (
        ("fewer trades", "less trades", "higher quality"),
        {},
        {"breakout_pct": "higher", "rsi_oversold": "lower", "rsi_overbought": "higher",
         "max_trades_per_day": "lower"},
        "Quality over quantity: stricter entry filters, fewer trades.",
    ),
    (
        ("more trades", "higher frequency", "trade more often"),
        {},
        {"breakout_pct": "lower", "rsi_oversold": "higher", "rsi_overbought": "lower",
         "max_trades_per_day": "higher"},
        "Higher frequency: looser entry filters, more trades.",
    ),
    (
        ("opposite", "contrarian", "inverse"),
        {},
        {"stop_atr_mult": "wider", "takeprofit_atr_mult": "tighter"},
        "Contrarian: wider stops, tighter targets. Experimental approach.",
    ),
    (
        ("sharpe", "risk-adjusted", "consistency"),
        {"sharpe_weight": 0.40, "pf_weight": 0.25, "return_weight": 0.20, "dd_penalty": 0.15},
        {},
        "Risk-adjusted focus: maximizing consistency.",
    ),
    (
        ("scalp", "quick trades", "fast"),
        {},
        {"takeprofit_atr_mult": "tighter", "stop_atr_mult": "tighter", "max_trades_per_day": "higher"},
        "Scalping mode: quick entries/exits, tight targets.",
    ),
    (
        ("swing", "longer hold", "patient"),
        {},
        {"takeprofit_atr_mult": "wider", "lookback_bars": "higher", "max_trades_per_day": "lower"},
        "Swing mode: patient entries, wider targets.",
    ),
]


def parse_instructions(instructions: str) -> ParsedInstructions:
    """자연어 지시문 → ParsedInstructions. 빈 문자열이면 기본값."""
    parsed = ParsedInstructions()
    lower = (instructions or "").lower()
    if not lower.strip():
        return parsed

    weights = parsed.objective.to_dict()
    for keywords, overrides, bias, summary in _RULES:
        if any(k in lower for k in keywords):
            weights.update(overrides)
            parsed.mutation_bias.update(bias)
            parsed.summary = summary

    parsed.objective = ObjectiveConfig.from_dict(weights)
    return parsed
