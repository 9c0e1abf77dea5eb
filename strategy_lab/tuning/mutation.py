"""
파라미터 변이(mutation) 모듈.

[ 역할 ]
    현재 챔피언 파라미터에서 숫자형 파라미터 딱 1개를 무작위로 골라 조금 움직인다.
    국소 탐색(hill climbing)용. 스키마 범위를 절대 벗어나지 않는다.

[ 변이 규칙 ]
    int   : 현재값 ± k*step,  k ~ U{1 .. max(1, 2*ceil(aggressiveness))}
    float : 현재값 * (1 + U(-0.05, 0.05) * aggressiveness)
    둘 다 [min, max]로 자르고 가장 가까운 step으로 맞춘다.

[ 방향 편향 (튜닝 잡 전용) ]
    bias[key] = "higher" / "wider"  → 증가 방향만
    bias[key] = "lower" / "tighter" → 감소 방향만

[ 호출하는 곳 ]
    - tuning/iteration_engine.py (반복 루프의 Mutate 단계)
    - tuning/tuning_job.py (트라이얼 후보 생성)
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from strategy_lab.tuning.schema import ParamDefinition, ParamSchema

FLOAT_MUTATION_RANGE = 0.05

INCREASE_BIAS = ("higher", "wider")
DECREASE_BIAS = ("lower", "tighter")


@dataclass
class MutationResult:
    """mutate_params()의 반환값."""
    params: dict[str, Any]
    key: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    param_diff: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.key is not None and self.old_value != self.new_value


def _direction(bias: Optional[str], rng: np.random.Generator) -> int:
    if bias in INCREASE_BIAS:
        return 1
    if bias in DECREASE_BIAS:
        return -1
    return 1 if rng.random() < 0.5 else -1


def mutate_value(
    definition: ParamDefinition,
    current: float,
    aggressiveness: float,
    rng: np.random.Generator,
    bias: Optional[str] = None,
) -> float:
    """단일 숫자형 파라미터 변이."""
    if definition.type == "int":
        step = float(definition.step or 1)
        max_steps = max(1, 2 * math.ceil(aggressiveness))
        k = int(rng.integers(1, max_steps + 1))
        candidate = float(current) + _direction(bias, rng) * k * step
        return int(round(definition.snap(candidate)))

    delta = rng.uniform(-FLOAT_MUTATION_RANGE, FLOAT_MUTATION_RANGE) * aggressiveness
    if bias in INCREASE_BIAS:
        delta = abs(delta)
    elif bias in DECREASE_BIAS:
        delta = -abs(delta)
    candidate = float(current) * (1 + delta)
    return definition.snap(candidate)


def mutate_params(
    params: dict[str, Any],
    schema: ParamSchema,
    aggressiveness: float = 0.5,
    rng: Optional[np.random.Generator] = None,
    bias: Optional[dict[str, str]] = None,
) -> MutationResult:
    """숫자형 파라미터 1개를 변이한 새 파라미터 dict 반환. 입력은 변경하지 않는다.

    Args:
        params: 현재 챔피언 파라미터
        schema: 템플릿 파라미터 스키마
        aggressiveness: 변이 강도 [0, 1] (범위 밖이면 잘라냄)
        rng: 난수 생성기 (재현성이 필요하면 시드 고정)
        bias: 키별 방향 편향. 주어지면 편향 키 중에서만 고른다.
    """
    rng = rng or np.random.default_rng()
    aggressiveness = min(1.0, max(0.0, float(aggressiveness)))
    new_params = dict(params)

    candidates = schema.numeric_params()
    if bias:
        biased = [p for p in candidates if p.key in bias]
        candidates = biased or candidates
    if not candidates:
        return MutationResult(params=new_params)

    definition = candidates[int(rng.integers(0, len(candidates)))]
    key = definition.key
    current = params.get(key, definition.default)
    if current is None:
        current = definition.min if definition.min is not None else 0

    new_value = mutate_value(definition, current, aggressiveness, rng, (bias or {}).get(key))
    new_params[key] = new_value

    return MutationResult(
        params=new_params,
        key=key,
        old_value=current,
        new_value=new_value,
        param_diff={key: {"from": current, "to": new_value}},
    )
