"""
파라미터 스키마 모듈.

[ 역할 ]
    템플릿의 param_schema(JSON)를 ParamSchema 객체로 파싱하고,
    버전 파라미터가 스키마를 만족하는지 검증.

[ 스키마 형식 ]
    {"params": [{"key", "type", "min", "max", "step", "default", "label", "values", "depends_on"}, ...]}
    type: int / float / bool / enum

[ 호출하는 곳 ]
    - tuning/mutation.py (숫자형 파라미터 목록, 범위/스텝)
    - tuning/iteration_engine.py (시드 버전 생성 시 기본값)
    - versions/version_service.py (버전 생성 시 검증)
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from strategy_lab.core.exceptions import ConfigurationError

PARAM_TYPES = ("int", "float", "bool", "enum")


@dataclass
class ParamDefinition:
    """단일 파라미터 정의."""
    key: str
    type: str
    default: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    label: str = ""
    values: list[Any] = field(default_factory=list)   # enum 허용값
    depends_on: Optional[str] = None

    @property
    def is_numeric(self) -> bool:
        return self.type in ("int", "float")

    def clamp(self, value: float) -> float:
        if self.min is not None:
            value = max(float(self.min), value)
        if self.max is not None:
            value = min(float(self.max), value)
        return value

    def snap(self, value: float) -> float:
        """가장 가까운 step 격자로 맞춘 뒤 범위 안으로 다시 자른다."""
        if self.step:
            base = float(self.min) if self.min is not None else 0.0
            steps = round((value - base) / float(self.step))
            value = base + steps * float(self.step)
        value = self.clamp(value)
        return round(value, 10)

    def validate(self, value: Any) -> list[str]:
        """값 검증. 위반 사항 메시지 목록 반환 (없으면 빈 리스트)."""
        errors = []
        if self.is_numeric:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return [f"{self.key}: 숫자가 아님 ({value!r})"]
            if self.min is not None and value < self.min:
                errors.append(f"{self.key}: {value} < min {self.min}")
            if self.max is not None and value > self.max:
                errors.append(f"{self.key}: {value} > max {self.max}")
        elif self.type == "bool":
            if not isinstance(value, bool):
                errors.append(f"{self.key}: bool이 아님 ({value!r})")
        elif self.type == "enum":
            if self.values and value not in self.values:
                errors.append(f"{self.key}: 허용값 {self.values} 에 없음 ({value!r})")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParamDefinition":
        if "key" not in data or "type" not in data:
            raise ConfigurationError(f"파라미터 정의에 key/type 누락: {data}")
        if data["type"] not in PARAM_TYPES:
            raise ConfigurationError(f"알 수 없는 파라미터 타입: {data['type']} ({data['key']})")
        return cls(
            key=str(data["key"]),
            type=str(data["type"]),
            default=data.get("default"),
            min=data.get("min"),
            max=data.get("max"),
            step=data.get("step"),
            label=data.get("label", ""),
            values=list(data.get("values") or []),
            depends_on=data.get("depends_on"),
        )


@dataclass
class ParamSchema:
    """템플릿의 파라미터 스키마."""
    params: list[ParamDefinition] = field(default_factory=list)

    def __post_init__(self):
        self._by_key = {p.key: p for p in self.params}

    def get(self, key: str) -> Optional[ParamDefinition]:
        return self._by_key.get(key)

    @property
    def keys(self) -> list[str]:
        return [p.key for p in self.params]

    def numeric_params(self) -> list[ParamDefinition]:
        return [p for p in self.params if p.is_numeric]

    def defaults(self) -> dict[str, Any]:
        return {p.key: p.default for p in self.params if p.default is not None}

    def validate(self, params: dict[str, Any]) -> None:
        """버전 파라미터 검증.

        Raises:
            ConfigurationError: 스키마에 없는 키, 범위 밖 값, 타입 불일치
        """
        errors = []
        for key, value in params.items():
            definition = self._by_key.get(key)
            if definition is None:
                errors.append(f"{key}: 스키마에 없는 파라미터")
                continue
            errors.extend(definition.validate(value))
        if errors:
            raise ConfigurationError("파라미터 검증 실패: " + "; ".join(errors))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | list | None) -> "ParamSchema":
        """스키마 dict(또는 params 리스트)를 파싱."""
        if data is None:
            raise ConfigurationError("파라미터 스키마가 없습니다.")
        items = data.get("params") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ConfigurationError("파라미터 스키마 형식 오류: 'params' 리스트가 필요합니다.")
        return cls(params=[ParamDefinition.from_dict(item) for item in items])

    @classmethod
    def from_json(cls, text: str | None) -> "ParamSchema":
        if not text:
            raise ConfigurationError("파라미터 스키마가 비어 있습니다.")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"파라미터 스키마 JSON 파싱 실패: {e}") from e
        return cls.from_dict(data)
