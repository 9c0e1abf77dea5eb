"""
시그널 생성기(전략 템플릿) 모듈.

[ 전략 등록 방식 ]
    @register("템플릿ID", schema=PARAM_SCHEMA) 데코레이터를 붙이면
    TEMPLATE_REGISTRY에 자동 등록.
    백테스트 엔진 / 실행 루프는 템플릿 ID만으로 시그널 생성기를 찾는다.

[ 새 전략 추가 방법 ]
    1. 이 디렉토리에 새 .py 파일 생성
    2. (bars, params, position) → Signal 형태의 순수 함수 작성
    3. PARAM_SCHEMA(파라미터 정의)와 함께 @register("템플릿ID") 데코레이터 추가
    → 끝. 엔진/실행 루프 수정 불필요.
"""

from dataclasses import dataclass
from importlib import import_module
from pathlib import Path
from typing import Any

from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.core.trading_strategy import SignalGenerator


@dataclass(frozen=True)
class SignalTemplate:
    """등록된 전략 템플릿. param_schema는 storage의 StrategyTemplate 행 시드로도 쓰인다."""
    template_id: str
    name: str
    generate: SignalGenerator
    param_schema: dict[str, Any]
    description: str = ""


# 템플릿 ID → 템플릿 매핑
TEMPLATE_REGISTRY: dict[str, SignalTemplate] = {}


def register(template_id: str, schema: dict[str, Any], name: str = "", description: str = ""):
    """시그널 생성 함수를 TEMPLATE_REGISTRY에 등록하는 데코레이터."""
    def decorator(func: SignalGenerator):
        TEMPLATE_REGISTRY[template_id] = SignalTemplate(
            template_id=template_id,
            name=name or template_id,
            generate=func,
            param_schema=schema,
            description=description or (func.__doc__ or "").strip().splitlines()[0],
        )
        return func
    return decorator


def get_template(template_id: str) -> SignalTemplate:
    """템플릿 ID로 등록된 템플릿 조회.

    Raises:
        ConfigurationError: 등록되지 않은 템플릿 ID
    """
    if template_id not in TEMPLATE_REGISTRY:
        available = ", ".join(sorted(TEMPLATE_REGISTRY.keys()))
        raise ConfigurationError(f"알 수 없는 템플릿: '{template_id}'. 사용 가능: {available}")
    return TEMPLATE_REGISTRY[template_id]


def get_signal_generator(template_id: str) -> SignalGenerator:
    return get_template(template_id).generate


def list_templates() -> list[str]:
    """등록된 템플릿 ID 목록 반환."""
    return sorted(TEMPLATE_REGISTRY.keys())


def _auto_discover():
    """이 디렉토리의 모든 전략 모듈을 자동 임포트하여 @register가 실행되게 한다."""
    strategies_dir = Path(__file__).parent
    for py_file in strategies_dir.glob("*.py"):
        if py_file.name.startswith("_"):
            continue
        module_name = f"strategy_lab.strategies.{py_file.stem}"
        import_module(module_name)


# 모듈 로드 시 자동 탐색
_auto_discover()
