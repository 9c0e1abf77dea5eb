"""
시스템 공통 예외 정의.

[ 역할 ]
    서비스 경계에서 발생하는 오류를 종류별로 구분.
    호출자는 예외 타입만 보고 재시도 여부 / 격리 여부를 판단한다.

[ 예외 종류 ]
    ConfigurationError    - 템플릿/스키마/그룹 누락, 잘못된 파라미터 JSON, 범위 밖 값.
                            해당 작업은 즉시 중단되고 재시도하지 않는다.
    UpstreamServiceError  - 브로커/시세 API의 2xx 이외 응답. status_code + body 보존.
                            배치 실행 시 배포(deployment) 단위로 격리된다.
    PromotionError        - 버전 승격 규칙 위반. 위반 사유 목록을 담는다.

[ 호출하는 곳 ]
    - tuning/iteration_engine.py, tuning/tuning_job.py (ConfigurationError)
    - brokers/alpaca_broker.py (UpstreamServiceError)
    - execution/execution_loop.py (UpstreamServiceError 격리)
    - versions/version_service.py (PromotionError)
"""


class StrategyLabError(Exception):
    """모든 시스템 예외의 부모 클래스."""


class ConfigurationError(StrategyLabError):
    """설정/데이터 정의 오류. 재시도해도 결과가 같으므로 즉시 실패 처리."""


class UpstreamServiceError(StrategyLabError):
    """외부 서비스(브로커, 시세 API) 호출 실패."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status={self.status_code})"
        return base


class PromotionError(StrategyLabError):
    """승격 조건 미충족."""

    def __init__(self, message: str, violations: list[str] | None = None):
        super().__init__(message)
        self.violations = violations or []
