"""
설정 관리 모듈.

[ 역할 ]
    config.yaml (또는 .json) 파일을 파싱하여 Config 객체로 변환.
    상태 저장소, 봉 저장소, 브로커, 반복 엔진, 실행 루프, 백테스트, 로깅 설정을 통합 관리.

[ 설정 파일 구조 (config.yaml) ]
    database:         → DatabaseConfig (SQLAlchemy 상태 저장소)
    clickhouse:       → ClickHouseConfig (과거 봉 저장소)
    broker:           → BrokerConfig (Alpaca 키 / URL)
    iteration:        → IterationConfig (반복 엔진 기본값 + 게이트)
    execution:        → ExecutionConfig (실행 루프)
    backtest:         → BacktestConfig (초기 자본, 비용 모델)
    log_level:        → "INFO" / "DEBUG"
    log_dir:          → 로그 디렉토리 경로

    섹션별로 모르는 키는 무시한다.
    ALPACA_API_KEY / ALPACA_SECRET_KEY 환경변수가 있으면 broker 섹션 키보다 우선.

[ 호출하는 곳 ]
    - run_*.py 진입점에서 Config.from_yaml()로 로드
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from strategy_lab.data.portfolio import CostModel
from strategy_lab.tuning.gates import GateConfig


@dataclass
class DatabaseConfig:
    """상태 저장소 설정. config.yaml의 database 섹션에 대응."""
    url: str = "sqlite:///strategy_lab.db"
    echo: bool = False


@dataclass
class ClickHouseConfig:
    """과거 봉 저장소 설정. config.yaml의 clickhouse 섹션에 대응."""
    host: str = "localhost"
    port: int = 8123
    database: str = "default"
    user: str = "default"
    password: str = "password"


@dataclass
class BrokerConfig:
    """Alpaca 브로커 설정. config.yaml의 broker 섹션에 대응."""
    api_key: str = ""
    secret_key: str = ""
    trading_base_url: str = "https://paper-api.alpaca.markets/v2"
    data_base_url: str = "https://data.alpaca.markets/v2"
    timeout: float = 10.0
    data_feed: Optional[str] = None   # iex / sip


@dataclass
class IterationConfig:
    """반복 엔진 기본값. config.yaml의 iteration 섹션에 대응."""
    max_iterations: int = 10
    mutation_aggressiveness: float = 0.5
    max_iterations_limit: int = 100
    backtest_timeout: float = 300.0
    poll_interval: float = 1.0
    gates: GateConfig = field(default_factory=GateConfig)


@dataclass
class ExecutionConfig:
    """실행 루프 설정. config.yaml의 execution 섹션에 대응."""
    timeframe: str = "5m"
    bar_limit: int = 100
    min_bars: int = 20
    buying_power_fraction: float = 0.9
    lease_ttl_seconds: int = 120
    orders_sync_limit: int = 50


@dataclass
class BacktestConfig:
    """백테스트 설정. config.yaml의 backtest 섹션에 대응."""
    initial_capital: float = 100_000
    commission_per_share: float = 0.01
    slippage_per_share: float = 0.005
    fixed_cost_per_trade: float = 0.0
    default_qty: int = 100

    @property
    def cost_model(self) -> CostModel:
        return CostModel(
            commission_per_share=self.commission_per_share,
            slippage_per_share=self.slippage_per_share,
            fixed_cost_per_trade=self.fixed_cost_per_trade,
        )


def _section(cls, data: Optional[dict[str, Any]]):
    """dataclass 필드에 있는 키만 골라 섹션 생성."""
    data = data or {}
    return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Config:
    """전체 설정. from_yaml() 또는 from_json()으로 파일에서 로드."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    clickhouse: ClickHouseConfig = field(default_factory=ClickHouseConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    iteration: IterationConfig = field(default_factory=IterationConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    log_level: str = "INFO"
    log_dir: str = "logs"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """YAML 파일에서 설정 로드."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls._from_dict(data or {})

    @classmethod
    def from_json(cls, path: str | Path) -> "Config":
        """JSON 파일에서 설정 로드."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls._from_dict(data or {})

    @classmethod
    def load(cls, path: str | Path) -> "Config":
        """파일이 있으면 로드, 없으면 기본값 (환경변수 오버라이드는 항상 적용)."""
        path = Path(path)
        if not path.exists():
            return cls._from_dict({})
        if path.suffix == ".json":
            return cls.from_json(path)
        return cls.from_yaml(path)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """딕셔너리에서 Config 생성."""
        iteration_data = dict(data.get("iteration") or {})
        gates = GateConfig().merged(iteration_data.pop("gates", None))
        iteration = _section(IterationConfig, iteration_data)
        iteration.gates = gates

        broker = _section(BrokerConfig, data.get("broker"))
        broker.api_key = os.environ.get("ALPACA_API_KEY") or broker.api_key
        broker.secret_key = os.environ.get("ALPACA_SECRET_KEY") or broker.secret_key

        return cls(
            database=_section(DatabaseConfig, data.get("database")),
            clickhouse=_section(ClickHouseConfig, data.get("clickhouse")),
            broker=broker,
            iteration=iteration,
            execution=_section(ExecutionConfig, data.get("execution")),
            backtest=_section(BacktestConfig, data.get("backtest")),
            log_level=data.get("log_level", "INFO"),
            log_dir=data.get("log_dir", "logs"),
        )

    def to_dict(self) -> dict[str, Any]:
        """딕셔너리로 변환."""
        return asdict(self)

    def save_yaml(self, path: str | Path) -> None:
        """YAML 파일로 저장."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, allow_unicode=True, default_flow_style=False)
