"""
실행 구성요소 생성 모듈.

[ 역할 ]
    Config로부터 상태 저장소 리포지토리, 봉 데이터 제공자, 브로커를 만든다.
    진입 스크립트마다 반복되는 연결 코드를 한 곳에 모은다.

[ 데이터 소스 ]
    clickhouse - 과거 봉 저장소 (백테스트 / 튜닝 기본값)
    alpaca     - 시세 API (실행 루프 기본값)
    sample     - 가상 분봉 (드라이런)

[ 호출하는 곳 ]
    - run_backtest.py, run_iteration.py, run_tuning.py, run_paper.py
"""

import logging
from datetime import date, timedelta
from typing import Optional

from strategy_lab.brokers.alpaca_broker import AlpacaBroker, AlpacaDataProvider
from strategy_lab.brokers.mock_broker import MockBroker, MockDataProvider
from strategy_lab.core.broker_api import BrokerAPI
from strategy_lab.core.data_provider import DataProvider
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.data.clickhouse_provider import ClickHouseDataProvider
from strategy_lab.data.sample_data import generate_sample_bars
from strategy_lab.storage.database import create_session_factory
from strategy_lab.storage.repository import Repository
from strategy_lab.utils.config import Config

logger = logging.getLogger("strategy_lab.factory")

DATA_SOURCES = ("clickhouse", "alpaca", "sample")


def open_repository(config: Config) -> Repository:
    """상태 저장소 연결 + 템플릿 레지스트리 동기화."""
    factory = create_session_factory(config.database.url, echo=config.database.echo)
    repo = Repository(factory())
    repo.sync_registered_templates()
    repo.commit()
    return repo


def create_data_provider(
    config: Config,
    source: str,
    symbols: Optional[list[str]] = None,
) -> DataProvider:
    """데이터 소스 이름으로 DataProvider 생성."""
    if source == "clickhouse":
        ch = config.clickhouse
        return ClickHouseDataProvider(ch.host, ch.port, ch.database, ch.user, ch.password)

    if source == "alpaca":
        broker = config.broker
        return AlpacaDataProvider(
            broker.api_key, broker.secret_key, broker.data_base_url, broker.timeout,
            symbols=symbols, feed=broker.data_feed,
        )

    if source == "sample":
        provider = MockDataProvider()
        end = date.today()
        start = end - timedelta(days=90)
        for symbol in symbols or ["QQQ"]:
            provider.load_data(symbol, generate_sample_bars(symbol, start, end, config.execution.timeframe))
            logger.info(f"샘플 데이터 생성: {symbol} ({start} ~ {end})")
        return provider

    raise ConfigurationError(f"알 수 없는 데이터 소스: {source} (사용 가능: {', '.join(DATA_SOURCES)})")


def create_broker(config: Config, mock: bool = False) -> BrokerAPI:
    """Alpaca 페이퍼 브로커 (mock=True면 메모리 브로커)."""
    if mock:
        return MockBroker(initial_cash=config.backtest.initial_capital)
    broker = config.broker
    return AlpacaBroker(broker.api_key, broker.secret_key, broker.trading_base_url, broker.timeout)
