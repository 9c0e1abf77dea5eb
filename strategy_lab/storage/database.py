"""
상태 저장소 연결 모듈.

[ 역할 ]
    SQLAlchemy 엔진 / 세션 팩토리 생성, 테이블 초기화, 트랜잭션 스코프 제공.

[ 호출하는 곳 ]
    - run_*.py 진입 스크립트 (config.database.url 로 연결)
    - tests/conftest.py (sqlite:///:memory:)
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from strategy_lab.storage.models import Base

logger = logging.getLogger("strategy_lab.storage")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """DB URL로 엔진 생성. SQLite면 스레드 검사를 끈다."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """모든 테이블 생성 (이미 있으면 건너뜀)."""
    Base.metadata.create_all(engine)
    logger.info(f"상태 저장소 초기화 완료: {engine.url}")


def create_session_factory(url: str, echo: bool = False, initialize: bool = True) -> sessionmaker:
    engine = create_db_engine(url, echo=echo)
    if initialize:
        init_db(engine)
    return sessionmaker(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """세션 컨텍스트. 정상 종료 시 commit, 예외 시 rollback 후 재발생."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
