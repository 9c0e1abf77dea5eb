"""
로깅 모듈.

[ 역할 ]
    파일 + 콘솔 로거를 설정. 반복 엔진 시행, 주문 실행 내역, 에러 등을 기록.
    실행 루프의 상태 전이는 여기와 별도로 runner_logs 테이블에도 남는다.

[ 로그 파일 위치 ]
    {log_dir}/{name}_{YYYYMMDD}.log (예: logs/strategy_lab_20240601.log)

[ 외부 라이브러리 로거 ]
    SQLAlchemy 엔진 / urllib3(requests) / clickhouse_connect 는 DEBUG가 아니면
    WARNING 이상만 남긴다. tick마다 쏟아지는 SQL, HTTP 연결 로그를 막기 위함.

[ 호출하는 곳 ]
    - run_*.py 진입점에서 setup_logger() 호출
    - 각 모듈은 logging.getLogger("strategy_lab.<영역>") 사용
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable

LIBRARY_LOGGERS = ("sqlalchemy.engine", "urllib3", "clickhouse_connect")


def setup_logger(
    name: str = "strategy_lab",
    level: str = "INFO",
    log_dir: str = "logs",
    console: bool = True,
    library_loggers: Iterable[str] = LIBRARY_LOGGERS,
) -> logging.Logger:
    """로거 설정. 파일 핸들러(일별) + 콘솔 핸들러 등록."""
    log_level = getattr(logging, level.upper())
    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    library_level = log_level if log_level <= logging.DEBUG else logging.WARNING
    for library in library_loggers:
        logging.getLogger(library).setLevel(library_level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # 파일 핸들러
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    today = datetime.now().strftime("%Y%m%d")
    file_handler = logging.FileHandler(
        log_path / f"{name.replace('.', '_')}_{today}.log",
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    # 콘솔 핸들러 (cron tick은 console=False로 파일만)
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger
