import logging

from strategy_lab.utils.logger import setup_logger


def _cleanup(logger):
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_file_only_logger_quiets_library_loggers(tmp_path):
    logger = setup_logger("strategy_lab.tick_test", level="INFO", log_dir=str(tmp_path), console=False)
    try:
        assert [type(h) for h in logger.handlers] == [logging.FileHandler]
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING

        logger.info("tick done")
        log_files = list(tmp_path.glob("strategy_lab_tick_test_*.log"))
        assert len(log_files) == 1
        logger.handlers[0].flush()
        assert "tick done" in log_files[0].read_text(encoding="utf-8")

        again = setup_logger("strategy_lab.tick_test", level="INFO", log_dir=str(tmp_path), console=False)
        assert len(again.handlers) == 1
    finally:
        _cleanup(logger)


def test_debug_level_keeps_library_output(tmp_path):
    logger = setup_logger(
        "strategy_lab.debug_test", level="DEBUG", log_dir=str(tmp_path), library_loggers=["clickhouse_connect"],
    )
    try:
        assert logging.getLogger("clickhouse_connect").level == logging.DEBUG
        assert len(logger.handlers) == 2
    finally:
        _cleanup(logger)
        logging.getLogger("clickhouse_connect").setLevel(logging.NOTSET)
