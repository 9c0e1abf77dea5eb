from datetime import datetime, timedelta, timezone

from strategy_lab.execution.market_hours import is_market_open


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_regular_session_summer():
    # 2024-06-03 월요일, EDT (UTC-4)
    assert not is_market_open(utc(2024, 6, 3, 13, 29))
    assert is_market_open(utc(2024, 6, 3, 13, 30))
    assert is_market_open(utc(2024, 6, 3, 19, 59))
    assert not is_market_open(utc(2024, 6, 3, 20, 0))


def test_regular_session_winter():
    # 2024-01-08 월요일, EST (UTC-5)
    assert not is_market_open(utc(2024, 1, 8, 14, 29))
    assert is_market_open(utc(2024, 1, 8, 14, 30))
    assert not is_market_open(utc(2024, 1, 8, 21, 0))


def test_weekend_closed():
    assert not is_market_open(utc(2024, 6, 8, 15, 0))
    assert not is_market_open(utc(2024, 6, 9, 15, 0))


def test_naive_datetime_is_utc():
    assert is_market_open(datetime(2024, 6, 3, 15, 0))
    assert not is_market_open(datetime(2024, 6, 3, 12, 0))


def test_other_timezone_input():
    seoul = timezone(timedelta(hours=9))
    # 서울 2024-06-04 00:00 = UTC 2024-06-03 15:00
    assert is_market_open(datetime(2024, 6, 4, 0, 0, tzinfo=seoul))
