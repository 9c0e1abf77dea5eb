"""
미국 정규장 시간 판단.

    월~금 09:30 ~ 16:00 America/New_York (휴장일은 고려하지 않음)
"""

from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

MARKET_TZ = ZoneInfo("America/New_York")
MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)


def is_market_open(now: Optional[datetime] = None) -> bool:
    """now(UTC 기준, naive면 UTC로 간주)가 정규장 시간인지."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(MARKET_TZ)
    if local.weekday() >= 5:
        return False
    return MARKET_OPEN <= local.time() < MARKET_CLOSE
