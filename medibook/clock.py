# medibook/clock.py
from datetime import datetime
from zoneinfo import ZoneInfo

from .config import get_settings


def now() -> datetime:
    """Current wall-clock time in the clinic timezone, as a naive datetime.

    Working hours and appointment times are stored without a timezone, so every
    comparison against them goes through this single clock.
    """
    tz = ZoneInfo(get_settings().clinic_timezone)
    return datetime.now(tz).replace(tzinfo=None)
