from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from ..config import get_settings


@lru_cache
def display_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().display_timezone)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_naive_to_local(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc).astimezone(display_tz())
