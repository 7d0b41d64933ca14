"""Time Utilities - UTC timestamps and reporting-day arithmetic"""
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_date(dt: datetime, tz_name: str) -> date:
    """Calendar date of an instant in the given time zone"""
    return ensure_utc(dt).astimezone(ZoneInfo(tz_name)).date()


def trailing_days(now: datetime, days: int, tz_name: str) -> List[date]:
    """
    The last `days` calendar dates ending today (inclusive), oldest first.

    Args:
        now: Reference instant
        days: Number of days, at least 1
        tz_name: Time zone defining day boundaries
    """
    today = local_date(now, tz_name)
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def seconds_between(start: datetime, end: datetime) -> float:
    """Seconds from start to end, never negative"""
    return max(0.0, (end - start).total_seconds())
