"""
Civil time helpers.

The CRM works in a single fixed civil timezone. Local wall-clock values are
naive datetimes; instants are timezone-aware UTC datetimes. Conversions between
the two happen only here.
"""
from datetime import datetime, time, timedelta, timezone as dt_timezone, tzinfo
from typing import Optional

from crm_scheduler.core.config import settings


def get_civil_tz(offset_minutes: Optional[int] = None) -> tzinfo:
    minutes = settings.CIVIL_UTC_OFFSET_MINUTES if offset_minutes is None else offset_minutes
    return dt_timezone(timedelta(minutes=minutes))


def now_utc() -> datetime:
    return datetime.now(dt_timezone.utc)


def now_local(tz: Optional[tzinfo] = None) -> datetime:
    return to_local(now_utc(), tz)


def to_utc(local: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """
    Interpret a naive local wall-clock value in the civil timezone and return the UTC instant.
    Aware values are simply converted to UTC.
    """
    if local.tzinfo is None:
        local = local.replace(tzinfo=tz or get_civil_tz())
    return local.astimezone(dt_timezone.utc)


def to_local(instant: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """
    Convert an instant to a naive civil wall-clock value.
    Naive instants are assumed UTC (what sqlite hands back for timestamptz columns).
    """
    instant = to_utc_aware(instant)
    return instant.astimezone(tz or get_civil_tz()).replace(tzinfo=None)


def to_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def parse_time_of_day(value: str) -> time:
    """Parse an 'HH:MM' (or 'HH:MM:SS') wall-clock string as entered in the CRM forms."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def format_time_of_day(value: time) -> str:
    return value.strftime("%H:%M")
