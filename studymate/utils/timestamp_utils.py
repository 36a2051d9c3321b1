"""
Timestamp utilities for consistent time handling across the system.

All timestamps are stored as fixed-width UTC ISO-8601 strings so that
lexicographic order in the store matches chronological order.
"""

import calendar
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple

ISO_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC.

    Args:
        value: datetime, naive or aware

    Returns:
        Aware datetime
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_iso(value: Optional[datetime] = None) -> str:
    """Convert datetime to the stored UTC string format.

    Args:
        value: datetime (optional, uses current time if None)

    Returns:
        Timestamp string such as ``2024-05-06T00:00:00.000000Z``
    """
    if value is None:
        value = utc_now()
    return ensure_aware(value).astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp string into an aware UTC datetime.

    Args:
        value: Timestamp string, or None

    Returns:
        datetime object, or None when value is empty
    """
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return ensure_aware(datetime.fromisoformat(value)).astimezone(timezone.utc)


def start_of_week(now: datetime) -> datetime:
    """Return Monday 00:00 of the week containing ``now``, in the timezone of ``now``."""
    now = ensure_aware(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=now.weekday())


def week_days(now: datetime) -> List[date]:
    """Return the seven calendar days of the week containing ``now``, Monday first."""
    monday = start_of_week(now).date()
    return [monday + timedelta(days=offset) for offset in range(7)]


def month_window(year: int, month: int, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    """Return the inclusive bounds of a calendar month.

    Args:
        year: Four digit year
        month: Month number, 1-12
        tz: Timezone of the month boundaries (UTC if None)

    Returns:
        Tuple of (first instant, last instant) of the month

    Raises:
        ValueError: If month is outside 1-12
    """
    if not 1 <= month <= 12:
        raise ValueError(f'Month must be between 1 and 12, got {month}')
    tz = tz or timezone.utc
    last_day = calendar.monthrange(year, month)[1]
    start = datetime(year, month, 1, tzinfo=tz)
    end = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=tz)
    return start, end
