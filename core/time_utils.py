"""UTC helpers shared by the billing services."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

_SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise aware ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: object) -> Optional[datetime]:
    """Convert a unix timestamp (seconds) into an aware UTC datetime."""

    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def days_until(ends_at: datetime, now: datetime) -> int:
    """Whole days left until ``ends_at``, rounding partial days up."""

    remaining = (ensure_utc(ends_at) - ensure_utc(now)).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / _SECONDS_PER_DAY)


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Return the first instant of the UTC calendar month and of the next one."""

    current = ensure_utc(now)
    start = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by calendar months, clamping the day to the target month's length."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    if month == 12:
        last_day = 31
    else:
        last_day = (value.replace(year=year, month=month + 1, day=1) - timedelta(days=1)).day
    return value.replace(year=year, month=month, day=min(value.day, last_day))


__all__ = ["add_months", "days_until", "ensure_utc", "from_timestamp", "month_bounds", "utcnow"]
