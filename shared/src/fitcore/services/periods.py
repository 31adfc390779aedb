"""Calendar-accurate billing period arithmetic.

All helpers operate on instants: naive values are treated as UTC and results
are returned in UTC. Month and year shifts keep the time of day and clamp the
day-of-month to the last valid day of the target month.
"""

from __future__ import annotations

import calendar
import math
from datetime import UTC, datetime

SECONDS_PER_DAY = 86400


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` forward by ``months`` calendar months.

    ``2024-01-31 + 1 month`` is ``2024-02-29``; ``2023-01-31 + 1 month`` is
    ``2023-02-28``.
    """
    if months < 0:
        raise ValueError("months must be non-negative")
    current = _as_utc(value)
    month_index = current.year * 12 + (current.month - 1) + months
    year, month_zero = divmod(month_index, 12)
    month = month_zero + 1
    last_day = calendar.monthrange(year, month)[1]
    return current.replace(year=year, month=month, day=min(current.day, last_day))


def add_years(value: datetime, years: int) -> datetime:
    """Shift ``value`` forward by ``years``; Feb 29 clamps to Feb 28."""
    if years < 0:
        raise ValueError("years must be non-negative")
    current = _as_utc(value)
    year = current.year + years
    last_day = calendar.monthrange(year, current.month)[1]
    return current.replace(year=year, day=min(current.day, last_day))


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end`` with both ends truncated to midnight UTC.

    The magnitude is rounded up; the sign follows the direction.
    """
    start_day = _as_utc(start).replace(hour=0, minute=0, second=0, microsecond=0)
    end_day = _as_utc(end).replace(hour=0, minute=0, second=0, microsecond=0)
    seconds = (end_day - start_day).total_seconds()
    magnitude = math.ceil(abs(seconds) / SECONDS_PER_DAY)
    return magnitude if seconds >= 0 else -magnitude


def add_interval(value: datetime, interval: str, count: int) -> datetime:
    if interval == "month":
        return add_months(value, count)
    if interval == "year":
        return add_years(value, count)
    raise ValueError(f"Unsupported billing interval '{interval}'")
