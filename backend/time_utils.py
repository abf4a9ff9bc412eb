"""
Time utilities for the collaboration backend.

This module provides a single source of truth for time operations,
ensuring consistency across all endpoints and preventing clock drift issues.
"""

import calendar
from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are treated as already being in UTC, which is how they come
    back from databases that do not store offsets.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """
    Shift a datetime by a number of calendar months.

    The day is clamped to the last day of the target month, so Jan 31 + 1
    month is Feb 28 (or Feb 29 in leap years).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def shift(value: datetime, frequency: str, steps: int) -> datetime:
    """
    Move a datetime forward by `steps` units of a recurrence frequency.

    Args:
        value: Anchor datetime
        frequency: One of daily, weekly, monthly, yearly
        steps: Number of frequency units (interval already applied)

    Raises:
        ValueError: If frequency is not supported
    """
    if frequency == "daily":
        return value + timedelta(days=steps)
    if frequency == "weekly":
        return value + timedelta(weeks=steps)
    if frequency == "monthly":
        return add_months(value, steps)
    if frequency == "yearly":
        return add_months(value, 12 * steps)
    raise ValueError(f"Unsupported recurrence frequency: {frequency}")


def truncate(value: datetime, unit: str) -> datetime:
    """
    Truncate a datetime to the start of an hour, day, ISO week or month.

    Used to bucket activity statistics.
    """
    value = ensure_utc(value)
    if unit == "hour":
        return value.replace(minute=0, second=0, microsecond=0)
    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "day":
        return day
    if unit == "week":
        return day - timedelta(days=day.weekday())
    if unit == "month":
        return day.replace(day=1)
    raise ValueError(f"Unsupported bucket unit: {unit}")
