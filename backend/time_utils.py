"""
Time utilities for the TaskFlow API.

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


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite drops tzinfo on round-trip, so values read back from the database
    may be naive even though they were written as UTC.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_expired(expires_at: datetime) -> bool:
    """Check whether an expiry timestamp lies in the past."""
    return ensure_aware(expires_at) < utc_now()


def add_months(value: datetime, months: int) -> datetime:
    """
    Add calendar months, clamping the day to the end of the target month.

    Example:
        >>> add_months(datetime(2026, 1, 31), 1)
        datetime.datetime(2026, 2, 28, 0, 0)
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_due_date(base: datetime, frequency: str, interval: int) -> datetime:
    """
    Compute the next due date of a recurring task.

    Args:
        base: The original due date (or "now" when the task had none)
        frequency: One of 'daily', 'weekly', 'monthly'
        interval: Number of frequency units to advance (>= 1)

    Returns:
        The advanced datetime

    Raises:
        ValueError: If frequency is not a recurring frequency
    """
    if frequency == "daily":
        return base + timedelta(days=interval)
    if frequency == "weekly":
        return base + timedelta(weeks=interval)
    if frequency == "monthly":
        return add_months(base, interval)
    raise ValueError(f"Not a recurring frequency: {frequency}")
