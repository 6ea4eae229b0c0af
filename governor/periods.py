"""
Calendar and window helpers for the quota ledgers.

Every ledger key (day, month) and every reset time is derived here so the
admission controller and the usage recorder always agree on period
boundaries.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional


MINUTE_WINDOW = timedelta(seconds=60)
RATE_EVENT_RETENTION = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_now(now: Optional[datetime] = None) -> datetime:
    return ensure_aware(now) if now is not None else utcnow()


def _local(now: datetime, tz: tzinfo) -> datetime:
    return ensure_aware(now).astimezone(tz)


def day_key(now: datetime, tz: tzinfo = timezone.utc) -> str:
    """Calendar day key, e.g. 2024-03-07."""
    return _local(now, tz).strftime("%Y-%m-%d")


def month_key(now: datetime, tz: tzinfo = timezone.utc) -> str:
    """Calendar month key, e.g. 2024-03."""
    return _local(now, tz).strftime("%Y-%m")


def start_of_day(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    local = _local(now, tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_next_day(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    # Aware arithmetic is wall-clock, so this lands on local midnight
    return start_of_day(now, tz) + timedelta(days=1)


def start_of_month(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    return start_of_day(now, tz).replace(day=1)


def start_of_next_month(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    first = start_of_month(now, tz)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def window_start(now: datetime, window: timedelta = MINUTE_WINDOW) -> datetime:
    """Start of the sliding window ending at ``now``."""
    return ensure_aware(now) - window
