"""Shared utility helpers for voice-economy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from math import floor


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse a stored ISO timestamp string to a timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # Naive timestamps are stored as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds for *dt*."""
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def from_ms(ms: int) -> datetime:
    """Timezone-aware UTC datetime for epoch milliseconds."""
    return _EPOCH + timedelta(milliseconds=ms)


def start_of_day(dt: datetime) -> datetime:
    """00:00:00 UTC of the day containing *dt*."""
    dt = dt.astimezone(timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(dt: datetime) -> datetime:
    """23:59:59.999 UTC of the day containing *dt*."""
    return start_of_day(dt) + timedelta(days=1) - timedelta(milliseconds=1)


def start_of_week(dt: datetime) -> datetime:
    """Monday 00:00:00 UTC of the week containing *dt*."""
    day = start_of_day(dt)
    return day - timedelta(days=day.weekday())


def start_of_month(dt: datetime) -> datetime:
    """1st of the month 00:00:00 UTC."""
    return start_of_day(dt).replace(day=1)


def date_str(dt: datetime) -> str:
    """Return the UTC date of *dt* as YYYY-MM-DD."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d")


def floor_mul(value: int | float, factor: int | float) -> int:
    """floor(value × factor) without binary float drift (0.57 × 100 is 57, not 56)."""
    return floor(Decimal(str(value)) * Decimal(str(factor)))
