"""
Wall-clock helpers.

All domain timestamps are timezone-aware UTC.  The controller takes a
``Clock`` so tests can pin "now" to a fixed instant.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_minutes(value: datetime, minutes: float) -> datetime:
    return value + timedelta(minutes=minutes)


def add_hours(value: datetime, hours: float) -> datetime:
    return value + timedelta(hours=hours)


def is_expired(deadline: datetime, now: datetime) -> bool:
    """True once *now* has reached *deadline*."""
    return ensure_utc(now) >= ensure_utc(deadline)


class Clock:
    """Source of the current time."""

    def now(self) -> datetime:
        return utc_now()
