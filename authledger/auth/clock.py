"""UTC time helpers.

SQLite hands timestamps back without tzinfo even for ``DateTime(timezone=True)``
columns, so every value read from the store goes through ``as_utc`` before it
is compared with ``utcnow()``.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_utc_midnight(now: datetime | None = None) -> datetime:
    """Start of the next UTC day after ``now``."""
    now = as_utc(now) if now is not None else utcnow()
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)
