from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def to_epoch(value: datetime) -> float:
    """Convert a datetime to epoch seconds, treating naive values as UTC."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(value: float) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""

    return datetime.fromtimestamp(float(value), tz=timezone.utc)
