"""Shared utility functions used across bountyscore modules."""
from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(UTC).replace(tzinfo=None)


def utc_naive(dt: datetime | None) -> datetime | None:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def parse_github_datetime(value: str | None) -> datetime | None:
    """Parse GitHub's ``2024-01-31T12:00:00Z`` timestamps into naive UTC."""
    if not value:
        return None
    try:
        return utc_naive(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None
