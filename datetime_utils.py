from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def later_of(current: Optional[datetime], candidate: datetime) -> datetime:
    """Return ``candidate`` unless it would move ``current`` backwards."""

    candidate = ensure_utc(candidate)
    previous = ensure_utc(current)
    if previous is not None and previous > candidate:
        return previous
    return candidate


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to RFC3339 in UTC, keeping microseconds."""

    if dt is None:
        return None
    value = ensure_utc(dt)
    return value.isoformat().replace("+00:00", "Z")


__all__ = [
    "UTC",
    "ensure_utc",
    "later_of",
    "to_rfc3339_utc",
    "utc_now",
]
