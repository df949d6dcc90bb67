"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``.

    SQLite hands back naive values for ``DateTime`` columns; everything we
    store is UTC so a naive value is interpreted as such.
    """

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Any) -> Optional[str]:
    """Return ISO 8601 text with a ``Z`` suffix for datetimes, pass others through."""

    if value is None:
        return None
    if isinstance(value, datetime):
        text = ensure_utc(value).isoformat()
        if text.endswith("+00:00"):
            return text[:-6] + "Z"
        return text
    return value


def epoch_millis(dt: Optional[datetime] = None) -> int:
    """Return milliseconds since the epoch for ``dt`` (defaults to now)."""

    moment = ensure_utc(dt) if dt is not None else utc_now()
    return int(moment.timestamp() * 1000)


__all__ = ["utc_now", "ensure_utc", "to_iso", "epoch_millis"]
