"""
Time helpers.

Scoring never reads the wall clock: callers pass an explicit ``as_of``
timestamp and the helpers here convert attribute values relative to it.
Only the service boundary calls ``utcnow()`` to pick that timestamp.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce an attribute value into an aware UTC datetime.

    Accepts ``datetime``, ``date`` (midnight UTC), ISO-8601 strings (a trailing
    ``Z`` is understood) and ``None``.

    Returns:
        Aware UTC datetime, or ``None`` when ``value`` is ``None`` or empty.

    Raises:
        ValueError: If a string cannot be parsed.
        TypeError: If the value has an unsupported type.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise TypeError(f"Cannot interpret {type(value).__name__} as a timestamp.")


def days_between(earlier: datetime, later: datetime) -> float:
    """Return fractional days from ``earlier`` to ``later`` (negative if reversed)."""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 86_400.0


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime as a ``YYYY-MM-DDTHH:MM:SS.ffffffZ`` string."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
