"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Any = None) -> Optional[str]:
    """Convert a timestamp-like value to an ISO-8601 string.

    Args:
        value: datetime, date, epoch seconds or ISO string (optional, uses current time if None)

    Returns:
        ISO-8601 string, or None if the value cannot be interpreted
    """
    parsed = to_datetime(value) if value is not None else utc_now()
    return parsed.isoformat() if parsed else None


def to_datetime(value: Any) -> Optional[datetime]:
    """Convert a timestamp-like value to an aware datetime.

    Naive values are assumed to be UTC.

    Args:
        value: datetime, date, epoch seconds or ISO string

    Returns:
        datetime object, or None if the value cannot be interpreted
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_display_date(value: Any, default: str = 'Unknown') -> str:
    """Render a timestamp-like value as YYYY-MM-DD for document text."""
    parsed = to_datetime(value)
    return parsed.strftime('%Y-%m-%d') if parsed else default


def elapsed_ms(start: float, end: float) -> float:
    """Milliseconds between two ``time.monotonic()`` readings."""
    return round((end - start) * 1000, 2)
