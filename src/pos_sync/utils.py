"""Date and time helpers shared across sync, gate and rotation."""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from pos_sync.exceptions import ValidationError

Clock = Callable[[], datetime]

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_date(s: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` string.

    Args:
        s: Date string.

    Returns:
        Parsed date.

    Raises:
        ValidationError: If the string is not a valid ISO calendar date.

    Examples:
        >>> parse_date("2025-01-31")
        datetime.date(2025, 1, 31)
    """
    if not isinstance(s, str) or not _DATE_RE.match(s):
        raise ValidationError(f"Invalid date {s!r}, expected YYYY-MM-DD")
    try:
        return date.fromisoformat(s)
    except ValueError as e:
        raise ValidationError(f"Invalid date {s!r}: {e}") from e


def parse_instant(value: Any) -> datetime:
    """Parse a vendor timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with ``Z`` or an offset), epoch seconds or
    milliseconds, and datetimes. Naive values are taken as UTC.

    Raises:
        ValueError: If the value cannot be interpreted as an instant.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        # Millisecond epochs are what JS-based POS exports emit.
        seconds = value / 1000 if abs(value) > 1e11 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Serialize an aware datetime as ISO-8601 with a ``Z`` suffix."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(s: str | None) -> datetime | None:
    """Inverse of :func:`to_iso`; tolerates ``None`` and empty strings."""
    if not s:
        return None
    return parse_instant(s)


def yesterday_utc(now: datetime | None = None) -> date:
    """Calendar date before ``now`` in UTC."""
    now = now or utc_now()
    return (now.astimezone(timezone.utc) - timedelta(days=1)).date()


def millis_between(later: datetime, earlier: datetime) -> int:
    """Whole milliseconds from ``earlier`` to ``later`` (never negative)."""
    delta = (later - earlier).total_seconds() * 1000
    return max(0, int(delta))
