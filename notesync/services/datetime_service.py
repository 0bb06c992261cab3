"""Timestamp handling: lax client input, strict UTC storage."""

from __future__ import annotations

from datetime import UTC, datetime

import pendulum


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax client timestamp into a timezone-aware UTC datetime.

    Accepts ISO 8601 variants with or without the ``T`` separator, with or
    without fractional seconds, and date-only strings. A missing timezone
    defaults to ``default_tz``. Raises ``ValueError`` for unparseable input.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value.astimezone(UTC)

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        if not isinstance(parsed, pendulum.Date):
            raise ValueError(f"Not a timestamp: {value!r}")
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)
    return parsed.astimezone(UTC)


def parse_iso(value: str) -> datetime:
    """Parse a timestamp previously written by ``format_iso``."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as UTC ISO 8601 for storage and JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()
