"""factory.core.time

The only time helper surface in the codebase.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def to_utc(dt: datetime) -> datetime:
    """Coerce a datetime to aware UTC (naive values are assumed UTC)."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_iso_millis(dt: datetime) -> str:
    """Render `2024-01-31T12:00:00.123Z`."""

    dt = to_utc(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
