"""
core/clock.py -- UTC time helpers shared by every store and policy.

Timestamps are persisted as fixed-width ISO 8601 strings (always with
microseconds and a +00:00 offset) so that SQL string comparison orders them
the same way datetime comparison does. datetime.isoformat() drops the
microsecond field when it is zero, which would break that ordering.

Every component takes a `clock` callable instead of calling datetime.now()
directly, so tests can move time forward without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render an aware datetime as the canonical fixed-width UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
