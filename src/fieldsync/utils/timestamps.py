"""Timestamp helpers shared by the local store and the conflict detector."""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Fixed-width ISO-8601 text for storage.

    Always carries microseconds and a +00:00 offset, so lexical order of
    the stored strings equals chronological order.
    """
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a snapshot timestamp.

    Accepts datetimes, ISO-8601 strings (a trailing ``Z`` included) and
    epoch milliseconds. Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
