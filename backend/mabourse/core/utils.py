"""
Core utilities for the MaBourse sync backend.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
import secrets
import time
from typing import Any

# Epoch numbers above this are taken to be milliseconds (JavaScript Date.getTime()).
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def _token(prefix: str, random_bytes: int) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(random_bytes)}"


def generate_sync_id() -> str:
    """Generate an identifier for a new synchronization epoch."""
    return _token("sync", 6)


def generate_device_id() -> str:
    """Generate a device identifier. Called once per device, then persisted."""
    return _token("device", 4)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a modification timestamp into an aware UTC datetime.

    Accepts datetimes, dates, ISO-8601 strings (a trailing ``Z`` included) and
    epoch numbers in seconds or milliseconds. Anything else, including
    unparseable strings, yields None so callers can treat the record as
    older than every timestamped one.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
