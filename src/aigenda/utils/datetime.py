"""Datetime utilities with consistent epoch-millisecond handling.

The sync protocol exchanges timestamps as integer milliseconds since the
Unix epoch. This module keeps the conversions between those integers and
timezone-aware UTC datetimes in one place.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def now_ms() -> int:
    """Return the current time as epoch milliseconds.

    Returns:
        Milliseconds since the Unix epoch
    """
    return int(time.time() * 1000)


def now_utc() -> datetime:
    """Return current datetime in UTC timezone."""
    return datetime.now(timezone.utc)


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime.

    Args:
        value: Milliseconds since the epoch, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def format_ms(value: Optional[int], fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Format epoch milliseconds for display, 'never' when unset."""
    dt = ms_to_datetime(value)
    if dt is None:
        return "never"
    return dt.strftime(fmt) + " UTC"
