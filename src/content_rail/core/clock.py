"""
Clock helpers.

Components that reason about expiry or rolling windows take a ``clock``
callable so tests can control time.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_millis(moment: datetime) -> int:
    """Milliseconds since the epoch for an aware datetime."""
    return int(moment.timestamp() * 1000)
