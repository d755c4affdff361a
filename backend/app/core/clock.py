"""
clock.py - Wall clock for session timestamps.

Timestamps are stored as naive UTC so comparisons behave the same on every
backend (PostgreSQL `timestamp`, SQLite text).
"""

from collections.abc import Callable
from datetime import datetime, timezone

UTC = timezone.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)

