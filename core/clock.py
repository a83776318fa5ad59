"""
core/clock.py -- Wall-clock source shared by the time-sensitive components.

Token expiry, rate-limit windows and the auth event log all compare against
"now". Each of them takes a `clock` callable defaulting to utcnow() so tests
can substitute a controllable clock without patching datetime.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)
