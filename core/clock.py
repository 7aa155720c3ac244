"""
core/clock.py -- Clock source shared by token issuance, validation and the store.

Components take a `clock` callable instead of calling datetime.now() directly
so tests can pin time to the second. Anything returning an aware UTC datetime
satisfies the Clock type.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
