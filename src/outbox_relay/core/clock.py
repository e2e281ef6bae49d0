"""
Clock abstraction

The dispatch loop and the outbox store never call datetime.now() directly;
they take a Clock so tests can drive lease expiry and retry backoff
deterministically.
"""

from datetime import datetime, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    """Source of the current (timezone-aware, UTC) time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()


system_clock = SystemClock()
