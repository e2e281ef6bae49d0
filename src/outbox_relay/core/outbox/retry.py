"""
Retry Policy

Linear backoff: the n-th retry of an event waits
initial_interval + n * interval_increment seconds, where n is the number of
attempts already made before the failure being scheduled (0 for the first
failure).
"""

from datetime import datetime, timedelta

from ..config import RetryOptions


def retry_delay_seconds(retry_count: int, options: RetryOptions) -> float:
    """Delay before the next attempt, given attempts made before this failure."""
    return options.initial_interval_seconds + max(0, retry_count) * options.interval_increment_seconds


def calculate_next_attempt(retry_count: int, now: datetime, options: RetryOptions) -> datetime:
    """Calculate next attempt time with linear backoff."""
    return now + timedelta(seconds=retry_delay_seconds(retry_count, options))


def is_exhausted(attempts: int, max_retries: int) -> bool:
    """True once an event has used its whole attempt budget."""
    return attempts >= max_retries
