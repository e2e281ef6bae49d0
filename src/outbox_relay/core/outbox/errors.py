"""
Outbox Errors
"""

from typing import Optional


class OutboxError(Exception):
    """Base class for outbox failures."""


class StorageError(OutboxError):
    """
    A store write or read failed in the database driver.

    Raised from append() inside the caller's transaction; the caller must
    let it propagate so the business change rolls back with it.
    """

    def __init__(self, operation: str, message: str, event_id: Optional[str] = None):
        self.operation = operation
        self.event_id = event_id
        detail = f"{operation} failed: {message}"
        if event_id:
            detail = f"{operation} failed for event {event_id}: {message}"
        super().__init__(detail)
