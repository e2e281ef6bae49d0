"""
Inbox Guard

Consumer-side deduplication. The relay delivers at-least-once, so a
consumer may see the same message_id twice; recording each
(message_id, consumer_id) pair in the inbox table lets it process the
message once.
"""

import logging
from typing import Optional
from uuid import UUID

from ..clock import utcnow
from ..database.adapter import DatabaseAdapter, Transaction, rows_affected

logger = logging.getLogger(__name__)


class InboxGuard:
    """
    Guards against duplicate event processing.

    Usage:
        async with InboxGuard(db, message_id, "billing-service") as guard:
            if guard.should_process:
                await process_event(event)
            else:
                logger.info("Event already processed, skipping")

    If processing fails (exception raised), the inbox entry is removed
    so that redelivery is processed.
    """

    def __init__(self, db: DatabaseAdapter, message_id: UUID, consumer_id: str):
        self._db = db
        self.message_id = message_id
        self.consumer_id = consumer_id
        self.should_process = False

    async def __aenter__(self) -> "InboxGuard":
        self.should_process = await mark_processed(self._db, self.message_id, self.consumer_id)
        if self.should_process:
            logger.debug(f"InboxGuard: message {self.message_id} claimed by {self.consumer_id}")
        else:
            logger.debug(f"InboxGuard: message {self.message_id} already processed by {self.consumer_id}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self.should_process:
            await remove_processed(self._db, self.message_id, self.consumer_id)
            logger.warning(
                f"InboxGuard: processing of {self.message_id} by {self.consumer_id} failed, entry removed for redelivery"
            )
        return False


async def is_processed(
    db: DatabaseAdapter,
    message_id: UUID,
    consumer_id: str,
) -> bool:
    """True if the consumer already recorded this message."""
    row = await db.fetchrow(
        """
        SELECT 1 AS processed FROM inbox
        WHERE message_id = $1 AND consumer_id = $2
        """,
        message_id,
        consumer_id
    )
    return row is not None


async def mark_processed(
    db: DatabaseAdapter,
    message_id: UUID,
    consumer_id: str,
    conn: Optional[Transaction] = None,
) -> bool:
    """
    Record a message as processed.

    Pass ``conn`` to record it in the same transaction as the consumer's
    own writes.

    Returns:
        True if recorded now, False if it was already there
    """
    executor = conn if conn is not None else db
    status = await executor.execute(
        """
        INSERT INTO inbox (message_id, consumer_id, processed_at)
        VALUES ($1, $2, $3)
        ON CONFLICT (message_id, consumer_id) DO NOTHING
        """,
        message_id,
        consumer_id,
        utcnow()
    )
    return rows_affected(status) == 1


async def remove_processed(
    db: DatabaseAdapter,
    message_id: UUID,
    consumer_id: str,
) -> bool:
    """Forget a processed message (for retry scenarios)."""
    status = await db.execute(
        """
        DELETE FROM inbox
        WHERE message_id = $1 AND consumer_id = $2
        """,
        message_id,
        consumer_id
    )
    return rows_affected(status) == 1
