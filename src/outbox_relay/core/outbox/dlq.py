"""
Dead Letter Queue (DLQ) Management

Failed outbox events stay in the outbox table (failed = TRUE) as the dead
letter queue. This module:

- forwards each newly failed event to an optional dead-letter sink
  (e.g. a broker topic watched by operators)
- gives operators tooling to inspect, retry and purge failed events
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

from ..broker.base import MessagePublisher, PublishRequest
from .models import OutboxEvent
from .store import OutboxStore

logger = logging.getLogger(__name__)

DEFAULT_DEAD_LETTER_TOPIC = "outbox.dead_letter"


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    RETRY = "retry"
    PURGE = "purge"


class DeadLetterSink(Protocol):
    """Receives events the moment they become failed."""

    async def send(self, event: OutboxEvent, reason: str) -> bool: ...


class PublisherDeadLetterSink:
    """
    Forwards failed events to a broker topic.

    The envelope keeps the original event under ``original`` so a consumer
    of the dead-letter topic can replay it. Delivery problems are logged,
    never raised into the dispatch loop.
    """

    def __init__(self, publisher: MessagePublisher, topic: str = DEFAULT_DEAD_LETTER_TOPIC):
        self.publisher = publisher
        self.topic = topic

    async def send(self, event: OutboxEvent, reason: str) -> bool:
        request = PublishRequest(
            message_id=event.id,
            event_type=event.event_type,
            payload=event.payload,
            occurred_at=event.occurred_at,
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
            headers={
                "x-dead-letter-reason": reason[:500],
                "x-retry-count": str(event.retry_count),
            },
        )
        try:
            result = await self.publisher.publish(request, topic=self.topic)
        except Exception as e:
            logger.error(f"Dead letter publish of {event.id} to {self.topic} raised: {e}", exc_info=True)
            return False

        if not result.ok:
            logger.error(f"Dead letter publish of {event.id} to {self.topic} failed: {result.error_message}")
            return False

        logger.info(f"Outbox event {event.id} forwarded to dead letter topic {self.topic}")
        return True


@dataclass
class DLQEntry:
    """A dead letter queue entry."""
    id: UUID
    event_type: str
    payload: str
    aggregate_id: Optional[UUID]
    aggregate_type: Optional[str]
    attempts: int
    last_error: Optional[str]
    occurred_at: datetime
    created_at: datetime

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "DLQEntry":
        return cls(
            id=event.id,
            event_type=event.event_type,
            payload=event.payload,
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
            attempts=event.retry_count,
            last_error=event.error_message,
            occurred_at=event.occurred_at,
            created_at=event.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type,
            "payload": self.payload,
            "aggregate_id": str(self.aggregate_id) if self.aggregate_id else None,
            "aggregate_type": self.aggregate_type,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DLQManager:
    """
    Manages the Dead Letter Queue.

    Responsibilities:
    - Query DLQ entries
    - Retry failed entries (manual "reset failed for retry")
    - Purge entries
    - Generate DLQ reports
    """

    def __init__(self, store: OutboxStore):
        self.store = store

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        event_type: Optional[str] = None
    ) -> List[DLQEntry]:
        events = await self.store.list_failed(limit=limit, offset=offset, event_type=event_type)
        return [DLQEntry.from_event(event) for event in events]

    async def get_entry(self, entry_id: UUID) -> Optional[DLQEntry]:
        event = await self.store.get(entry_id)
        if event is None or not event.failed:
            return None
        return DLQEntry.from_event(event)

    async def get_count(self, event_type: Optional[str] = None) -> int:
        return await self.store.count_failed(event_type)

    async def retry_entry(self, entry_id: UUID, operator_id: Optional[str] = None) -> bool:
        """
        Reset one failed event so the relay delivers it again.

        Returns:
            True if the entry was reset for retry
        """
        success = await self.store.reset_failed(event_id=entry_id) == 1
        if success:
            self._log_action(DLQAction.RETRY, entry_id, operator_id)
        return success

    async def retry_all(
        self,
        event_type: Optional[str] = None,
        operator_id: Optional[str] = None
    ) -> int:
        """Retry all DLQ entries (optionally filtered by event_type)."""
        count = await self.store.reset_failed(event_type=event_type)
        logger.info(
            f"DLQ retry all: reset {count} entries"
            f"{f' of type {event_type}' if event_type else ''} by {operator_id}"
        )
        return count

    async def purge_entry(self, entry_id: UUID, operator_id: Optional[str] = None) -> bool:
        """
        Permanently delete a DLQ entry.

        Returns:
            True if the entry was deleted
        """
        success = await self.store.delete_failed(entry_id)
        if success:
            self._log_action(DLQAction.PURGE, entry_id, operator_id)
        return success

    async def purge_old(self, days: int = 30, operator_id: Optional[str] = None) -> int:
        """Purge DLQ entries older than the given number of days."""
        cutoff = self.store.clock.now() - timedelta(days=days)
        count = await self.store.purge_older_than(cutoff, failed_only=True)
        logger.info(f"DLQ purged {count} entries older than {days} days by {operator_id}")
        return count

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        oldest = await self.store.list_failed(limit=1, offset=max(stats.failed - 1, 0))
        return {
            "total_count": stats.failed,
            "by_event_type": stats.failed_by_event_type,
            "oldest_entry": oldest[0].created_at.isoformat() if oldest else None,
        }

    def _log_action(self, action: DLQAction, entry_id: UUID, operator_id: Optional[str]):
        logger.info(f"DLQ action: {action.value} on {entry_id} by {operator_id}")
