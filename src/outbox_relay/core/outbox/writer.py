"""
Outbox Writer

Writes events to the outbox table within the same transaction as your
business logic for guaranteed delivery.

Event bus modes:
- PERSISTENT: outbox row only; the relay delivers it (default)
- HYBRID: outbox row, plus an immediate best-effort publish after commit;
  the relay covers anything the immediate publish missed
- IN_MEMORY: publish directly, no outbox row (OUTBOX_ENABLED=false)
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import UUID

from ..broker.base import MessagePublisher
from ..config import EventBusMode, RelaySettings
from ..database.adapter import Transaction
from ..events.models import DomainEvent
from .errors import OutboxError
from .models import OutboxEvent
from .store import OutboxStore

logger = logging.getLogger(__name__)


class DirectPublishError(OutboxError):
    """An in-memory mode publish was rejected by the broker."""


EventLike = Union[DomainEvent, str]


class OutboxWriter:
    """
    Writes events to the outbox for reliable delivery.

    Usage:
        writer = OutboxWriter(store)

        async with db.transaction() as tx:
            await tx.execute("UPDATE tasks SET status = 'done' WHERE id = $1", task_id)
            await writer.write(TaskCompleted(task_id=task_id), conn=tx)
        # Transaction commits, outbox row is persisted with it.
        # HYBRID and IN_MEMORY publishes run once the commit succeeds.

    Raw events are accepted too:
        await writer.write("task.completed", {"task_id": str(task_id)}, conn=tx)
    """

    def __init__(
        self,
        store: OutboxStore,
        mode: Optional[EventBusMode] = None,
        publisher: Optional[MessagePublisher] = None,
    ):
        self.store = store
        self.mode = mode or RelaySettings.from_env().event_bus_mode
        self.publisher = publisher
        if self.mode != EventBusMode.PERSISTENT and publisher is None:
            raise ValueError(f"{self.mode.value} mode needs a publisher")

    @classmethod
    def from_settings(
        cls,
        store: OutboxStore,
        settings: RelaySettings,
        publisher: Optional[MessagePublisher] = None,
    ) -> "OutboxWriter":
        return cls(store, mode=settings.event_bus_mode, publisher=publisher)

    async def write(
        self,
        event: EventLike,
        payload: Union[str, Dict[str, Any], None] = None,
        aggregate_id: Optional[UUID] = None,
        aggregate_type: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        conn: Optional[Transaction] = None,
    ) -> OutboxEvent:
        """
        Write an event to the outbox.

        Args:
            event: A DomainEvent, or an event_type tag (with ``payload``)
            payload: Body for a raw event_type (str or JSON-serializable dict)
            aggregate_id: Provenance for raw events
            aggregate_type: Provenance for raw events
            occurred_at: Business time for raw events (defaults to now)
            conn: Caller's transaction; the row commits or rolls back with it

        Immediate publishes (IN_MEMORY, HYBRID) happen here when there is no
        caller transaction. Inside one they are registered with
        ``conn.on_commit()`` and run once the business change is durable;
        a rollback drops them.

        Raises:
            StorageError: the outbox insert failed; roll the caller back
            DirectPublishError: in-memory mode and the broker rejected it
        """
        record = self._to_record(event, payload, aggregate_id, aggregate_type, occurred_at)

        if self.mode != EventBusMode.IN_MEMORY:
            await self.store.append(record, conn=conn)

        if self.mode == EventBusMode.PERSISTENT:
            return record
        if conn is None:
            await self.after_commit([record])
        else:
            conn.on_commit(lambda: self.after_commit([record]))
        return record

    async def write_batch(
        self,
        events: Iterable[EventLike],
        conn: Optional[Transaction] = None,
    ) -> List[OutboxEvent]:
        """
        Write several events atomically.

        Without ``conn`` a transaction is opened for the batch.
        """
        if conn is not None:
            return [await self.write(event, conn=conn) for event in events]

        async with self.store.db.transaction() as tx:
            return [await self.write(event, conn=tx) for event in events]

    async def after_commit(self, records: List[OutboxEvent]) -> None:
        """Run the mode's immediate publishes once the records' transaction has committed."""
        if not records:
            return
        if self.mode == EventBusMode.IN_MEMORY:
            for record in records:
                await self._publish_direct(record)
        elif self.mode == EventBusMode.HYBRID:
            await self._publish_immediately(records)

    # ------------------------------------------------------------------

    def _to_record(
        self,
        event: EventLike,
        payload: Union[str, Dict[str, Any], None],
        aggregate_id: Optional[UUID],
        aggregate_type: Optional[str],
        occurred_at: Optional[datetime],
    ) -> OutboxEvent:
        if isinstance(event, DomainEvent):
            return OutboxEvent(
                id=event.event_id,
                event_type=event.type_name(),
                payload=event.to_payload(),
                aggregate_id=event.aggregate_id,
                aggregate_type=type(event).aggregate_type,
                occurred_at=event.occurred_at,
            )

        if payload is None:
            raise ValueError(f"Raw event {event!r} needs a payload")
        if not isinstance(payload, str):
            payload = json.dumps(payload, default=str)

        fields: Dict[str, Any] = {
            "event_type": event,
            "payload": payload,
            "aggregate_id": aggregate_id,
            "aggregate_type": aggregate_type,
        }
        if occurred_at is not None:
            fields["occurred_at"] = occurred_at
        return OutboxEvent(**fields)

    async def _publish_direct(self, record: OutboxEvent) -> None:
        result = await self.publisher.publish(record.to_publish_request())
        if not result.ok:
            raise DirectPublishError(f"Direct publish of {record.event_type} ({record.id}) failed: {result.error_message}")
        record.published = True
        record.published_at = self.store.clock.now()
        logger.debug(f"Published {record.event_type} ({record.id}) directly, no outbox row")

    async def _publish_immediately(self, records: List[OutboxEvent]) -> None:
        """Best effort; the relay delivers whatever this misses."""
        for record in records:
            try:
                result = await self.publisher.publish(record.to_publish_request())
            except Exception as e:
                logger.warning(f"Immediate publish of {record.id} raised, relay will deliver it: {e}", exc_info=True)
                continue

            if not result.ok:
                logger.warning(f"Immediate publish of {record.id} failed, relay will deliver it: {result.error_message}")
                continue

            try:
                if await self.store.mark_published(record.id):
                    record.published = True
            except OutboxError as e:
                logger.warning(f"Could not confirm immediate publish of {record.id}, relay may resend it: {e}")
