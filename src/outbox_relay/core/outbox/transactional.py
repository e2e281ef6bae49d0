"""
Transactional Event Publisher

Combines business operations with event publishing in a single transaction
to guarantee atomicity: either both succeed or both fail.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Union

from ..database.adapter import DatabaseAdapter, Transaction
from .models import OutboxEvent
from .store import OutboxStore
from .writer import EventLike, OutboxWriter


class TransactionalPublisher:
    """
    Publishes events transactionally with business operations.

    Usage:
        async with TransactionalPublisher(db) as txn:
            await txn.tx.execute("INSERT INTO tasks (id, title) VALUES ($1, $2)", task_id, title)
            await txn.emit(TaskCreated(task_id=task_id))
        # Both commit together or both roll back
    """

    def __init__(self, db: DatabaseAdapter, writer: Optional[OutboxWriter] = None):
        self.db = db
        self.writer = writer or OutboxWriter(OutboxStore(db))
        self.tx: Optional[Transaction] = None
        self._events: List[OutboxEvent] = []

    async def __aenter__(self) -> "TransactionalPublisher":
        self.tx = await self.db.begin()
        self._events = []
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            # Business failure: the outbox rows go with it
            await self.tx.rollback()
            self._events = []
            return False

        # Immediate publishes registered by the writer run on commit
        await self.tx.commit()
        return False

    async def emit(
        self,
        event: EventLike,
        payload: Union[str, Dict[str, Any], None] = None,
        **kwargs
    ) -> OutboxEvent:
        """Emit an event (written to the outbox in the current transaction)."""
        if self.tx is None or not self.tx.active:
            raise RuntimeError("emit() called outside an open transaction")
        record = await self.writer.write(event, payload, conn=self.tx, **kwargs)
        self._events.append(record)
        return record

    async def emit_batch(self, events: Iterable[EventLike]) -> List[OutboxEvent]:
        return [await self.emit(event) for event in events]

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def transactional_publish(db: DatabaseAdapter, writer: Optional[OutboxWriter] = None):
    """
    Context manager for transactional event publishing.

    Usage:
        async with transactional_publish(db) as txn:
            await txn.tx.execute("UPDATE tasks SET status = $1 WHERE id = $2", "done", task_id)
            await txn.emit("task.completed", {"task_id": str(task_id)}, aggregate_id=task_id)
    """
    publisher = TransactionalPublisher(db, writer)
    async with publisher:
        yield publisher
