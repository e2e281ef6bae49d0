"""
Outbox Pattern Implementation

Transactional event recording with at-least-once relay to a message broker.

Usage:
    from outbox_relay.core.outbox import OutboxStore, transactional_publish

    async with transactional_publish(db) as txn:
        await txn.tx.execute("UPDATE tasks SET status = $1 WHERE id = $2", "done", task_id)
        await txn.emit(TaskCompleted(task_id=task_id))
    # The event row commits with the business change, the relay delivers it
"""

from ..config import EventBusMode
from .errors import OutboxError, StorageError
from .models import DispatchReport, OutboxEvent, OutboxState, OutboxStats
from .store import OutboxStore
from .writer import DirectPublishError, OutboxWriter
from .transactional import TransactionalPublisher, transactional_publish
from .dlq import DLQAction, DLQEntry, DLQManager, DeadLetterSink, PublisherDeadLetterSink
from .processor import (
    OutboxProcessor,
    get_outbox_processor,
    start_outbox_processor,
    stop_outbox_processor,
)

__all__ = [
    "OutboxError",
    "StorageError",
    "OutboxEvent",
    "OutboxState",
    "OutboxStats",
    "DispatchReport",
    "OutboxStore",
    "OutboxWriter",
    "EventBusMode",
    "DirectPublishError",
    "TransactionalPublisher",
    "transactional_publish",
    "DLQManager",
    "DLQEntry",
    "DLQAction",
    "DeadLetterSink",
    "PublisherDeadLetterSink",
    "OutboxProcessor",
    "start_outbox_processor",
    "stop_outbox_processor",
    "get_outbox_processor",
]
