"""
Domain Events

Typed events for producers and the tag registry used to decode outbox rows.

Usage:
    from outbox_relay.core.events import DomainEvent, register_event

    @register_event
    class TaskCompleted(DomainEvent):
        event_type = "task.completed"
        task_id: UUID
"""

from .models import DomainEvent
from .registry import (
    EventRegistry,
    UnknownEventTypeError,
    default_registry,
    register_event,
)

__all__ = [
    "DomainEvent",
    "EventRegistry",
    "UnknownEventTypeError",
    "default_registry",
    "register_event",
]
