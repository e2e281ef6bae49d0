"""
Event Registry

Maps event_type tags to DomainEvent classes so consumers (and operator
tooling) can turn an outbox row back into a typed event.
"""

import logging
from typing import Dict, List, Optional, Type

from .models import DomainEvent

logger = logging.getLogger(__name__)


class UnknownEventTypeError(LookupError):
    """No class is registered for an event_type tag."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type}")


class EventRegistry:
    """
    Registry of DomainEvent classes keyed by their tag.

    Usage:
        registry = EventRegistry()

        @registry.register
        class TaskCompleted(DomainEvent):
            event_type = "task.completed"
            task_id: UUID

        event = registry.decode(row.event_type, row.payload)
    """

    def __init__(self):
        self._types: Dict[str, Type[DomainEvent]] = {}

    def register(self, event_class: Type[DomainEvent]) -> Type[DomainEvent]:
        name = event_class.type_name()
        existing = self._types.get(name)
        if existing is not None and existing is not event_class:
            raise ValueError(
                f"Event type {name!r} already registered to {existing.__module__}.{existing.__name__}"
            )
        self._types[name] = event_class
        logger.debug(f"Registered event type {name}")
        return event_class

    def get(self, event_type: str) -> Optional[Type[DomainEvent]]:
        return self._types.get(event_type)

    def decode(self, event_type: str, payload: str) -> DomainEvent:
        event_class = self._types.get(event_type)
        if event_class is None:
            raise UnknownEventTypeError(event_type)
        return event_class.from_payload(payload)

    def names(self) -> List[str]:
        return sorted(self._types)

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._types

    def __len__(self) -> int:
        return len(self._types)


default_registry = EventRegistry()


def register_event(event_class: Type[DomainEvent]) -> Type[DomainEvent]:
    """Register a class in the process-wide registry (usable as a decorator)."""
    return default_registry.register(event_class)
