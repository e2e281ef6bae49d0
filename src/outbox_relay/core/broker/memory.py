"""
In-Memory Publisher

Broker stand-in for development, tests and EventBusMode.IN_MEMORY. Messages
are recorded in order and handed to handlers subscribed per topic; a handler
that raises turns the publish into a transient failure.
"""

import logging
from collections import defaultdict
from typing import Awaitable, Callable, DefaultDict, List, Optional, Tuple

from .base import MessagePublisher, PublishRequest, PublishResult

logger = logging.getLogger(__name__)

Handler = Callable[[PublishRequest], Awaitable[None]]


class InMemoryPublisher(MessagePublisher):
    """
    Records published messages and dispatches them to async handlers.

    Usage:
        publisher = InMemoryPublisher()
        publisher.subscribe("task.completed", handle_task_completed)
        result = await publisher.publish(request)
        assert publisher.published_ids() == [request.message_id]
    """

    def __init__(self):
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self.messages: List[Tuple[str, PublishRequest]] = []

    @property
    def name(self) -> str:
        return "memory"

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    async def publish(self, request: PublishRequest, topic: Optional[str] = None) -> PublishResult:
        topic = topic or request.event_type

        for handler in self._handlers.get(topic, []):
            try:
                await handler(request)
            except Exception as e:
                logger.warning(f"Handler {getattr(handler, '__name__', handler)} failed for {request.message_id}: {e}")
                return PublishResult.transient(f"handler error: {e}")

        self.messages.append((topic, request))
        return PublishResult.success(ack=str(request.message_id))

    def published_ids(self, topic: Optional[str] = None) -> list:
        return [req.message_id for t, req in self.messages if topic is None or t == topic]

    def clear(self) -> None:
        self.messages.clear()
