"""
Publisher Adapters

Broker-agnostic delivery for the outbox relay.
"""

from .base import MessagePublisher, PublishErrorKind, PublishRequest, PublishResult
from .factory import get_default_publisher, get_publisher, reset_default_publisher
from .http import HttpPublisher
from .memory import InMemoryPublisher

__all__ = [
    "MessagePublisher",
    "PublishErrorKind",
    "PublishRequest",
    "PublishResult",
    "InMemoryPublisher",
    "HttpPublisher",
    "get_publisher",
    "get_default_publisher",
    "reset_default_publisher",
]
