"""
Publisher Adapter Contract

The boundary between the dispatch loop and a message broker. Adapters turn
a PublishRequest into one broker call and report the outcome as a value:

- ack: the broker accepted the message
- TRANSIENT: worth retrying (timeout, broker unavailable, throttled)
- PERMANENT: retrying will not help (payload rejected, bad routing)

Adapters hold no per-message state and must be safe to call concurrently.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class PublishErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass
class PublishRequest:
    """A message ready for the broker. message_id is the outbox event id."""
    message_id: UUID
    event_type: str
    payload: str
    occurred_at: datetime
    aggregate_id: Optional[UUID] = None
    aggregate_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def envelope(self) -> Dict[str, Any]:
        """JSON-ready message envelope."""
        return {
            "message_id": str(self.message_id),
            "event_type": self.event_type,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
            "aggregate_id": str(self.aggregate_id) if self.aggregate_id else None,
            "aggregate_type": self.aggregate_type,
            "headers": dict(self.headers),
        }


@dataclass
class PublishResult:
    """Outcome of a publish call."""
    ok: bool
    ack: Optional[str] = None
    error_kind: Optional[PublishErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def success(cls, ack: Optional[str] = None) -> "PublishResult":
        return cls(ok=True, ack=ack)

    @classmethod
    def transient(cls, message: str) -> "PublishResult":
        return cls(ok=False, error_kind=PublishErrorKind.TRANSIENT, error_message=message)

    @classmethod
    def permanent(cls, message: str) -> "PublishResult":
        return cls(ok=False, error_kind=PublishErrorKind.PERMANENT, error_message=message)

    @property
    def is_permanent(self) -> bool:
        return self.error_kind == PublishErrorKind.PERMANENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "ack": self.ack,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
        }


class MessagePublisher(ABC):
    """Abstract base class for broker adapters."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Adapter name (memory, http)."""
        pass

    @abstractmethod
    async def publish(self, request: PublishRequest, topic: Optional[str] = None) -> PublishResult:
        """
        Deliver one message.

        ``topic`` defaults to the request's event_type. Broker failures are
        returned as a PublishResult, never raised.
        """
        pass

    async def close(self) -> None:
        """Release connections held by the adapter."""
        return None
