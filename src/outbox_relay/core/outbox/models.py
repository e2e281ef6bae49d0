"""
Outbox Models

Row model for the outbox_events table plus the small value objects the
dispatch loop and the operator tooling report with.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..broker.base import PublishRequest
from ..clock import utcnow


class OutboxState(str, Enum):
    """Derived state of an outbox event."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"  # Exhausted retries, needs an operator


class OutboxEvent(BaseModel):
    """An event in the outbox table."""

    id: UUID = Field(default_factory=uuid4)
    event_type: str = Field(..., min_length=1, max_length=500)
    payload: str
    aggregate_id: Optional[UUID] = None
    aggregate_type: Optional[str] = Field(None, max_length=255)
    occurred_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    published: bool = False
    published_at: Optional[datetime] = None
    failed: bool = False
    error_message: Optional[str] = None
    retry_count: int = 0

    # Dispatch bookkeeping
    next_retry_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    claim_expires_at: Optional[datetime] = None
    version: int = 0

    @property
    def state(self) -> OutboxState:
        if self.published:
            return OutboxState.PUBLISHED
        if self.failed:
            return OutboxState.FAILED
        return OutboxState.PENDING

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxEvent":
        return cls.model_validate(row)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["state"] = self.state.value
        return data

    def to_publish_request(self, headers: Optional[Dict[str, str]] = None) -> PublishRequest:
        return PublishRequest(
            message_id=self.id,
            event_type=self.event_type,
            payload=self.payload,
            occurred_at=self.occurred_at,
            aggregate_id=self.aggregate_id,
            aggregate_type=self.aggregate_type,
            headers=dict(headers or {}),
        )


@dataclass
class DispatchReport:
    """Outcome of one dispatch cycle."""
    claimed: int = 0
    published: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0

    @property
    def processed(self) -> int:
        return self.published + self.retried + self.failed

    def merge(self, other: "DispatchReport") -> None:
        self.claimed += other.claimed
        self.published += other.published
        self.retried += other.retried
        self.failed += other.failed
        self.released += other.released

    def to_dict(self) -> Dict[str, int]:
        return {
            "claimed": self.claimed,
            "published": self.published,
            "retried": self.retried,
            "failed": self.failed,
            "released": self.released,
        }


@dataclass
class OutboxStats:
    """Counts by state plus the backlog signal (age of the oldest pending row)."""
    pending: int = 0
    published: int = 0
    failed: int = 0
    claimed: int = 0
    oldest_pending_at: Optional[datetime] = None
    failed_by_event_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "published": self.published,
            "failed": self.failed,
            "claimed": self.claimed,
            "oldest_pending_at": self.oldest_pending_at.isoformat() if self.oldest_pending_at else None,
            "failed_by_event_type": dict(self.failed_by_event_type),
        }
