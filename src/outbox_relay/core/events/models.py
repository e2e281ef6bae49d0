"""
Domain Event Models

Producers describe business facts as DomainEvent subclasses. The outbox
stores them as a tagged union: ``event_type`` is the tag and ``payload`` the
JSON body, so storage never needs to know the concrete shape.
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..clock import utcnow


class DomainEvent(BaseModel):
    """
    Base class for events written to the outbox.

    Subclasses may set ``event_type``; otherwise the tag is
    ``"<module>.<ClassName>"``.

    Usage:
        class TaskCompleted(DomainEvent):
            event_type = "task.completed"
            task_id: UUID
            completed_by: str
    """

    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str] = ""
    aggregate_type: ClassVar[Optional[str]] = None

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime = Field(default_factory=utcnow)
    aggregate_id: Optional[UUID] = None

    @classmethod
    def type_name(cls) -> str:
        return cls.__dict__.get("event_type") or f"{cls.__module__}.{cls.__name__}"

    def to_payload(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str) -> "DomainEvent":
        return cls.model_validate_json(payload)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["event_type"] = self.type_name()
        return data
