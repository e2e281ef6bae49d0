"""
Outbox Relay Configuration

Centralized configuration for the relay: polling, batching, retry policy
and adapter selection. Values come from the environment (optionally a
.env file) and are validated on construction.
"""

import os
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class EventBusMode(str, Enum):
    """How producers hand events to the broker (OUTBOX_MODE)."""
    IN_MEMORY = "in_memory"
    PERSISTENT = "persistent"
    HYBRID = "hybrid"

    @classmethod
    def resolve(cls, enabled: bool = True, mode: Optional[str] = None) -> "EventBusMode":
        """Mode from settings; a disabled outbox always means in-memory."""
        if not enabled:
            return cls.IN_MEMORY
        try:
            return cls((mode or cls.PERSISTENT.value).lower())
        except ValueError:
            raise ValueError(f"Unsupported OUTBOX_MODE: {mode!r}") from None


class OutboxOptions(BaseModel):
    """Polling and claiming behaviour of the dispatch loop."""

    enabled: bool = True
    # Delay between outbox queries in milliseconds
    query_delay_ms: int = Field(100, ge=0)
    # Maximum number of events to claim per cycle
    query_limit: int = Field(100, ge=1)
    lease_seconds: float = Field(60.0, gt=0)
    publish_timeout: float = Field(10.0, gt=0)
    shutdown_timeout: float = Field(30.0, ge=0)
    processor_enabled: bool = True

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.query_delay_ms / 1000.0

    @model_validator(mode="after")
    def _lease_covers_publish(self) -> "OutboxOptions":
        if self.lease_seconds <= self.publish_timeout:
            raise ValueError(
                f"lease_seconds ({self.lease_seconds}) must exceed "
                f"publish_timeout ({self.publish_timeout})"
            )
        return self

    @classmethod
    def from_env(cls) -> "OutboxOptions":
        return cls(
            enabled=_env_bool("OUTBOX_ENABLED", "true"),
            query_delay_ms=int(os.getenv("OUTBOX_QUERY_DELAY_MS", "100")),
            query_limit=int(os.getenv("OUTBOX_QUERY_LIMIT", "100")),
            lease_seconds=float(os.getenv("OUTBOX_LEASE_SECONDS", "60")),
            publish_timeout=float(os.getenv("OUTBOX_PUBLISH_TIMEOUT", "10")),
            shutdown_timeout=float(os.getenv("OUTBOX_SHUTDOWN_TIMEOUT", "30")),
            processor_enabled=_env_bool("OUTBOX_PROCESSOR_ENABLED", "true"),
        )


class RetryOptions(BaseModel):
    """
    Retry policy for failed deliveries.

    retry_count is the total number of delivery attempts an event gets
    before it is marked permanently failed.
    """

    retry_count: int = Field(3, ge=1)
    initial_interval_seconds: float = Field(5.0, ge=0)
    interval_increment_seconds: float = Field(5.0, ge=0)
    fail_fast_on_permanent: bool = False

    @classmethod
    def from_env(cls) -> "RetryOptions":
        return cls(
            retry_count=int(os.getenv("OUTBOX_RETRY_COUNT", "3")),
            initial_interval_seconds=float(os.getenv("OUTBOX_RETRY_INITIAL_INTERVAL", "5")),
            interval_increment_seconds=float(os.getenv("OUTBOX_RETRY_INTERVAL_INCREMENT", "5")),
            fail_fast_on_permanent=_env_bool("OUTBOX_FAIL_FAST_PERMANENT", "false"),
        )


class RelaySettings(BaseModel):
    """Everything a relay process needs, assembled from the environment."""

    outbox: OutboxOptions = Field(default_factory=OutboxOptions)
    retry: RetryOptions = Field(default_factory=RetryOptions)
    mode: EventBusMode = EventBusMode.PERSISTENT
    publisher: str = "memory"
    http_url: Optional[str] = None
    dead_letter_topic: Optional[str] = None
    retention_days: int = Field(30, ge=0)
    log_level: str = "INFO"
    log_structured: bool = True
    otlp_endpoint: Optional[str] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _known_mode(cls, value):
        if isinstance(value, EventBusMode):
            return value
        return EventBusMode.resolve(mode=value)

    @property
    def event_bus_mode(self) -> EventBusMode:
        """Effective producer mode; OUTBOX_ENABLED=false forces in-memory."""
        return EventBusMode.resolve(self.outbox.enabled, self.mode.value)

    @classmethod
    def from_env(cls) -> "RelaySettings":
        return cls(
            outbox=OutboxOptions.from_env(),
            retry=RetryOptions.from_env(),
            mode=os.getenv("OUTBOX_MODE", "persistent"),
            publisher=os.getenv("OUTBOX_PUBLISHER", "memory").lower(),
            http_url=os.getenv("OUTBOX_HTTP_URL") or None,
            dead_letter_topic=os.getenv("OUTBOX_DEAD_LETTER_TOPIC") or None,
            retention_days=int(os.getenv("OUTBOX_RETENTION_DAYS", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_structured=_env_bool("LOG_STRUCTURED", "true"),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        )
