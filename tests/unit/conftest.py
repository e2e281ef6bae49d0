"""
Unit Test Fixtures

Store and dispatch tests run against a throwaway SQLite file with a fake
clock, so lease expiry and retry backoff are driven by the test.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID

import pytest

from outbox_relay.core.broker.base import MessagePublisher, PublishRequest, PublishResult
from outbox_relay.core.config import RetryOptions
from outbox_relay.core.database.adapter import DatabaseAdapter, DatabaseConfig
from outbox_relay.core.outbox.models import OutboxEvent
from outbox_relay.core.outbox.store import OutboxStore

START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


class ScriptedPublisher(MessagePublisher):
    """
    Publisher whose results are scripted per message id.

    Unscripted messages succeed. Every call is recorded in ``attempts``.
    """

    def __init__(self):
        self.scripts: Dict[UUID, List[PublishResult]] = {}
        self.always: Optional[PublishResult] = None
        self.attempts: List[PublishRequest] = []
        self.delivered: List[PublishRequest] = []

    @property
    def name(self) -> str:
        return "scripted"

    def fail_next(self, message_id: UUID, *results: PublishResult) -> None:
        self.scripts.setdefault(message_id, []).extend(results)

    async def publish(self, request: PublishRequest, topic: Optional[str] = None) -> PublishResult:
        self.attempts.append(request)
        queued = self.scripts.get(request.message_id)
        if queued:
            return queued.pop(0)
        if self.always is not None:
            return self.always
        self.delivered.append(request)
        return PublishResult.success(ack=str(request.message_id))

    def attempts_for(self, message_id: UUID) -> int:
        return sum(1 for r in self.attempts if r.message_id == message_id)


class BlockingPublisher(MessagePublisher):
    """Blocks every publish until ``release`` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.delivered: List[PublishRequest] = []

    @property
    def name(self) -> str:
        return "blocking"

    async def publish(self, request: PublishRequest, topic: Optional[str] = None) -> PublishResult:
        self.started.set()
        await self.release.wait()
        self.delivered.append(request)
        return PublishResult.success()


def make_event(event_type: str = "task.completed", **kwargs) -> OutboxEvent:
    payload = kwargs.pop("payload", '{"task_id": "t-1"}')
    kwargs.setdefault("occurred_at", START)
    return OutboxEvent(event_type=event_type, payload=payload, **kwargs)


@pytest.fixture
async def db(tmp_path):
    """Connected SQLite adapter with the outbox schema."""
    adapter = DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "outbox.db")))
    await adapter.connect()
    await OutboxStore(adapter).ensure_schema()
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry() -> RetryOptions:
    return RetryOptions(retry_count=3, initial_interval_seconds=5, interval_increment_seconds=5)


@pytest.fixture
def store(db, clock, retry) -> OutboxStore:
    return OutboxStore(db, clock=clock, retry=retry)


@pytest.fixture
def publisher() -> ScriptedPublisher:
    return ScriptedPublisher()
