"""
Tests for the operator HTTP API.
"""

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from outbox_relay.api.app import create_app
from outbox_relay.core.config import OutboxOptions, RelaySettings
from outbox_relay.core.outbox.store import OutboxStore

from conftest import make_event


@pytest.fixture
def settings() -> RelaySettings:
    return RelaySettings(outbox=OutboxOptions(processor_enabled=False), log_structured=False)


@pytest.fixture
async def client(db, settings):
    """API client with the lifespan running against the test database."""
    app = create_app(db=db, settings=settings)
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture
def api_store(db, clock) -> OutboxStore:
    return OutboxStore(db, clock=clock)


async def failed_event(store, event_type="order.placed"):
    event_id = await store.append(make_event(event_type))
    await store.mark_failed(event_id, "rejected", count_attempt=True)
    return event_id


class TestHealth:
    """Probes."""

    async def test_health(self, client):
        """The health endpoint should report healthy."""
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_liveness(self, client):
        """The liveness endpoint should answer without touching the database."""
        response = await client.get("/health/live")
        assert response.json() == {"status": "alive"}

    async def test_ready_with_database(self, client):
        """Readiness should check the database and skip the processor when it is not running here."""
        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"]["database"] == "healthy"
        assert "outbox_processor" not in body["checks"]

    async def test_trace_id_header(self, client):
        """The trace id sent by the caller should be echoed back."""
        response = await client.get("/health", headers={"X-Trace-ID": "trace-123"})
        assert response.headers["X-Trace-ID"] == "trace-123"


class TestReadinessWithProcessor:
    """Readiness when this process runs the dispatch loop."""

    async def test_running_processor_is_reported(self, db):
        """Readiness should include the processor when the lifespan started one."""
        settings = RelaySettings(outbox=OutboxOptions(query_delay_ms=10), log_structured=False)
        app = create_app(db=db, settings=settings)

        async with app.router.lifespan_context(app):
            assert app.state.processor is not None
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["outbox_processor"]["running"] is True


class TestOutboxEndpoints:
    """Outbox inspection and purge."""

    async def test_stats(self, client, api_store):
        """Outbox stats should count rows by state."""
        done = await api_store.append(make_event())
        await api_store.mark_published(done)
        await failed_event(api_store)

        response = await client.get("/api/admin/outbox/stats")

        assert response.status_code == 200
        body = response.json()
        assert body["published"] == 1
        assert body["failed"] == 1
        assert body["pending"] == 0
        assert body["healthy"] is True

    async def test_get_event(self, client, api_store):
        """A stored event should be returned with its state."""
        event_id = await api_store.append(make_event())

        response = await client.get(f"/api/admin/outbox/events/{event_id}")

        assert response.status_code == 200
        assert response.json()["state"] == "pending"

    async def test_get_missing_event(self, client):
        """An unknown event id should map to EVENT_NOT_FOUND."""
        response = await client.get(f"/api/admin/outbox/events/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "EVENT_NOT_FOUND"

    async def test_purge_before(self, client, api_store, clock):
        """Purging with a cutoff should delete only terminal rows older than it."""
        done = await api_store.append(make_event())
        pending = await api_store.append(make_event())
        await api_store.mark_published(done)
        cutoff = clock.advance(60)

        response = await client.post("/api/admin/outbox/purge", json={"before": cutoff.isoformat()})

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert await api_store.get(done) is None
        assert await api_store.get(pending) is not None

    async def test_purge_rejects_both_windows(self, client):
        """Sending both days and before should fail validation on the before field."""
        response = await client.post(
            "/api/admin/outbox/purge",
            json={"days": 1, "before": "2026-01-01T00:00:00+00:00"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["field"] == "before"


class TestDLQEndpoints:
    """Dead-letter management."""

    async def test_list(self, client, api_store):
        """Entries should be filterable by event type and paginated with defaults."""
        await failed_event(api_store, "a")
        await failed_event(api_store, "b")

        response = await client.get("/api/admin/dlq", params={"event_type": "a"})

        body = response.json()
        assert body["total"] == 1
        assert body["entries"][0]["event_type"] == "a"
        assert body["limit"] == 100
        assert body["offset"] == 0

    async def test_list_validates_limit(self, client):
        """A non-positive limit should be rejected."""
        response = await client.get("/api/admin/dlq", params={"limit": 0})
        assert response.status_code == 400

    async def test_stats(self, client, api_store):
        """DLQ stats should count failed events."""
        await failed_event(api_store)

        response = await client.get("/api/admin/dlq/stats")

        assert response.json()["total_count"] == 1

    async def test_get_entry(self, client, api_store):
        """A failed event should be readable with its last error."""
        event_id = await failed_event(api_store)

        response = await client.get(f"/api/admin/dlq/{event_id}")

        assert response.status_code == 200
        assert response.json()["last_error"] == "rejected"

    async def test_retry(self, client, api_store):
        """Retrying an entry should return it to the outbox."""
        event_id = await failed_event(api_store)

        response = await client.post(f"/api/admin/dlq/{event_id}/retry", headers={"X-Operator-Id": "alice"})

        assert response.json() == {"status": "queued_for_retry", "entry_id": str(event_id)}
        assert (await api_store.get(event_id)).failed is False

    async def test_retry_missing_entry(self, client):
        """Retrying an unknown entry should map to DLQ_ENTRY_NOT_FOUND with a trace id."""
        response = await client.post(f"/api/admin/dlq/{uuid4()}/retry")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "DLQ_ENTRY_NOT_FOUND"
        assert error["trace_id"]

    async def test_retry_all(self, client, api_store):
        """Retry-all should queue every failed event."""
        await failed_event(api_store)
        await failed_event(api_store)

        response = await client.post("/api/admin/dlq/retry-all")

        assert response.json()["status"] == "all_queued_for_retry"
        assert response.json()["count"] == 2

    async def test_delete(self, client, api_store):
        """Deleting an entry should remove the failed row."""
        event_id = await failed_event(api_store)

        response = await client.delete(f"/api/admin/dlq/{event_id}")

        assert response.json() == {"status": "purged", "entry_id": str(event_id)}
        assert await api_store.get(event_id) is None

    async def test_delete_pending_event_is_not_found(self, client, api_store):
        """A pending event is not a DLQ entry and cannot be deleted through the DLQ."""
        event_id = await api_store.append(make_event())

        response = await client.delete(f"/api/admin/dlq/{event_id}")

        assert response.status_code == 404
        assert await api_store.get(event_id) is not None
