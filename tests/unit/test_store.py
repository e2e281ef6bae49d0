"""
Tests for the outbox store: append, claim, terminal marks and maintenance.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from outbox_relay.core.database.adapter import DatabaseAdapter, DatabaseConfig
from outbox_relay.core.outbox.errors import StorageError
from outbox_relay.core.outbox.models import OutboxState
from outbox_relay.core.outbox.store import OutboxStore

from conftest import START, make_event


class TestAppend:
    """Producer-side writes."""

    async def test_append_creates_pending_row(self, store, clock):
        """Appending should store a pending row stamped with the current time."""
        event = make_event(aggregate_id=uuid4(), aggregate_type="Task")

        event_id = await store.append(event)
        stored = await store.get(event_id)

        assert stored is not None
        assert stored.state == OutboxState.PENDING
        assert stored.retry_count == 0
        assert stored.published is False and stored.failed is False
        assert stored.created_at == clock.now()
        assert stored.aggregate_type == "Task"
        assert stored.payload == event.payload

    async def test_rolled_back_transaction_leaves_no_row(self, db, store):
        """An append in a rolled back transaction should leave no row."""
        event = make_event()

        with pytest.raises(RuntimeError):
            async with db.transaction() as tx:
                await store.append(event, conn=tx)
                raise RuntimeError("business rule violated")

        assert await store.get(event.id) is None

    async def test_business_row_and_event_commit_together(self, db, store):
        """A business row and its event should commit in one transaction."""
        await db.execute_script("CREATE TABLE tasks (id TEXT PRIMARY KEY, title TEXT NOT NULL);")
        event = make_event()

        async with db.transaction() as tx:
            await tx.execute("INSERT INTO tasks (id, title) VALUES ($1, $2)", "t-1", "Write report")
            await store.append(event, conn=tx)

        assert await db.fetchval("SELECT COUNT(*) FROM tasks") == 1
        assert await store.get(event.id) is not None

    async def test_append_failure_rolls_back_business_change(self, db, store):
        """A storage error on append must take the business write down with it."""
        await db.execute_script("CREATE TABLE tasks (id TEXT PRIMARY KEY, title TEXT NOT NULL);")
        first = make_event()
        await store.append(first)
        duplicate = make_event(id=first.id)

        with pytest.raises(StorageError) as exc_info:
            async with db.transaction() as tx:
                await tx.execute("INSERT INTO tasks (id, title) VALUES ($1, $2)", "t-2", "Orphan")
                await store.append(duplicate, conn=tx)

        assert exc_info.value.operation == "append"
        assert await db.fetchval("SELECT COUNT(*) FROM tasks") == 0

    async def test_append_many_is_atomic(self, store):
        """A failure part way through a batch should append none of it."""
        first = make_event()
        await store.append(first)
        fresh = make_event()

        with pytest.raises(StorageError):
            await store.append_many([fresh, make_event(id=first.id)])

        assert await store.get(fresh.id) is None

    async def test_same_instant_appends_keep_their_order(self, store):
        """Appends under a clock that does not move are claimed in append order."""
        events = [make_event() for _ in range(10)]

        ids = await store.append_many(events)
        claimed = await store.claim_batch(limit=10, max_retries=3, worker_id="relay-1")

        assert [e.id for e in claimed] == ids
        created = [e.created_at for e in events]
        assert created == sorted(set(created))


class TestClaimBatch:
    """Lease-based claiming."""

    async def test_claims_oldest_first_up_to_limit(self, store, clock):
        """Claims should return the oldest rows first, up to the limit."""
        ids = []
        for _ in range(4):
            ids.append(await store.append(make_event()))
            clock.advance(1)

        batch = await store.claim_batch(limit=3, max_retries=3, worker_id="relay-a")

        assert [e.id for e in batch] == ids[:3]
        assert all(e.claimed_by == "relay-a" for e in batch)
        assert all(e.claim_expires_at == clock.now() + timedelta(seconds=60) for e in batch)

    async def test_claimed_rows_are_not_claimed_again(self, store):
        """A claimed row should not be handed to another worker."""
        await store.append(make_event())

        first = await store.claim_batch(limit=10, max_retries=3, worker_id="relay-a")
        second = await store.claim_batch(limit=10, max_retries=3, worker_id="relay-b")

        assert len(first) == 1
        assert second == []

    async def test_concurrent_claims_never_overlap(self, store):
        """Concurrent claims should never return the same row twice."""
        for _ in range(20):
            await store.append(make_event())

        batches = await asyncio.gather(*[
            store.claim_batch(limit=20, max_retries=3, worker_id=f"relay-{i}")
            for i in range(5)
        ])

        claimed = [e.id for batch in batches for e in batch]
        assert len(claimed) == len(set(claimed))
        assert len(claimed) == 20

    async def test_concurrent_claims_across_connections(self, db, clock):
        """Claims from separate connections should never overlap."""
        other_db = DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=db.config.sqlite_path))
        await other_db.connect()
        try:
            store_a = OutboxStore(db, clock=clock)
            store_b = OutboxStore(other_db, clock=clock)
            for _ in range(10):
                await store_a.append(make_event())

            batch_a, batch_b = await asyncio.gather(
                store_a.claim_batch(limit=10, max_retries=3, worker_id="relay-a"),
                store_b.claim_batch(limit=10, max_retries=3, worker_id="relay-b"),
            )
        finally:
            await other_db.disconnect()

        ids_a = {e.id for e in batch_a}
        ids_b = {e.id for e in batch_b}
        assert not ids_a & ids_b
        assert len(ids_a | ids_b) == 10

    async def test_expired_lease_is_reclaimable(self, store, clock):
        """A row should become claimable again once its lease expires."""
        event_id = await store.append(make_event())
        await store.claim_batch(limit=10, max_retries=3, worker_id="relay-a", lease_seconds=30)

        clock.advance(29)
        assert await store.claim_batch(limit=10, max_retries=3, worker_id="relay-b") == []

        clock.advance(1)
        reclaimed = await store.claim_batch(limit=10, max_retries=3, worker_id="relay-b")
        assert [e.id for e in reclaimed] == [event_id]
        assert reclaimed[0].claimed_by == "relay-b"

    async def test_stale_worker_cannot_record_attempt(self, store, clock):
        """A worker whose lease was taken over should not record an attempt."""
        event_id = await store.append(make_event())
        await store.claim_batch(limit=10, max_retries=3, worker_id="relay-a", lease_seconds=30)
        clock.advance(31)
        await store.claim_batch(limit=10, max_retries=3, worker_id="relay-b")

        assert await store.mark_failed_attempt(event_id, "late failure", worker_id="relay-a") is None
        assert await store.release_claims([event_id], "relay-a") == 0
        assert (await store.get(event_id)).retry_count == 0

    async def test_extend_claims_pushes_lease(self, store, clock):
        """Extending a claim should push its lease forward."""
        event_id = await store.append(make_event())
        await store.claim_batch(limit=10, max_retries=3, worker_id="relay-a", lease_seconds=30)
        clock.advance(20)

        assert await store.extend_claims([event_id], "relay-a", 30) == 1
        assert await store.extend_claims([event_id], "relay-b", 30) == 0

        clock.advance(20)
        assert await store.claim_batch(limit=10, max_retries=3, worker_id="relay-b") == []

    async def test_release_claims_returns_rows_to_pool(self, store):
        """Releasing a claim should make the row claimable again."""
        event_id = await store.append(make_event())
        await store.claim_batch(limit=10, max_retries=3, worker_id="relay-a")

        assert await store.release_claims([event_id], "relay-a") == 1

        stored = await store.get(event_id)
        assert stored.claimed_by is None
        assert stored.claim_expires_at is None
        assert len(await store.claim_batch(limit=10, max_retries=3, worker_id="relay-b")) == 1

    async def test_exhausted_rows_are_not_claimed(self, store):
        """Rows at their retry budget should not be claimed."""
        event_id = await store.append(make_event())
        for _ in range(2):
            await store.mark_failed_attempt(event_id, "boom", max_retries=10)
        store.clock.advance(3600)

        assert await store.claim_batch(limit=10, max_retries=2, worker_id="relay-a") == []

    async def test_zero_limit_claims_nothing(self, store):
        """A zero limit should claim nothing."""
        await store.append(make_event())
        assert await store.claim_batch(limit=0, max_retries=3, worker_id="relay-a") == []


class TestMarkPublished:
    """Terminal success."""

    async def test_mark_published_is_idempotent(self, store, clock):
        """Marking published twice should keep the first timestamp."""
        event_id = await store.append(make_event())

        assert await store.mark_published(event_id) is True
        first = await store.get(event_id)

        clock.advance(10)
        assert await store.mark_published(event_id) is False
        second = await store.get(event_id)

        assert second.published is True
        assert second.published_at == first.published_at == START
        assert second.version == first.version

    async def test_failed_event_stays_failed(self, store):
        """A failed event should not be marked published."""
        event_id = await store.append(make_event())
        await store.mark_failed(event_id, "rejected")

        assert await store.mark_published(event_id) is False

        stored = await store.get(event_id)
        assert stored.state == OutboxState.FAILED
        assert stored.published is False

    async def test_unknown_event(self, store):
        """Marking an unknown event should report False."""
        assert await store.mark_published(uuid4()) is False

    async def test_clears_lease(self, store):
        """Publishing should clear the lease."""
        event_id = await store.append(make_event())
        await store.claim_batch(limit=1, max_retries=3, worker_id="relay-a")
        await store.mark_published(event_id)

        stored = await store.get(event_id)
        assert stored.claimed_by is None
        assert stored.claim_expires_at is None


class TestMarkFailedAttempt:
    """Retry bookkeeping."""

    async def test_schedules_linear_backoff(self, store, clock):
        """Each failed attempt should push the next retry further out."""
        event_id = await store.append(make_event())

        first = await store.mark_failed_attempt(event_id, "broker down")
        assert first.retry_count == 1
        assert first.next_retry_at == clock.now() + timedelta(seconds=5)
        assert first.error_message == "broker down"
        assert first.failed is False

        second = await store.mark_failed_attempt(event_id, "broker down")
        assert second.retry_count == 2
        assert second.next_retry_at == clock.now() + timedelta(seconds=10)

    async def test_final_attempt_marks_failed(self, store):
        """The attempt that reaches the budget should mark the event failed."""
        event_id = await store.append(make_event())

        for _ in range(3):
            updated = await store.mark_failed_attempt(event_id, "still down", max_retries=3)

        assert updated.failed is True
        assert updated.published is False
        assert updated.retry_count == 3
        assert updated.next_retry_at is None

    async def test_terminal_rows_are_left_alone(self, store):
        """Published rows should ignore late failed attempts."""
        event_id = await store.append(make_event())
        await store.mark_published(event_id)

        assert await store.mark_failed_attempt(event_id, "late") is None
        assert (await store.get(event_id)).retry_count == 0

    async def test_long_error_messages_are_truncated(self, store):
        """Error messages should be cut to the column limit."""
        event_id = await store.append(make_event())
        updated = await store.mark_failed_attempt(event_id, "x" * 5000)
        assert len(updated.error_message) == 2000

    async def test_fail_exhausted_sweeps_stuck_rows(self, store):
        """Rows already over a lowered budget should be swept to failed."""
        stuck = await store.append(make_event())
        healthy = await store.append(make_event())
        for _ in range(3):
            await store.mark_failed_attempt(stuck, "down", max_retries=10)

        assert await store.fail_exhausted(3) == 1

        swept = await store.get(stuck)
        assert swept.failed is True
        assert swept.error_message == "Max retry attempts (3) exceeded"
        assert (await store.get(healthy)).failed is False


class TestMaintenance:
    """Purge, reset and diagnostics."""

    async def test_purge_keeps_pending_rows(self, store, clock):
        """Purging should keep pending rows."""
        published = await store.append(make_event())
        failed = await store.append(make_event())
        pending = await store.append(make_event())
        await store.mark_published(published)
        await store.mark_failed(failed, "rejected")
        clock.advance(86400)

        deleted = await store.purge_older_than(clock.now())

        assert deleted == 2
        assert await store.get(pending) is not None
        assert await store.get(published) is None

    async def test_purge_failed_only(self, store, clock):
        """Purging failed rows should keep published ones."""
        published = await store.append(make_event())
        failed = await store.append(make_event())
        await store.mark_published(published)
        await store.mark_failed(failed, "rejected")
        clock.advance(10)

        assert await store.purge_older_than(clock.now(), failed_only=True) == 1
        assert await store.get(published) is not None

    async def test_reset_failed_restores_retry_budget(self, store):
        """Resetting a failed event should give it a fresh retry budget."""
        event_id = await store.append(make_event())
        for _ in range(3):
            await store.mark_failed_attempt(event_id, "down")

        assert await store.reset_failed(event_id=event_id) == 1

        reset = await store.get(event_id)
        assert reset.state == OutboxState.PENDING
        assert reset.retry_count == 0
        assert reset.error_message is None
        assert reset.next_retry_at is None

    async def test_reset_failed_by_type(self, store):
        """Resetting by type should leave other types failed."""
        a = await store.append(make_event("order.placed"))
        b = await store.append(make_event("order.cancelled"))
        await store.mark_failed(a, "x")
        await store.mark_failed(b, "x")

        assert await store.reset_failed(event_type="order.placed") == 1
        assert (await store.get(b)).failed is True

    async def test_delete_failed_only_deletes_failed(self, store):
        """Deleting should only remove failed rows."""
        pending = await store.append(make_event())
        failed = await store.append(make_event())
        await store.mark_failed(failed, "x")

        assert await store.delete_failed(pending) is False
        assert await store.delete_failed(failed) is True
        assert await store.get(failed) is None

    async def test_stats(self, store, clock):
        """Stats should count states and report the oldest pending row."""
        oldest = await store.append(make_event())
        clock.advance(5)
        await store.append(make_event())
        done = await store.append(make_event())
        dead = await store.append(make_event("order.placed"))
        await store.mark_published(done)
        await store.mark_failed(dead, "x")
        await store.claim_batch(limit=1, max_retries=3, worker_id="relay-a")

        stats = await store.stats()

        assert stats.pending == 2
        assert stats.published == 1
        assert stats.failed == 1
        assert stats.claimed == 1
        assert stats.oldest_pending_at == (await store.get(oldest)).created_at
        assert stats.failed_by_event_type == {"order.placed": 1}

    async def test_diagnostic_queries(self, store, clock):
        """Lookups by aggregate and type should return matching rows in order."""
        aggregate = uuid4()
        first = make_event(aggregate_id=aggregate)
        second = make_event("task.archived", aggregate_id=aggregate, occurred_at=START + timedelta(seconds=1))
        await store.append(second)
        await store.append(first)
        await store.append(make_event())

        by_aggregate = await store.get_by_aggregate(aggregate)
        assert [e.id for e in by_aggregate] == [first.id, second.id]

        assert [e.id for e in await store.get_by_type("task.archived")] == [second.id]

        in_range = await store.get_by_time_range(START + timedelta(milliseconds=500), START + timedelta(seconds=2))
        assert [e.id for e in in_range] == [second.id]

    async def test_list_failed_newest_first(self, store, clock):
        """Failed rows should be listed newest first."""
        older = await store.append(make_event("a"))
        clock.advance(1)
        newer = await store.append(make_event("b"))
        await store.mark_failed(older, "x")
        await store.mark_failed(newer, "x")

        assert [e.id for e in await store.list_failed()] == [newer, older]
        assert [e.id for e in await store.list_failed(event_type="a")] == [older]
        assert await store.count_failed() == 2
        assert await store.count_failed("b") == 1
