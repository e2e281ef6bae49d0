"""
Outbox Store

Durable, transactionally consistent persistence of outbox events and the
state transitions the dispatch loop drives:

    pending --(mark_published)--> published
    pending --(mark_failed_attempt, budget left)--> pending, retry_count + 1
    pending --(mark_failed_attempt, budget spent | mark_failed)--> failed

Published and failed are absorbing; only reset_failed() (an operator
action) moves a failed row back to pending.

Coordination between concurrent relays happens here and only here. A claim
is a lease (claimed_by, claim_expires_at) taken with a conditional UPDATE
guarded by the row's version column, so two claimants can never both win
the same row, and a crashed claimant's rows become claimable again once the
lease runs out.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable, List, Optional, Union
from uuid import UUID

from ..clock import Clock, system_clock
from ..config import RetryOptions
from ..database.adapter import DRIVER_ERRORS, DatabaseAdapter, Transaction, rows_affected
from ..observability.metrics import record_counter
from .errors import StorageError
from .models import OutboxEvent, OutboxStats
from .retry import calculate_next_attempt, is_exhausted
from .schema import ensure_schema

logger = logging.getLogger(__name__)

Executor = Union[DatabaseAdapter, Transaction]

MAX_ERROR_MESSAGE_LENGTH = 2000

_COLUMNS = """
    id, event_type, payload, aggregate_id, aggregate_type,
    occurred_at, created_at, published, published_at, retry_count,
    error_message, failed, next_retry_at, claimed_by, claimed_at,
    claim_expires_at, version
"""

_PENDING = "published = FALSE AND failed = FALSE"

_RELEASE_LEASE = "claimed_by = NULL, claimed_at = NULL, claim_expires_at = NULL"


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _truncate(message: str) -> str:
    return message[:MAX_ERROR_MESSAGE_LENGTH]


class OutboxStore:
    """
    Repository for the outbox_events table.

    Write operations accept an optional ``conn`` (a Transaction from
    DatabaseAdapter.begin()/transaction()) to take part in the caller's
    transaction; without one they run in their own.

    Usage:
        store = OutboxStore(db)

        async with db.transaction() as tx:
            await tx.execute("UPDATE tasks SET status = $1 WHERE id = $2", "done", task_id)
            await store.append(event, conn=tx)

        batch = await store.claim_batch(limit=100, max_retries=3, worker_id="relay-1")
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        clock: Clock = system_clock,
        retry: Optional[RetryOptions] = None,
    ):
        self._db = db
        self._clock = clock
        self.retry = retry or RetryOptions()
        self._last_created_at: Optional[datetime] = None

    @property
    def db(self) -> DatabaseAdapter:
        return self._db

    @property
    def clock(self) -> Clock:
        return self._clock

    async def ensure_schema(self) -> None:
        await ensure_schema(self._db)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def append(self, event: OutboxEvent, conn: Optional[Transaction] = None) -> UUID:
        """
        Insert a new pending row.

        Raises:
            StorageError: the insert failed (constraint violation, lost
                connection). The enclosing transaction must roll back.
        """
        db = conn if conn is not None else self._db
        created_at = self._next_created_at()

        try:
            await db.execute(
                """
                INSERT INTO outbox_events (
                    id, event_type, payload, aggregate_id, aggregate_type,
                    occurred_at, created_at, published, retry_count, failed, version
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, FALSE, 0, FALSE, 0)
                """,
                event.id,
                event.event_type,
                event.payload,
                event.aggregate_id,
                event.aggregate_type,
                event.occurred_at,
                created_at
            )
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to append event {event.event_type} ({event.id}) to outbox: {e}")
            raise StorageError("append", str(e), str(event.id)) from e

        event.created_at = created_at
        record_counter("outbox_events_appended_total", attributes={"event_type": event.event_type})
        logger.debug(
            f"Appended event to outbox: id={event.id} type={event.event_type} "
            f"aggregate={event.aggregate_id}"
        )
        return event.id

    def _next_created_at(self) -> datetime:
        """Clock time, nudged forward so appends through this store keep their order."""
        now = self._clock.now()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    async def append_many(
        self,
        events: Iterable[OutboxEvent],
        conn: Optional[Transaction] = None
    ) -> List[UUID]:
        """Append several events atomically (inside ``conn`` or a new transaction)."""
        async with self._unit(conn) as tx:
            return [await self.append(event, conn=tx) for event in events]

    # ------------------------------------------------------------------
    # Dispatch side
    # ------------------------------------------------------------------

    async def claim_batch(
        self,
        limit: int,
        max_retries: int,
        worker_id: str,
        lease_seconds: float = 60.0,
    ) -> List[OutboxEvent]:
        """
        Claim up to ``limit`` claimable rows, oldest first.

        Candidates are read without locks; each is then taken with an UPDATE
        that re-checks the claim predicate and the row version. A zero row
        count means another relay got there first, and the row is skipped.
        """
        if limit <= 0:
            return []

        now = self._clock.now()
        expires_at = now + timedelta(seconds=lease_seconds)

        async with self._storage_errors("claim_batch"):
            candidates = await self._db.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM outbox_events
                WHERE {_PENDING}
                  AND retry_count < $1
                  AND (next_retry_at IS NULL OR next_retry_at <= $2)
                  AND (claim_expires_at IS NULL OR claim_expires_at <= $2)
                ORDER BY created_at ASC, id ASC
                LIMIT $3
                """,
                max_retries,
                now,
                limit
            )

            claimed: List[OutboxEvent] = []
            for row in candidates:
                status = await self._db.execute(
                    f"""
                    UPDATE outbox_events
                    SET claimed_by = $1, claimed_at = $2, claim_expires_at = $3,
                        version = version + 1
                    WHERE id = $4
                      AND version = $5
                      AND {_PENDING}
                      AND retry_count < $6
                      AND (next_retry_at IS NULL OR next_retry_at <= $2)
                      AND (claim_expires_at IS NULL OR claim_expires_at <= $2)
                    """,
                    worker_id,
                    now,
                    expires_at,
                    row["id"],
                    row["version"],
                    max_retries
                )
                if rows_affected(status) != 1:
                    logger.debug(f"Claim contention: event {row['id']} taken by another relay")
                    continue

                event = OutboxEvent.from_row(row)
                event.claimed_by = worker_id
                event.claimed_at = now
                event.claim_expires_at = expires_at
                event.version = row["version"] + 1
                claimed.append(event)

        if claimed:
            logger.debug(f"Relay {worker_id} claimed {len(claimed)}/{len(candidates)} events")
        return claimed

    async def extend_claims(
        self,
        event_ids: Iterable[UUID],
        worker_id: str,
        lease_seconds: float,
    ) -> int:
        """Push the lease end forward for rows still held by ``worker_id``."""
        expires_at = self._clock.now() + timedelta(seconds=lease_seconds)
        extended = 0
        async with self._storage_errors("extend_claims"):
            for event_id in event_ids:
                status = await self._db.execute(
                    f"""
                    UPDATE outbox_events
                    SET claim_expires_at = $3
                    WHERE id = $1 AND claimed_by = $2 AND {_PENDING}
                    """,
                    event_id,
                    worker_id,
                    expires_at
                )
                extended += rows_affected(status)
        return extended

    async def release_claims(self, event_ids: Iterable[UUID], worker_id: str) -> int:
        """Hand unprocessed claimed rows back to the pool immediately."""
        released = 0
        async with self._storage_errors("release_claims"):
            for event_id in event_ids:
                status = await self._db.execute(
                    f"""
                    UPDATE outbox_events
                    SET {_RELEASE_LEASE}, version = version + 1
                    WHERE id = $1 AND claimed_by = $2 AND {_PENDING}
                    """,
                    event_id,
                    worker_id
                )
                released += rows_affected(status)
        if released:
            record_counter("outbox_claims_released_total", released)
            logger.info(f"Relay {worker_id} released {released} claimed events")
        return released

    async def mark_published(
        self,
        event_id: UUID,
        published_at: Optional[datetime] = None,
        conn: Optional[Transaction] = None,
    ) -> bool:
        """
        Mark an event as published.

        Idempotent: returns False without changing anything when the row is
        already published (duplicate confirmation), failed, or gone.
        """
        db = conn if conn is not None else self._db
        published_at = published_at or self._clock.now()

        async with self._storage_errors("mark_published", event_id):
            status = await db.execute(
                f"""
                UPDATE outbox_events
                SET published = TRUE, published_at = $2, error_message = NULL,
                    next_retry_at = NULL, {_RELEASE_LEASE}, version = version + 1
                WHERE id = $1 AND {_PENDING}
                """,
                event_id,
                published_at
            )
            if rows_affected(status) == 1:
                return True

            current = await db.fetchrow(
                "SELECT published, failed FROM outbox_events WHERE id = $1",
                event_id
            )

        if current is None:
            logger.warning(f"mark_published: event {event_id} not found")
        elif current["failed"]:
            logger.warning(f"mark_published: event {event_id} is already failed, confirmation ignored")
        else:
            logger.debug(f"mark_published: event {event_id} already published")
        return False

    async def mark_failed_attempt(
        self,
        event_id: UUID,
        error_message: str,
        max_retries: Optional[int] = None,
        worker_id: Optional[str] = None,
        conn: Optional[Transaction] = None,
    ) -> Optional[OutboxEvent]:
        """
        Record a failed delivery attempt.

        Increments retry_count and stores the error. If the new count reaches
        ``max_retries`` the event becomes failed; otherwise next_retry_at is
        pushed out by the backoff policy. With ``worker_id`` set, the update
        only applies while that relay still holds (or nobody holds) the lease.

        Returns:
            The updated event, or None if the row was no longer pending.
        """
        max_retries = max_retries if max_retries is not None else self.retry.retry_count
        now = self._clock.now()

        async with self._storage_errors("mark_failed_attempt", event_id):
            async with self._unit(conn) as tx:
                row = await tx.fetchrow(
                    f"""
                    SELECT retry_count, version, claimed_by
                    FROM outbox_events
                    WHERE id = $1 AND {_PENDING}
                    """,
                    event_id
                )
                if row is None:
                    logger.warning(f"mark_failed_attempt: event {event_id} is not pending")
                    return None
                if worker_id is not None and row["claimed_by"] not in (None, worker_id):
                    logger.warning(
                        f"mark_failed_attempt: event {event_id} lease moved to {row['claimed_by']}, "
                        f"attempt by {worker_id} not recorded"
                    )
                    return None

                attempts = row["retry_count"] + 1
                exhausted = is_exhausted(attempts, max_retries)
                next_retry_at = None if exhausted else calculate_next_attempt(
                    row["retry_count"], now, self.retry
                )

                status = await tx.execute(
                    f"""
                    UPDATE outbox_events
                    SET retry_count = $2, error_message = $3, failed = $4,
                        next_retry_at = $5, {_RELEASE_LEASE}, version = version + 1
                    WHERE id = $1 AND version = $6
                    """,
                    event_id,
                    attempts,
                    _truncate(error_message),
                    exhausted,
                    next_retry_at,
                    row["version"]
                )
                if rows_affected(status) != 1:
                    logger.warning(f"mark_failed_attempt: event {event_id} changed concurrently")
                    return None

                updated = await tx.fetchrow(
                    f"SELECT {_COLUMNS} FROM outbox_events WHERE id = $1",
                    event_id
                )

        return OutboxEvent.from_row(updated)

    async def mark_failed(
        self,
        event_id: UUID,
        error_message: str,
        count_attempt: bool = False,
        conn: Optional[Transaction] = None,
    ) -> bool:
        """Move a pending event straight to failed (e.g. a permanent broker rejection)."""
        db = conn if conn is not None else self._db
        async with self._storage_errors("mark_failed", event_id):
            status = await db.execute(
                f"""
                UPDATE outbox_events
                SET failed = TRUE, error_message = $2, retry_count = retry_count + $3,
                    next_retry_at = NULL, {_RELEASE_LEASE}, version = version + 1
                WHERE id = $1 AND {_PENDING}
                """,
                event_id,
                _truncate(error_message),
                1 if count_attempt else 0
            )
        return rows_affected(status) == 1

    async def fail_exhausted(self, max_retries: int) -> int:
        """
        Fail pending rows that already used ``max_retries`` attempts.

        Such rows are never claimed again, so without this sweep they would
        sit pending forever (e.g. after the retry budget was lowered).
        """
        now = self._clock.now()
        async with self._storage_errors("fail_exhausted"):
            status = await self._db.execute(
                f"""
                UPDATE outbox_events
                SET failed = TRUE, error_message = $2, next_retry_at = NULL,
                    {_RELEASE_LEASE}, version = version + 1
                WHERE {_PENDING}
                  AND retry_count >= $1
                  AND (claim_expires_at IS NULL OR claim_expires_at <= $3)
                """,
                max_retries,
                f"Max retry attempts ({max_retries}) exceeded",
                now
            )
        count = rows_affected(status)
        if count:
            logger.error(f"{count} outbox events exceeded {max_retries} attempts and were marked failed")
            record_counter("outbox_events_failed_total", count, {"reason": "exhausted"})
        return count

    # ------------------------------------------------------------------
    # Maintenance / operator actions
    # ------------------------------------------------------------------

    async def purge_older_than(
        self,
        cutoff: datetime,
        failed_only: bool = False,
        conn: Optional[Transaction] = None,
    ) -> int:
        """Delete terminal rows created before ``cutoff``. Pending rows are never deleted."""
        db = conn if conn is not None else self._db
        terminal = "failed = TRUE" if failed_only else "(published = TRUE OR failed = TRUE)"
        async with self._storage_errors("purge_older_than"):
            status = await db.execute(
                f"""
                DELETE FROM outbox_events
                WHERE created_at < $1
                  AND {terminal}
                """,
                cutoff
            )
        count = rows_affected(status)
        logger.info(
            f"Purged {count} {'failed' if failed_only else 'terminal'} outbox events "
            f"created before {cutoff.isoformat()}"
        )
        return count

    async def reset_failed(
        self,
        event_id: Optional[UUID] = None,
        event_type: Optional[str] = None,
    ) -> int:
        """Return failed rows to pending with a fresh retry budget."""
        conditions = ["failed = TRUE"]
        args: List[Any] = []
        if event_id is not None:
            args.append(event_id)
            conditions.append(f"id = ${len(args)}")
        if event_type is not None:
            args.append(event_type)
            conditions.append(f"event_type = ${len(args)}")

        async with self._storage_errors("reset_failed", event_id):
            status = await self._db.execute(
                f"""
                UPDATE outbox_events
                SET failed = FALSE, retry_count = 0, error_message = NULL,
                    next_retry_at = NULL, {_RELEASE_LEASE}, version = version + 1
                WHERE {' AND '.join(conditions)}
                """,
                *args
            )
        return rows_affected(status)

    async def delete_failed(self, event_id: UUID) -> bool:
        """Discard a single failed row."""
        async with self._storage_errors("delete_failed", event_id):
            status = await self._db.execute(
                "DELETE FROM outbox_events WHERE id = $1 AND failed = TRUE",
                event_id
            )
        return rows_affected(status) == 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, event_id: UUID, conn: Optional[Transaction] = None) -> Optional[OutboxEvent]:
        db = conn if conn is not None else self._db
        async with self._storage_errors("get", event_id):
            row = await db.fetchrow(
                f"SELECT {_COLUMNS} FROM outbox_events WHERE id = $1",
                event_id
            )
        return OutboxEvent.from_row(row) if row else None

    async def get_by_aggregate(self, aggregate_id: UUID) -> List[OutboxEvent]:
        """All events of one aggregate, in occurrence order."""
        return await self._query(
            f"""
            SELECT {_COLUMNS} FROM outbox_events
            WHERE aggregate_id = $1
            ORDER BY occurred_at ASC, created_at ASC
            """,
            aggregate_id
        )

    async def get_by_type(self, event_type: str, limit: int = 100) -> List[OutboxEvent]:
        return await self._query(
            f"""
            SELECT {_COLUMNS} FROM outbox_events
            WHERE event_type = $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            event_type,
            limit
        )

    async def get_by_time_range(self, start: datetime, end: datetime) -> List[OutboxEvent]:
        """Events that occurred in [start, end)."""
        return await self._query(
            f"""
            SELECT {_COLUMNS} FROM outbox_events
            WHERE occurred_at >= $1 AND occurred_at < $2
            ORDER BY occurred_at ASC
            """,
            start,
            end
        )

    async def list_failed(
        self,
        limit: int = 100,
        offset: int = 0,
        event_type: Optional[str] = None,
    ) -> List[OutboxEvent]:
        if event_type:
            return await self._query(
                f"""
                SELECT {_COLUMNS} FROM outbox_events
                WHERE failed = TRUE AND event_type = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                event_type, limit, offset
            )
        return await self._query(
            f"""
            SELECT {_COLUMNS} FROM outbox_events
            WHERE failed = TRUE
            ORDER BY created_at DESC
            LIMIT $1 OFFSET $2
            """,
            limit, offset
        )

    async def count_failed(self, event_type: Optional[str] = None) -> int:
        async with self._storage_errors("count_failed"):
            if event_type:
                count = await self._db.fetchval(
                    "SELECT COUNT(*) AS count FROM outbox_events WHERE failed = TRUE AND event_type = $1",
                    event_type
                )
            else:
                count = await self._db.fetchval(
                    "SELECT COUNT(*) AS count FROM outbox_events WHERE failed = TRUE"
                )
        return int(count or 0)

    async def stats(self) -> OutboxStats:
        """Counts by state, active leases, and the oldest pending row."""
        now = self._clock.now()
        async with self._storage_errors("stats"):
            row = await self._db.fetchrow(
                f"""
                SELECT
                    SUM(CASE WHEN {_PENDING} THEN 1 ELSE 0 END) AS pending,
                    SUM(CASE WHEN published = TRUE THEN 1 ELSE 0 END) AS published,
                    SUM(CASE WHEN failed = TRUE THEN 1 ELSE 0 END) AS failed,
                    SUM(CASE WHEN {_PENDING} AND claim_expires_at > $1 THEN 1 ELSE 0 END) AS claimed,
                    MIN(CASE WHEN {_PENDING} THEN created_at END) AS oldest_pending_at
                FROM outbox_events
                """,
                now
            )
            by_type = await self._db.fetch(
                """
                SELECT event_type, COUNT(*) AS count
                FROM outbox_events
                WHERE failed = TRUE
                GROUP BY event_type
                ORDER BY count DESC
                """
            )

        row = row or {}
        return OutboxStats(
            pending=int(row.get("pending") or 0),
            published=int(row.get("published") or 0),
            failed=int(row.get("failed") or 0),
            claimed=int(row.get("claimed") or 0),
            oldest_pending_at=_as_datetime(row.get("oldest_pending_at")),
            failed_by_event_type={r["event_type"]: int(r["count"]) for r in by_type},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _query(self, query: str, *args) -> List[OutboxEvent]:
        async with self._storage_errors("query"):
            rows = await self._db.fetch(query, *args)
        return [OutboxEvent.from_row(row) for row in rows]

    @asynccontextmanager
    async def _unit(self, conn: Optional[Transaction]) -> AsyncIterator[Executor]:
        """Use the caller's transaction if given, else open one."""
        if conn is not None:
            yield conn
        else:
            async with self._db.transaction() as tx:
                yield tx

    @asynccontextmanager
    async def _storage_errors(self, operation: str, event_id: Optional[UUID] = None) -> AsyncIterator[None]:
        try:
            yield
        except DRIVER_ERRORS as e:
            logger.error(f"Outbox {operation} failed: {e}")
            raise StorageError(operation, str(e), str(event_id) if event_id else None) from e
