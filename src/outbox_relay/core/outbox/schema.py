"""
Outbox Schema

DDL for the outbox_events and inbox tables. PostgreSQL deployments apply
db/migrations/ with db/migrate.py; ensure_schema() is for SQLite and for
bootstrapping fresh databases.
"""

import logging

from ..database.adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "outbox_events"
INBOX_TABLE = "inbox"

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_events (
    id UUID PRIMARY KEY,
    event_type VARCHAR(500) NOT NULL,
    payload TEXT NOT NULL,
    aggregate_id UUID NULL,
    aggregate_type VARCHAR(255) NULL,
    occurred_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    published BOOLEAN NOT NULL DEFAULT FALSE,
    published_at TIMESTAMPTZ NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT NULL,
    failed BOOLEAN NOT NULL DEFAULT FALSE,
    next_retry_at TIMESTAMPTZ NULL,
    claimed_by VARCHAR(255) NULL,
    claimed_at TIMESTAMPTZ NULL,
    claim_expires_at TIMESTAMPTZ NULL,
    version INTEGER NOT NULL DEFAULT 0,
    CONSTRAINT ck_outbox_events_terminal CHECK (NOT (published AND failed))
);

CREATE INDEX IF NOT EXISTS ix_outbox_events_published_failed_created_at
    ON outbox_events (published, failed, created_at);
CREATE INDEX IF NOT EXISTS ix_outbox_events_aggregate_id
    ON outbox_events (aggregate_id) WHERE aggregate_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS ix_outbox_events_event_type
    ON outbox_events (event_type);
CREATE INDEX IF NOT EXISTS ix_outbox_events_occurred_at
    ON outbox_events (occurred_at);
CREATE INDEX IF NOT EXISTS ix_outbox_events_next_retry_at
    ON outbox_events (next_retry_at) WHERE published = FALSE AND failed = FALSE;

CREATE TABLE IF NOT EXISTS inbox (
    message_id UUID NOT NULL,
    consumer_id VARCHAR(255) NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (message_id, consumer_id)
);
"""

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_events (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL CHECK (length(event_type) <= 500),
    payload TEXT NOT NULL,
    aggregate_id TEXT NULL,
    aggregate_type TEXT NULL CHECK (aggregate_type IS NULL OR length(aggregate_type) <= 255),
    occurred_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    published INTEGER NOT NULL DEFAULT 0,
    published_at TEXT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT NULL,
    failed INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT NULL,
    claimed_by TEXT NULL,
    claimed_at TEXT NULL,
    claim_expires_at TEXT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    CHECK (NOT (published AND failed))
);

CREATE INDEX IF NOT EXISTS ix_outbox_events_published_failed_created_at
    ON outbox_events (published, failed, created_at);
CREATE INDEX IF NOT EXISTS ix_outbox_events_aggregate_id
    ON outbox_events (aggregate_id);
CREATE INDEX IF NOT EXISTS ix_outbox_events_event_type
    ON outbox_events (event_type);
CREATE INDEX IF NOT EXISTS ix_outbox_events_occurred_at
    ON outbox_events (occurred_at);
CREATE INDEX IF NOT EXISTS ix_outbox_events_next_retry_at
    ON outbox_events (next_retry_at);

CREATE TABLE IF NOT EXISTS inbox (
    message_id TEXT NOT NULL,
    consumer_id TEXT NOT NULL,
    processed_at TEXT NOT NULL,
    PRIMARY KEY (message_id, consumer_id)
);
"""


def schema_for(backend: DatabaseBackend) -> str:
    if backend == DatabaseBackend.POSTGRESQL:
        return POSTGRES_SCHEMA
    return SQLITE_SCHEMA


async def ensure_schema(db: DatabaseAdapter) -> None:
    """Create the outbox and inbox tables if they do not exist."""
    await db.execute_script(schema_for(db.backend))
    logger.info(f"Outbox schema ensured ({db.backend.value})")
