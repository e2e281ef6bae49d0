"""
Database abstraction layer supporting PostgreSQL and SQLite.

Usage:
    from outbox_relay.core.database import DatabaseAdapter

    db = DatabaseAdapter()
    await db.connect()

    rows = await db.fetch("SELECT * FROM outbox_events WHERE failed = TRUE")

    async with db.transaction() as tx:
        await tx.execute("UPDATE tasks SET done = TRUE WHERE id = $1", task_id)
"""

from .adapter import (
    DRIVER_ERRORS,
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    Transaction,
    rows_affected,
)

__all__ = [
    "DRIVER_ERRORS",
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "Transaction",
    "rows_affected",
]
