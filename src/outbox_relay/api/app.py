"""
Outbox Relay Operator API

Health probes plus outbox and dead-letter administration. When enabled
in settings the dispatch loop runs inside the API process as well.

See main.py for the uvicorn entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..core.broker.base import MessagePublisher
from ..core.config import RelaySettings
from ..core.database.adapter import DatabaseAdapter, DatabaseBackend
from ..core.outbox.dlq import DLQManager
from ..core.outbox.lifecycle import outbox_lifespan
from ..core.outbox.store import OutboxStore
from .routers import admin_router
from .shared.middleware import register_error_handlers, TraceMiddleware
from .shared.routers import health_router

logger = logging.getLogger(__name__)


def create_app(
    db: Optional[DatabaseAdapter] = None,
    settings: Optional[RelaySettings] = None,
    publisher: Optional[MessagePublisher] = None,
) -> FastAPI:
    """Build the operator API around one database adapter."""
    settings = settings or RelaySettings.from_env()
    db = db or DatabaseAdapter()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown."""
        owns_connection = not db.connected
        if owns_connection:
            await db.connect()

        store = OutboxStore(db, retry=settings.retry)
        if db.backend == DatabaseBackend.SQLITE:
            await store.ensure_schema()

        app.state.settings = settings
        app.state.db = db
        app.state.store = store
        app.state.dlq = DLQManager(store)
        logger.info(f"Operator API ready on {db.backend.value}")

        try:
            async with outbox_lifespan(store, settings, publisher) as processor:
                app.state.processor = processor
                yield
        finally:
            if owns_connection:
                await db.disconnect()

    app = FastAPI(
        title="Outbox Relay",
        description="Operator API for the transactional outbox relay",
        version="0.1.0",
        lifespan=lifespan
    )

    register_error_handlers(app)
    app.add_middleware(TraceMiddleware)

    app.include_router(health_router)
    app.include_router(admin_router)
    return app


