"""
Outbox Lifecycle Management

Wires the dispatch loop from settings and ties it to an application
lifespan (FastAPI or the standalone runner).
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..broker.base import MessagePublisher
from ..broker.factory import get_publisher
from ..config import RelaySettings
from .dlq import PublisherDeadLetterSink
from .processor import OutboxProcessor, start_outbox_processor, stop_outbox_processor
from .store import OutboxStore

logger = logging.getLogger(__name__)


def build_publisher(settings: RelaySettings) -> MessagePublisher:
    if settings.publisher == "http":
        return get_publisher("http", base_url=settings.http_url, timeout=settings.outbox.publish_timeout)
    return get_publisher(settings.publisher)


def build_processor(
    store: OutboxStore,
    settings: RelaySettings,
    publisher: Optional[MessagePublisher] = None,
) -> OutboxProcessor:
    """Processor configured from settings; the dead-letter sink shares the publisher."""
    publisher = publisher or build_publisher(settings)

    dead_letter = None
    if settings.dead_letter_topic:
        dead_letter = PublisherDeadLetterSink(publisher, settings.dead_letter_topic)

    return OutboxProcessor(
        store,
        publisher,
        options=settings.outbox,
        retry=settings.retry,
        dead_letter=dead_letter,
    )


@asynccontextmanager
async def outbox_lifespan(
    store: OutboxStore,
    settings: Optional[RelaySettings] = None,
    publisher: Optional[MessagePublisher] = None,
) -> AsyncIterator[Optional[OutboxProcessor]]:
    """
    Lifespan context manager for the outbox processor.

    Usage in FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan(store) as processor:
                yield

        app = FastAPI(lifespan=lifespan)

    Yields None when OUTBOX_ENABLED or OUTBOX_PROCESSOR_ENABLED is false
    (e.g. API replicas that only write events).
    """
    settings = settings or RelaySettings.from_env()

    if not (settings.outbox.enabled and settings.outbox.processor_enabled):
        reason = []
        if not settings.outbox.enabled:
            reason.append("OUTBOX_ENABLED=false")
        if not settings.outbox.processor_enabled:
            reason.append("OUTBOX_PROCESSOR_ENABLED=false")
        logger.info(f"Outbox processor disabled: {', '.join(reason)}")
        yield None
        return

    owns_publisher = publisher is None
    processor = build_processor(store, settings, publisher)

    logger.info(
        f"Starting outbox processor {processor.worker_id}: publisher={processor.publisher.name} "
        f"poll={settings.outbox.poll_interval}s batch={settings.outbox.query_limit} "
        f"max_attempts={settings.retry.retry_count}"
    )
    await start_outbox_processor(processor)
    try:
        yield processor
    finally:
        logger.info("Stopping outbox processor...")
        await stop_outbox_processor(settings.outbox.shutdown_timeout)
        if owns_publisher:
            await processor.publisher.close()
