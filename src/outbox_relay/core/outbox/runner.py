"""
Outbox Relay Runner

Standalone process running the dispatch loop, for deployments that keep
the relay in its own container.

Usage:
    outbox-relay
    python -m outbox_relay.core.outbox.runner

Configuration comes from the environment (see RelaySettings); SIGTERM or
SIGINT triggers a graceful shutdown, a second signal forces exit.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from ..config import RelaySettings
from ..database.adapter import DatabaseAdapter, DatabaseBackend
from ..observability import configure_logging, init_metrics, init_tracing
from .lifecycle import outbox_lifespan
from .processor import OutboxProcessor
from .store import OutboxStore

logger = logging.getLogger(__name__)


class OutboxRunner:
    """
    Manages the outbox processor lifecycle with graceful shutdown.
    """

    def __init__(self, settings: Optional[RelaySettings] = None, db: Optional[DatabaseAdapter] = None):
        self.settings = settings or RelaySettings.from_env()
        self.db = db or DatabaseAdapter()
        self.processor: Optional[OutboxProcessor] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self, install_signal_handlers: bool = True):
        """Run the outbox processor until shutdown is requested."""
        logger.info(f"Starting Outbox Relay Runner ({self.db.config})")

        await self.db.connect()
        try:
            store = OutboxStore(self.db, retry=self.settings.retry)
            if self.db.backend == DatabaseBackend.SQLITE:
                await store.ensure_schema()

            if install_signal_handlers:
                self._setup_signal_handlers()

            async with outbox_lifespan(store, self.settings) as processor:
                self.processor = processor
                if processor is None:
                    return
                logger.info("Outbox Relay is running")
                await self._shutdown_event.wait()
        finally:
            await self.db.disconnect()
            logger.info("Outbox Relay stopped")

    def health_check(self) -> dict:
        running = bool(self.processor and self.processor.running)
        return {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "shutdown_requested": self._shutdown_requested,
        }


async def _main():
    settings = RelaySettings.from_env()
    configure_logging(settings.log_level, settings.log_structured)
    if settings.otlp_endpoint:
        init_tracing(otlp_endpoint=settings.otlp_endpoint)
        init_metrics(otlp_endpoint=settings.otlp_endpoint)

    await OutboxRunner(settings).run()


def main():
    """Console entry point."""
    asyncio.run(_main())


if __name__ == "__main__":
    main()
