"""
Outbox Processor

Background dispatch loop: claims batches of pending outbox events, hands
each to the broker adapter in created_at order, and records the outcome.

Delivery is at-least-once. A crash between a successful publish and
mark_published leaves the row claimed; once the lease runs out another
relay (or this one after restart) publishes it again. Consumers dedupe with
the inbox guard.

Ordering: one relay dispatches oldest-first. With several relays sharing
the table, batches interleave and global FIFO is lost; run a single relay
when strict ordering matters.
"""

import asyncio
import logging
import os
import socket
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from opentelemetry.trace import SpanKind

from ..broker.base import MessagePublisher, PublishErrorKind, PublishResult
from ..clock import Clock
from ..config import OutboxOptions, RetryOptions
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import create_span, inject_trace_context
from .dlq import DeadLetterSink
from .errors import OutboxError
from .models import DispatchReport, OutboxEvent
from .store import OutboxStore

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """host:pid:random, unique per processor instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class OutboxProcessor:
    """
    Processes outbox events and delivers them to the broker.

    Features:
    - Polls the store and claims batches under a lease
    - Renews the lease before a publish that could outlive it
    - Retries failed deliveries with linear backoff
    - Marks events published or failed, and dead-letters the failures
    - Releases unprocessed claims on shutdown

    Usage:
        processor = OutboxProcessor(store, publisher, options=OutboxOptions.from_env())
        await processor.start()
        ...
        await processor.stop()

    Or one cycle at a time (tests, cron-style runs):
        report = await processor.process_batch()
    """

    def __init__(
        self,
        store: OutboxStore,
        publisher: MessagePublisher,
        options: Optional[OutboxOptions] = None,
        retry: Optional[RetryOptions] = None,
        clock: Optional[Clock] = None,
        worker_id: Optional[str] = None,
        dead_letter: Optional[DeadLetterSink] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.options = options or OutboxOptions()
        self.retry = retry or store.retry
        self.clock = clock or store.clock
        self.worker_id = worker_id or default_worker_id()
        self.dead_letter = dead_letter

        self.totals = DispatchReport()
        self.last_cycle_at: Optional[datetime] = None

        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._in_flight: List[UUID] = []

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the processor."""
        if self.running:
            return

        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name=f"outbox-processor-{self.worker_id}")
        logger.info(f"OutboxProcessor {self.worker_id} started")

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop the processor.

        Stops claiming, lets the in-flight publish finish and releases the
        rest of the batch. If that takes longer than ``timeout`` the loop is
        cancelled; the abandoned event is released along with the others.
        """
        timeout = self.options.shutdown_timeout if timeout is None else timeout
        self._stopping.set()

        if self._task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"OutboxProcessor {self.worker_id} did not stop within {timeout}s, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None

        logger.info(f"OutboxProcessor {self.worker_id} stopped ({self.totals.to_dict()})")

    async def _run(self):
        """Main processing loop."""
        try:
            await self.store.fail_exhausted(self.retry.retry_count)
        except OutboxError as e:
            logger.error(f"Exhausted-event sweep failed: {e}")

        while not self._stopping.is_set():
            try:
                report = await self.process_batch()
            except Exception as e:
                logger.error(f"OutboxProcessor error: {e}", exc_info=True)
                report = None

            if report is None or report.claimed == 0:
                await self._sleep(self.options.poll_interval)

    async def _sleep(self, seconds: float):
        """Wait for the poll interval, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_batch(self) -> DispatchReport:
        """Run one dispatch cycle."""
        report = DispatchReport()

        batch = await self.store.claim_batch(
            limit=self.options.query_limit,
            max_retries=self.retry.retry_count,
            worker_id=self.worker_id,
            lease_seconds=self.options.lease_seconds,
        )
        report.claimed = len(batch)
        self.last_cycle_at = self.clock.now()

        if not batch:
            return report

        self._in_flight = [event.id for event in batch]
        try:
            for event in batch:
                if self._stopping.is_set():
                    break
                if await self._ensure_lease(event):
                    await self._dispatch(event, report)
                self._in_flight.remove(event.id)
        finally:
            if self._in_flight:
                remaining, self._in_flight = self._in_flight, []
                report.released = await self._release(remaining)
            self.totals.merge(report)

        if report.processed:
            logger.info(
                f"Outbox cycle: {report.published} published, {report.retried} retried, "
                f"{report.failed} failed, {report.released} released"
            )
        return report

    async def _ensure_lease(self, event: OutboxEvent) -> bool:
        """Renew the claim if it could expire during the publish. False if the lease was lost."""
        now = self.clock.now()
        margin = timedelta(seconds=self.options.publish_timeout)
        if event.claim_expires_at is not None and event.claim_expires_at - now > margin:
            return True

        renewed = await self.store.extend_claims([event.id], self.worker_id, self.options.lease_seconds)
        if not renewed:
            logger.warning(f"Lease on outbox event {event.id} lost before publish, skipping")
            return False

        event.claim_expires_at = now + timedelta(seconds=self.options.lease_seconds)
        return True

    async def _dispatch(self, event: OutboxEvent, report: DispatchReport):
        """Publish one event and reconcile the outcome."""
        attributes = {
            "messaging.message.id": str(event.id),
            "outbox.event_type": event.event_type,
            "outbox.attempt": event.retry_count + 1,
        }

        with create_span("outbox.publish", attributes, kind=SpanKind.PRODUCER) as span:
            headers = inject_trace_context({})
            request = event.to_publish_request(headers)

            start = time.monotonic()
            result = await self._publish(request)
            duration = time.monotonic() - start

            outcome = "ack" if result.ok else (result.error_kind or PublishErrorKind.TRANSIENT).value
            span.set_attribute("outbox.outcome", outcome)
            record_histogram(
                "outbox_publish_duration_seconds",
                duration,
                {"event_type": event.event_type, "outcome": outcome},
            )

            if result.ok:
                await self._on_published(event, report)
            else:
                await self._on_failed(event, result, report)

    async def _publish(self, request) -> PublishResult:
        """Call the adapter; timeouts and escaping exceptions count as transient failures."""
        try:
            return await asyncio.wait_for(
                self.publisher.publish(request),
                timeout=self.options.publish_timeout,
            )
        except asyncio.TimeoutError:
            return PublishResult.transient(f"publish timed out after {self.options.publish_timeout}s")
        except Exception as e:
            logger.warning(f"Publisher {self.publisher.name} raised for {request.message_id}: {e}", exc_info=True)
            return PublishResult.transient(f"{type(e).__name__}: {e}")

    async def _on_published(self, event: OutboxEvent, report: DispatchReport):
        changed = await self.store.mark_published(event.id, self.clock.now())
        report.published += 1
        record_counter("outbox_events_published_total", attributes={"event_type": event.event_type})
        if changed:
            logger.debug(f"Published outbox event {event.id} ({event.event_type})")

    async def _on_failed(self, event: OutboxEvent, result: PublishResult, report: DispatchReport):
        message = result.error_message or "publish failed"
        max_retries = self.retry.retry_count

        if result.is_permanent and self.retry.fail_fast_on_permanent:
            if not await self.store.mark_failed(event.id, f"Permanent error: {message}", count_attempt=True):
                return
            report.failed += 1
            record_counter("outbox_events_failed_total", attributes={"event_type": event.event_type, "reason": "permanent"})
            logger.error(f"Outbox event {event.id} ({event.event_type}) rejected permanently: {message}")
            await self._dead_letter(await self.store.get(event.id), f"Permanent error: {message}")
            return

        updated = await self.store.mark_failed_attempt(
            event.id, message, max_retries=max_retries, worker_id=self.worker_id
        )
        if updated is None:
            return

        if updated.failed:
            report.failed += 1
            record_counter("outbox_events_failed_total", attributes={"event_type": event.event_type, "reason": "exhausted"})
            logger.error(
                f"Outbox event {event.id} ({event.event_type}) failed permanently "
                f"after {updated.retry_count} attempts: {message}"
            )
            await self._dead_letter(updated, f"Max retry attempts ({max_retries}) exceeded: {message}")
        else:
            report.retried += 1
            record_counter("outbox_events_retried_total", attributes={"event_type": event.event_type})
            logger.warning(
                f"Outbox event {event.id} failed (attempt {updated.retry_count}/{max_retries}), "
                f"retry at {updated.next_retry_at.isoformat() if updated.next_retry_at else 'next cycle'}: {message}"
            )

    async def _dead_letter(self, event: Optional[OutboxEvent], reason: str):
        if self.dead_letter is None or event is None:
            return
        try:
            await self.dead_letter.send(event, reason)
        except Exception as e:
            logger.error(f"Dead letter sink failed for {event.id}: {e}", exc_info=True)

    async def _release(self, event_ids: List[UUID]) -> int:
        try:
            return await self.store.release_claims(event_ids, self.worker_id)
        except OutboxError as e:
            logger.error(
                f"Could not release {len(event_ids)} claims, they return after lease expiry: {e}"
            )
            return 0

    def health_check(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "worker_id": self.worker_id,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "totals": self.totals.to_dict(),
        }


# Global processor instance
_processor: Optional[OutboxProcessor] = None


async def start_outbox_processor(processor: OutboxProcessor) -> OutboxProcessor:
    """Register and start the process-wide outbox processor."""
    global _processor

    if _processor is not None and _processor is not processor:
        await _processor.stop()
    _processor = processor
    await _processor.start()
    return _processor


async def stop_outbox_processor(timeout: Optional[float] = None):
    """Stop the process-wide outbox processor."""
    global _processor
    if _processor:
        await _processor.stop(timeout)
        _processor = None


def get_outbox_processor() -> Optional[OutboxProcessor]:
    """Get the process-wide outbox processor instance."""
    return _processor
