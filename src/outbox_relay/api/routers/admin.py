"""
Admin/Operator API

Outbox inspection and dead-letter management for operators.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from ...core.outbox.dlq import DLQManager
from ...core.outbox.store import OutboxStore
from ..shared.exceptions import NotFoundError, ValidationError
from ..shared.responses import ErrorDetail

router = APIRouter(prefix="/api/admin", tags=["admin"])


def get_store(request: Request) -> OutboxStore:
    return request.app.state.store


def get_dlq_manager(request: Request) -> DLQManager:
    return request.app.state.dlq


class RetryRequest(BaseModel):
    """Request to retry DLQ entry."""
    reason: Optional[str] = None


class PurgeRequest(BaseModel):
    """Purge window: either a retention in days or an explicit cutoff."""
    days: Optional[int] = Field(None, ge=0)
    before: Optional[datetime] = None
    reason: Optional[str] = None


# DLQ Management Endpoints

@router.get("/dlq")
async def list_dlq_entries(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    event_type: Optional[str] = None,
    manager: DLQManager = Depends(get_dlq_manager),
):
    """List Dead Letter Queue entries, newest first."""
    entries = await manager.get_entries(limit=limit, offset=offset, event_type=event_type)
    total = await manager.get_count(event_type)

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/dlq/stats")
async def dlq_stats(manager: DLQManager = Depends(get_dlq_manager)):
    return await manager.get_stats()


@router.get("/dlq/{entry_id}")
async def get_dlq_entry(entry_id: UUID, manager: DLQManager = Depends(get_dlq_manager)):
    entry = await manager.get_entry(entry_id)
    if entry is None:
        raise NotFoundError("DLQ entry", str(entry_id))
    return entry.to_dict()


@router.post("/dlq/retry-all")
async def retry_all_dlq(
    event_type: Optional[str] = None,
    x_operator_id: Optional[str] = Header(None),
    manager: DLQManager = Depends(get_dlq_manager),
):
    """Retry all DLQ entries, optionally only one event type."""
    count = await manager.retry_all(event_type=event_type, operator_id=x_operator_id)

    return {
        "status": "all_queued_for_retry",
        "event_type": event_type,
        "count": count
    }


@router.post("/dlq/{entry_id}/retry")
async def retry_dlq_entry(
    entry_id: UUID,
    body: Optional[RetryRequest] = None,
    x_operator_id: Optional[str] = Header(None),
    manager: DLQManager = Depends(get_dlq_manager),
):
    """Return a failed event to pending with a fresh retry budget."""
    success = await manager.retry_entry(entry_id=entry_id, operator_id=x_operator_id)
    if not success:
        raise NotFoundError("DLQ entry", str(entry_id))

    return {"status": "queued_for_retry", "entry_id": str(entry_id)}


@router.delete("/dlq/{entry_id}")
async def purge_dlq_entry(
    entry_id: UUID,
    x_operator_id: Optional[str] = Header(None),
    manager: DLQManager = Depends(get_dlq_manager),
):
    """Permanently delete a DLQ entry."""
    success = await manager.purge_entry(entry_id=entry_id, operator_id=x_operator_id)
    if not success:
        raise NotFoundError("DLQ entry", str(entry_id))

    return {"status": "purged", "entry_id": str(entry_id)}


# Outbox Status Endpoints

@router.get("/outbox/stats")
async def outbox_stats(store: OutboxStore = Depends(get_store)):
    """Counts by state; the backlog is stale when the oldest pending row is over an hour old."""
    stats = await store.stats()
    stale = (
        stats.oldest_pending_at is not None
        and store.clock.now() - stats.oldest_pending_at > timedelta(hours=1)
    )
    return {**stats.to_dict(), "healthy": not stale}


@router.get("/outbox/events/{event_id}")
async def get_outbox_event(event_id: UUID, store: OutboxStore = Depends(get_store)):
    event = await store.get(event_id)
    if event is None:
        raise NotFoundError("Event", str(event_id))
    return event.to_dict()


@router.post("/outbox/purge")
async def purge_outbox(request: Request, body: PurgeRequest, store: OutboxStore = Depends(get_store)):
    """Delete published and failed events created before the cutoff."""
    if body.days is not None and body.before is not None:
        raise ValidationError(
            "Give either days or before, not both",
            details=[ErrorDetail(field="before", message="conflicts with days", code="conflicting_window")],
        )

    if body.before is not None:
        cutoff = body.before
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
    else:
        days = body.days if body.days is not None else request.app.state.settings.retention_days
        cutoff = store.clock.now() - timedelta(days=days)

    count = await store.purge_older_than(cutoff)
    return {"status": "purged", "cutoff": cutoff.isoformat(), "count": count}
