"""
Health Check Endpoints

Liveness and readiness probes for container orchestration.
"""

import os
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

from ....core.clock import utcnow
from ....core.database.adapter import DRIVER_ERRORS
from ....core.outbox.processor import get_outbox_processor

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Returns 200 while the process is serving requests."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": os.getenv("APP_VERSION", "0.1.0")
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness probe.

    Checks database connectivity and, when this process runs the dispatch
    loop, that the loop is alive. Returns 503 if anything is unhealthy.
    """
    checks: Dict[str, Any] = {}
    all_healthy = True

    db = getattr(request.app.state, "db", None)
    if db is None or not db.connected:
        checks["database"] = "not connected"
        all_healthy = False
    else:
        try:
            await db.fetchval("SELECT 1")
            checks["database"] = "healthy"
        except DRIVER_ERRORS as e:
            checks["database"] = f"unhealthy: {str(e)[:100]}"
            all_healthy = False

    settings = getattr(request.app.state, "settings", None)
    if settings is not None and settings.outbox.enabled and settings.outbox.processor_enabled:
        processor = get_outbox_processor()
        if processor and processor.running:
            checks["outbox_processor"] = processor.health_check()
        else:
            checks["outbox_processor"] = "not running"
            all_healthy = False

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": utcnow().isoformat()
    }
