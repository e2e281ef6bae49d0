"""
Trace ID Middleware

Adds a trace_id to every request so error bodies and log lines can be
matched up.
"""

import contextvars
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ....core.observability.tracing import get_trace_id as get_otel_trace_id

trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")


def get_trace_id() -> str:
    """
    Trace ID of the current request.

    Prefers the request's X-Trace-ID, then the active OpenTelemetry trace,
    then a fresh id.
    """
    return trace_id_var.get() or get_otel_trace_id() or str(uuid4())


def set_trace_id(trace_id: str) -> None:
    trace_id_var.set(trace_id)


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Extracts or generates the request trace ID.

    Headers:
    - X-Trace-ID: Unique ID for this request (generated if not provided)
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-ID") or get_otel_trace_id() or str(uuid4())
        trace_id_var.set(trace_id)
        request.state.trace_id = trace_id

        response = await call_next(request)

        response.headers["X-Trace-ID"] = trace_id
        return response
