"""
Operator API entry point.

Usage:
    uvicorn outbox_relay.api.main:app
    python -m outbox_relay.api.main
"""

import os

from fastapi import FastAPI

from ..core.config import RelaySettings
from ..core.observability import configure_logging, init_metrics, init_tracing
from .app import create_app


def _build_default_app() -> FastAPI:
    settings = RelaySettings.from_env()
    configure_logging(settings.log_level, settings.log_structured)
    if settings.otlp_endpoint:
        init_tracing(otlp_endpoint=settings.otlp_endpoint)
        init_metrics(otlp_endpoint=settings.otlp_endpoint)
    return create_app(settings=settings)


app = _build_default_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8090")),
    )
