"""
Publisher Factory

Selects the broker adapter from OUTBOX_PUBLISHER (memory | http).
"""

import logging
import os
from typing import Optional

from .base import MessagePublisher
from .http import HttpPublisher
from .memory import InMemoryPublisher

logger = logging.getLogger(__name__)

_default_publisher: Optional[MessagePublisher] = None


def get_publisher(kind: Optional[str] = None, **kwargs) -> MessagePublisher:
    """
    Create a publisher by kind.

    Args:
        kind: "memory" or "http" (defaults to OUTBOX_PUBLISHER)
        **kwargs: Adapter options (base_url, timeout, ...)
    """
    kind = (kind or os.getenv("OUTBOX_PUBLISHER", "memory")).lower()

    if kind == "memory":
        return InMemoryPublisher()
    if kind == "http":
        base_url = kwargs.pop("base_url", None) or os.getenv("OUTBOX_HTTP_URL", "")
        timeout = kwargs.pop("timeout", None) or float(os.getenv("OUTBOX_PUBLISH_TIMEOUT", "10"))
        return HttpPublisher(base_url, timeout=timeout, **kwargs)

    raise ValueError(f"Unknown publisher: {kind}")


def get_default_publisher() -> MessagePublisher:
    """Get the process-wide publisher, creating it on first use."""
    global _default_publisher
    if _default_publisher is None:
        _default_publisher = get_publisher()
        logger.info(f"Using {_default_publisher.name} publisher")
    return _default_publisher


async def reset_default_publisher() -> None:
    """Close and forget the process-wide publisher (tests, shutdown)."""
    global _default_publisher
    if _default_publisher is not None:
        await _default_publisher.close()
    _default_publisher = None
