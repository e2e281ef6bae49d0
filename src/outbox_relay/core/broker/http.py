"""
HTTP Publisher

Posts message envelopes to an HTTP broker endpoint (webhook fan-out, an
event gateway, a Kafka REST proxy) at ``<base_url>/<topic>``.

Status mapping:
- 2xx: ack
- 408, 425, 429, 5xx: transient
- any other status: permanent
- timeouts and transport errors: transient
"""

import logging
from typing import Dict, Optional

import httpx

from .base import MessagePublisher, PublishRequest, PublishResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 425, 429})


def classify_status(status_code: int) -> Optional[bool]:
    """None for success, True for retryable, False for permanent."""
    if 200 <= status_code < 300:
        return None
    return status_code in RETRYABLE_STATUS or status_code >= 500


class HttpPublisher(MessagePublisher):
    """
    Broker adapter over HTTP, backed by one shared httpx.AsyncClient.

    Usage:
        publisher = HttpPublisher("http://broker.internal/topics", timeout=5.0)
        result = await publisher.publish(request)
        await publisher.close()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("HttpPublisher requires a base_url (OUTBOX_HTTP_URL)")
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers=headers or {},
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "http"

    @property
    def base_url(self) -> str:
        return self._base_url

    async def publish(self, request: PublishRequest, topic: Optional[str] = None) -> PublishResult:
        topic = topic or request.event_type
        url = f"{self._base_url}/{topic}"
        headers = {
            **request.headers,
            "X-Message-Id": str(request.message_id),
            "X-Event-Type": request.event_type,
        }

        try:
            resp = await self._client.post(url, json=request.envelope(), headers=headers)
        except httpx.TimeoutException as e:
            return PublishResult.transient(f"timeout publishing to {url}: {e!r}")
        except httpx.TransportError as e:
            return PublishResult.transient(f"transport error publishing to {url}: {e!r}")
        except httpx.HTTPError as e:
            return PublishResult.transient(f"http error publishing to {url}: {e!r}")

        retryable = classify_status(resp.status_code)
        if retryable is None:
            return PublishResult.success(ack=resp.headers.get("X-Ack-Id") or str(request.message_id))

        message = f"broker returned {resp.status_code} for {topic}: {resp.text[:500]}"
        if retryable:
            return PublishResult.transient(message)

        logger.warning(f"Broker rejected message {request.message_id}: {message}")
        return PublishResult.permanent(message)

    async def close(self) -> None:
        await self._client.aclose()
