"""
OpenTelemetry Metrics

Relay counters and the publish latency histogram. Instruments are created
lazily from the global meter, so recording before init_metrics() is a
cheap no-op against the default provider.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

SERVICE = "outbox-relay"

COUNTERS = {
    "outbox_events_appended_total": "Events appended to the outbox",
    "outbox_events_published_total": "Events acknowledged by the broker",
    "outbox_events_retried_total": "Failed delivery attempts scheduled for retry",
    "outbox_events_failed_total": "Events moved to the failed state",
    "outbox_claims_released_total": "Claimed events handed back unprocessed",
}

HISTOGRAMS = {
    "outbox_publish_duration_seconds": "Time spent in a single publish call",
}

_meter: Optional[metrics.Meter] = None

_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str = SERVICE,
    otlp_endpoint: Optional[str] = None,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        export_interval_ms: Export interval in milliseconds
    """
    global _meter

    readers = []

    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    resource = Resource.create({SERVICE_NAME: service_name})
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    _meter = metrics.get_meter(service_name)
    _counters.clear()
    _histograms.clear()
    _init_standard_metrics()

    logger.info(f"OTel metrics initialized: {service_name}")
    return _meter


def _init_standard_metrics():
    meter = get_meter()

    for name, description in COUNTERS.items():
        _counters[name] = meter.create_counter(name, description=description, unit="1")

    for name, description in HISTOGRAMS.items():
        _histograms[name] = meter.create_histogram(name, description=description, unit="s")


def get_meter() -> metrics.Meter:
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(SERVICE)
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric."""
    if not _counters:
        _init_standard_metrics()
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric."""
    if not _histograms:
        _init_standard_metrics()
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
