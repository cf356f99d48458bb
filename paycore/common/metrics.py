"""Prometheus metric definitions and monitoring sinks for the payment core."""

from datetime import datetime, timezone
from typing import Protocol

from prometheus_client import Counter, Histogram, generate_latest
from pydantic import BaseModel, Field
from starlette.responses import Response

from paycore.common.logging import logger


payment_operations_total = Counter(
    "payment_operations_total",
    "Payment core operations by outcome",
    ["service", "operation", "outcome"],
)
payment_operation_duration_seconds = Histogram(
    "payment_operation_duration_seconds",
    "Payment core operation duration seconds",
    ["service", "operation"],
)
callback_duplicates_total = Counter(
    "callback_duplicates_total",
    "Gateway callbacks ignored because the transaction was already terminal",
    ["service"],
)
signature_failures_total = Counter(
    "signature_failures_total",
    "Inbound gateway messages rejected by signature verification",
    ["service", "source"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound gateway API calls",
    ["service", "command", "outcome"],
)
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Outbound gateway API call duration seconds",
    ["service", "command"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


class MonitoringEvent(BaseModel):
    """Structured record emitted after each significant transition."""

    operation: str
    duration_seconds: float
    success: bool
    order_id: str | None = None
    transaction_id: str | None = None
    status: str | None = None
    error_code: str | None = None
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class MetricsSink(Protocol):
    def emit(self, event: MonitoringEvent) -> None: ...


class PrometheusMetricsSink:
    """Record monitoring events as Prometheus counters/histograms."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name

    def emit(self, event: MonitoringEvent) -> None:
        outcome = "success" if event.success else "failure"
        payment_operations_total.labels(
            service=self.service_name,
            operation=event.operation,
            outcome=outcome,
        ).inc()
        payment_operation_duration_seconds.labels(
            service=self.service_name,
            operation=event.operation,
        ).observe(max(0.0, event.duration_seconds))


class LoggingMetricsSink:
    """Write monitoring events to the structured log."""

    def emit(self, event: MonitoringEvent) -> None:
        logger.info("monitoring_event %s", event.model_dump_json())


class CompositeMetricsSink:
    def __init__(self, *sinks: MetricsSink) -> None:
        self.sinks = sinks

    def emit(self, event: MonitoringEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
