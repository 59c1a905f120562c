"""Prometheus metric definitions shared across webhook processes."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


events_published_total = Counter(
    "webhook_events_published_total",
    "Business events published for webhook fan-out",
    ["service", "event_type"],
)
deliveries_created_total = Counter(
    "webhook_deliveries_created_total",
    "Delivery records created by fan-out",
    ["service", "event_type"],
)
delivery_attempts_total = Counter(
    "webhook_delivery_attempts_total",
    "HTTP delivery attempts by outcome",
    ["service", "outcome"],
)
delivery_latency_seconds = Histogram(
    "webhook_delivery_latency_seconds",
    "Integrator endpoint response latency seconds",
    ["service"],
)
retries_total = Counter("webhook_retries_total", "Delivery retries scheduled", ["service"])
subscriptions_disabled_total = Counter(
    "webhook_subscriptions_disabled_total",
    "Subscriptions auto-disabled by the failure threshold",
    ["service"],
)
dlq_published_total = Counter(
    "webhook_dlq_published_total",
    "Total DLQ messages published",
    ["service", "topic", "error_type"],
)
duplicate_tasks_skipped_total = Counter(
    "webhook_duplicate_tasks_skipped_total",
    "Delivery tasks skipped as duplicate, stale or not yet due",
    ["service", "reason"],
)
event_queue_delay_seconds = Histogram(
    "webhook_event_queue_delay_seconds",
    "Delay seconds between event timestamp and fan-out consume time",
    ["service", "topic"],
)
retry_pending_total = Gauge(
    "webhook_retry_pending_total",
    "Delivery records waiting in RETRYING",
    ["service"],
)
retry_oldest_due_age_seconds = Gauge(
    "webhook_retry_oldest_due_age_seconds",
    "Age in seconds of the oldest overdue retry",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
