"""Prometheus metrics definitions for fasthook."""

from prometheus_client import Counter, Gauge, Histogram

# HTTP Request metrics
REQUEST_TOTAL = Counter(
    "fasthook_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "fasthook_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Fan-out metrics
EVENTS_DISPATCHED_TOTAL = Counter(
    "fasthook_events_dispatched_total",
    "Total domain events dispatched",
    ["result"],  # matched, unmatched
)

DELIVERIES_CREATED_TOTAL = Counter(
    "fasthook_deliveries_created_total",
    "Total webhook deliveries created by fan-out",
)

FANOUT_FAILURES_TOTAL = Counter(
    "fasthook_fanout_failures_total",
    "Deliveries that could not be recorded during fan-out",
)

# Webhook delivery metrics
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "fasthook_webhook_deliveries_total",
    "Total webhook delivery attempts",
    ["status"],  # success, failed, exhausted, skipped
)

WEBHOOK_DELIVERY_DURATION = Histogram(
    "fasthook_webhook_delivery_duration_seconds",
    "Webhook delivery duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Queue metrics
QUEUE_DEPTH = Gauge(
    "fasthook_queue_depth",
    "Number of webhook deliveries by status",
    ["status"],  # pending, success, failed
)


def record_queue_depth(counts: dict[str, int]) -> None:
    """Set the queue depth gauge from per-status delivery counts."""
    for status in ("pending", "success", "failed"):
        QUEUE_DEPTH.labels(status=status).set(counts.get(status, 0))
