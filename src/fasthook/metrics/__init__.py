"""fasthook Prometheus metrics."""

from fasthook.metrics.definitions import (
    DELIVERIES_CREATED_TOTAL,
    EVENTS_DISPATCHED_TOTAL,
    FANOUT_FAILURES_TOTAL,
    QUEUE_DEPTH,
    record_queue_depth,
    REQUEST_DURATION,
    REQUEST_TOTAL,
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
)
from fasthook.metrics.middleware import MetricsMiddleware

__all__ = [
    "MetricsMiddleware",
    "REQUEST_TOTAL",
    "REQUEST_DURATION",
    "EVENTS_DISPATCHED_TOTAL",
    "DELIVERIES_CREATED_TOTAL",
    "FANOUT_FAILURES_TOTAL",
    "WEBHOOK_DELIVERIES_TOTAL",
    "WEBHOOK_DELIVERY_DURATION",
    "QUEUE_DEPTH",
    "record_queue_depth",
]
