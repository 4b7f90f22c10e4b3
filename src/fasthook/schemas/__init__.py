"""Pydantic schemas for API requests and responses."""

from fasthook.schemas.common import (
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    QueueStats,
    ReadyResponse,
)
from fasthook.schemas.webhook import (
    DeliveryDetailResponse,
    DeliveryListResponse,
    DeliveryResponse,
    TriggerEventRequest,
    TriggerEventResponse,
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookDetailResponse,
    WebhookListResponse,
    WebhookResponse,
    WebhookStats,
    WebhookUpdate,
)

__all__ = [
    "DeliveryDetailResponse",
    "DeliveryListResponse",
    "DeliveryResponse",
    "ErrorResponse",
    "HealthResponse",
    "MessageResponse",
    "QueueStats",
    "ReadyResponse",
    "TriggerEventRequest",
    "TriggerEventResponse",
    "WebhookCreate",
    "WebhookCreatedResponse",
    "WebhookDetailResponse",
    "WebhookListResponse",
    "WebhookResponse",
    "WebhookStats",
    "WebhookUpdate",
]
