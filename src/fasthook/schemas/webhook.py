"""Webhook and WebhookDelivery Pydantic schemas.

Read models never carry the webhook secret; only the registration response
(WebhookCreatedResponse) returns it, once.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class WebhookCreate(BaseModel):
    """Schema for registering a webhook."""

    url: HttpUrl
    events: list[str] = Field(..., min_length=1)
    secret: str | None = Field(None, min_length=16, max_length=255)


class WebhookUpdate(BaseModel):
    """Schema for partially updating a webhook."""

    url: HttpUrl | None = None
    events: list[str] | None = Field(None, min_length=1)
    is_active: bool | None = None


class WebhookResponse(BaseModel):
    """Schema for webhook response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    url: str
    events: list[str]
    created_by: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Registration response; the only schema exposing the secret."""

    secret: str


class DeliveryResponse(BaseModel):
    """Schema for delivery response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    webhook_id: uuid.UUID
    event_type: str
    payload_hash: str
    status: str
    attempts: int
    error: str | None
    last_status_code: int | None
    next_attempt_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime


class DeliveryDetailResponse(DeliveryResponse):
    """Schema for delivery response with payload."""

    payload: Any


class WebhookStats(BaseModel):
    """Delivery statistics for one webhook."""

    total: int = 0
    success_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    success_rate: str = "0.00"


class WebhookDetailResponse(BaseModel):
    """Webhook with its most recent deliveries and statistics."""

    webhook: WebhookResponse
    recent_deliveries: list[DeliveryResponse]
    stats: WebhookStats


class WebhookListResponse(BaseModel):
    """List of webhooks owned by a principal."""

    webhooks: list[WebhookResponse]
    count: int


class DeliveryListResponse(BaseModel):
    """Delivery history of a webhook."""

    deliveries: list[DeliveryResponse]
    count: int


class TriggerEventRequest(BaseModel):
    """Schema for manually dispatching an event."""

    event_type: str = Field(..., min_length=1, max_length=255)
    data: Any = Field(default_factory=dict)


class TriggerEventResponse(BaseModel):
    """Result of a dispatch."""

    event_type: str
    deliveries_created: int
    delivery_ids: list[uuid.UUID]
