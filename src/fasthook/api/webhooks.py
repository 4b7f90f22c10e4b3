"""Webhook management API endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fasthook.auth import Auth
from fasthook.config import Settings, get_settings
from fasthook.db.enums import DeliveryStatus
from fasthook.db.session import get_async_session_factory, get_session
from fasthook.schemas import (
    DeliveryDetailResponse,
    DeliveryListResponse,
    DeliveryResponse,
    ErrorResponse,
    MessageResponse,
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
from fasthook.webhook import (
    WebhookEvent,
    delete_webhook,
    get_delivery,
    get_webhook,
    get_webhook_stats,
    list_deliveries,
    list_webhooks,
    register_webhook,
    retry_delivery,
    trigger_webhook,
    update_webhook,
)
from fasthook.webhook.ledger import create_delivery

# WebhookError subclasses raised here are rendered by the handler in
# fasthook.api.errors (404 not found, 409 illegal transition, 422 invalid).
router = APIRouter(
    tags=["webhooks"],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)

TEST_EVENT_TYPE = "webhook.test"


@router.post(
    "/webhooks",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_webhook(
    data: WebhookCreate,
    auth: Auth,
    user_id: str = Query(..., min_length=1, max_length=255),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> WebhookCreatedResponse:
    """Register a webhook. The response carries the secret; it is not shown again."""
    webhook, secret = await register_webhook(
        session,
        url=str(data.url),
        events=data.events,
        created_by=user_id,
        secret=data.secret,
        settings=settings,
    )

    return WebhookCreatedResponse(
        **WebhookResponse.model_validate(webhook).model_dump(),
        secret=secret,
    )


@router.get("/webhooks", response_model=WebhookListResponse)
async def list_webhooks_endpoint(
    auth: Auth,
    user_id: str = Query(..., min_length=1, max_length=255),
    session: AsyncSession = Depends(get_session),
) -> WebhookListResponse:
    """List the webhooks owned by a user."""
    webhooks = await list_webhooks(session, user_id)
    return WebhookListResponse(
        webhooks=[WebhookResponse.model_validate(w) for w in webhooks],
        count=len(webhooks),
    )


@router.post("/webhooks/trigger", response_model=TriggerEventResponse)
async def trigger_event(
    data: TriggerEventRequest,
    auth: Auth,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_async_session_factory),
) -> TriggerEventResponse:
    """Dispatch an event to every active webhook subscribed to it."""
    delivery_ids = await trigger_webhook(
        WebhookEvent(type=data.event_type, data=data.data),
        session_factory=session_factory,
    )
    return TriggerEventResponse(
        event_type=data.event_type,
        deliveries_created=len(delivery_ids),
        delivery_ids=delivery_ids,
    )


@router.get("/webhooks/{webhook_id}", response_model=WebhookDetailResponse)
async def get_webhook_endpoint(
    webhook_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> WebhookDetailResponse:
    """Get a webhook with its recent deliveries and statistics."""
    webhook, recent = await get_webhook(session, webhook_id, settings=settings)

    stats = await get_webhook_stats(session, webhook_id)
    return WebhookDetailResponse(
        webhook=WebhookResponse.model_validate(webhook),
        recent_deliveries=[DeliveryResponse.model_validate(d) for d in recent],
        stats=stats,
    )


@router.put("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def update_webhook_endpoint(
    webhook_id: uuid.UUID,
    data: WebhookUpdate,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    """Partially update a webhook."""
    webhook = await update_webhook(
        session,
        webhook_id,
        url=str(data.url) if data.url is not None else None,
        events=data.events,
        is_active=data.is_active,
        settings=settings,
    )

    return WebhookResponse.model_validate(webhook)


@router.delete("/webhooks/{webhook_id}", response_model=MessageResponse)
async def delete_webhook_endpoint(
    webhook_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Delete a webhook. Its delivery history is kept."""
    await delete_webhook(session, webhook_id)

    return MessageResponse(message=f"Webhook {webhook_id} deleted")


@router.get("/webhooks/{webhook_id}/deliveries", response_model=DeliveryListResponse)
async def list_deliveries_endpoint(
    webhook_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    limit: int | None = Query(None, ge=1),
    status_filter: DeliveryStatus | None = Query(None, alias="status"),
) -> DeliveryListResponse:
    """List the delivery history of a webhook, newest first.

    Works for deleted webhooks too, since history is retained.
    """
    limit = min(
        limit or settings.webhook_deliveries_default_limit,
        settings.webhook_deliveries_max_limit,
    )
    deliveries = await list_deliveries(session, webhook_id, limit=limit, status=status_filter)
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.model_validate(d) for d in deliveries],
        count=len(deliveries),
    )


@router.get("/webhooks/{webhook_id}/stats", response_model=WebhookStats)
async def get_webhook_stats_endpoint(
    webhook_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> WebhookStats:
    """Get delivery statistics of a webhook."""
    return await get_webhook_stats(session, webhook_id)


@router.post("/webhooks/{webhook_id}/test", response_model=TriggerEventResponse)
async def send_test_event(
    webhook_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> TriggerEventResponse:
    """Queue a test event for a single webhook, regardless of its subscriptions."""
    webhook, _ = await get_webhook(session, webhook_id, recent_limit=1)

    if not webhook.is_active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Webhook is inactive",
        )

    delivery = await create_delivery(
        session,
        webhook.id,
        TEST_EVENT_TYPE,
        {"message": "This is a test webhook", "webhook_id": str(webhook.id)},
    )
    return TriggerEventResponse(
        event_type=TEST_EVENT_TYPE,
        deliveries_created=1,
        delivery_ids=[delivery.id],
    )


@router.get("/deliveries/{delivery_id}", response_model=DeliveryDetailResponse)
async def get_delivery_endpoint(
    delivery_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> DeliveryDetailResponse:
    """Get a delivery with its payload."""
    delivery = await get_delivery(session, delivery_id)

    return DeliveryDetailResponse.model_validate(delivery)


@router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryResponse)
async def retry_delivery_endpoint(
    delivery_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> DeliveryResponse:
    """Queue a failed delivery for immediate retry."""
    delivery = await retry_delivery(session, delivery_id)

    return DeliveryResponse.model_validate(delivery)
