"""Event dispatcher: fans domain events out to subscribed webhooks."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.config import get_settings
from fasthook.db.models import Webhook, utcnow
from fasthook.db.session import SessionFactory, get_async_session_factory, session_scope
from fasthook.metrics.definitions import (
    DELIVERIES_CREATED_TOTAL,
    EVENTS_DISPATCHED_TOTAL,
    FANOUT_FAILURES_TOTAL,
)
from fasthook.webhook.ledger import create_delivery, snapshot_payload

logger = logging.getLogger(__name__)


@dataclass
class WebhookEvent:
    """A domain event to be delivered to subscribers."""

    type: str
    data: Any
    timestamp: datetime = field(default_factory=utcnow)


async def find_subscribed_webhooks(session: AsyncSession, event_type: str) -> list[Webhook]:
    """Find active webhooks subscribed to an event type.

    On PostgreSQL the subscription match is a JSONB containment test in the
    query. Other databases load the active webhooks and match in Python.
    """
    stmt = select(Webhook).where(Webhook.is_active.is_(True)).order_by(Webhook.created_at)
    if session.get_bind().dialect.name == "postgresql":
        stmt = stmt.where(type_coerce(Webhook.events, JSONB).contains([event_type]))
    result = await session.execute(stmt)
    return [webhook for webhook in result.scalars().all() if webhook.subscribes_to(event_type)]


async def _create_isolated_delivery(
    session_factory: SessionFactory,
    semaphore: asyncio.Semaphore,
    webhook_id: uuid.UUID,
    event_type: str,
    payload: Any,
) -> uuid.UUID:
    """Record one delivery in its own transaction."""
    async with semaphore, session_scope(session_factory) as session:
        delivery = await create_delivery(session, webhook_id, event_type, payload)
    return delivery.id


async def trigger_webhook(
    event: WebhookEvent,
    session_factory: SessionFactory | None = None,
    max_concurrency: int | None = None,
) -> list[uuid.UUID]:
    """Create one pending delivery per active webhook subscribed to the event.

    Each delivery is recorded in its own transaction, so a failure for one
    webhook does not prevent the others. Failures are logged, never raised.

    Args:
        event: Event to dispatch
        session_factory: Callable returning new sessions (defaults to the app factory)
        max_concurrency: Open transactions at a time (defaults to the
            connection pool size plus its overflow)

    Returns:
        IDs of the deliveries that were created
    """
    session_factory = session_factory or get_async_session_factory()
    if max_concurrency is None:
        settings = get_settings()
        max_concurrency = settings.database_pool_size + settings.database_pool_max_overflow
    semaphore = asyncio.Semaphore(max(max_concurrency, 1))

    try:
        payload = snapshot_payload(event.data)
    except (TypeError, ValueError):
        logger.exception(f"Event {event.type} has a payload that is not JSON-serializable")
        return []

    async with session_factory() as session:
        webhooks = await find_subscribed_webhooks(session, event.type)
        webhook_ids = [webhook.id for webhook in webhooks]

    if not webhook_ids:
        EVENTS_DISPATCHED_TOTAL.labels(result="unmatched").inc()
        logger.debug(f"No webhooks subscribed to event: {event.type}")
        return []

    EVENTS_DISPATCHED_TOTAL.labels(result="matched").inc()
    logger.info(f"Triggering {len(webhook_ids)} webhooks for event: {event.type}")

    tasks = [
        _create_isolated_delivery(session_factory, semaphore, webhook_id, event.type, payload)
        for webhook_id in webhook_ids
    ]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    created: list[uuid.UUID] = []
    for webhook_id, result in zip(webhook_ids, results, strict=True):
        if isinstance(result, BaseException):
            FANOUT_FAILURES_TOTAL.inc()
            logger.error(
                f"Failed to create delivery of {event.type} for webhook {webhook_id}: {result}",
                exc_info=result,
            )
        else:
            created.append(result)

    DELIVERIES_CREATED_TOTAL.inc(len(created))
    return created
