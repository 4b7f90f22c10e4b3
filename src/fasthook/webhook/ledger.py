"""Delivery ledger: webhook delivery records and their status transitions.

Every transition is a single conditional UPDATE keyed on the expected prior
status, so a worker reporting an outcome and an administrator retrying the
same delivery cannot overwrite each other.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import JSON, func, or_, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import WebhookDelivery, utcnow
from fasthook.schemas.webhook import WebhookStats
from fasthook.webhook.errors import DeliveryNotFoundError, InvalidTransitionError
from fasthook.webhook.signing import canonical_json, compute_payload_hash

logger = logging.getLogger(__name__)


def snapshot_payload(data: Any) -> Any:
    """Take an immutable JSON snapshot of event data.

    Round-trips through the canonical encoding so the stored payload shares
    nothing with the caller's objects. Arrays and scalars are kept as they are.
    """
    return json.loads(canonical_json(data))


async def get_delivery(session: AsyncSession, delivery_id: uuid.UUID) -> WebhookDelivery:
    """Load a delivery with fresh column values.

    Raises:
        DeliveryNotFoundError: If the delivery does not exist
    """
    stmt = (
        select(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    delivery = result.scalar_one_or_none()
    if delivery is None:
        raise DeliveryNotFoundError(delivery_id)
    return delivery


async def _transition(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    from_statuses: tuple[DeliveryStatus, ...],
    **values: Any,
) -> bool:
    """Apply an update only if the delivery is currently in one of from_statuses.

    Returns:
        True if the row was updated
    """
    stmt = (
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status.in_([s.value for s in from_statuses]),
        )
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.flush()
    return result.rowcount == 1


async def create_delivery(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    event_type: str,
    payload: Any,
) -> WebhookDelivery:
    """Create a pending delivery for one webhook.

    Args:
        session: Database session
        webhook_id: Owning webhook
        event_type: Event type that triggered the delivery
        payload: Event data; stored as a snapshot

    Returns:
        Created WebhookDelivery
    """
    snapshot = snapshot_payload(payload)
    delivery = WebhookDelivery(
        webhook_id=webhook_id,
        event_type=event_type,
        # JSON.NULL stores a JSON null rather than omitting the column
        payload=JSON.NULL if snapshot is None else snapshot,
        payload_hash=compute_payload_hash(snapshot),
        status=DeliveryStatus.PENDING.value,
        attempts=0,
    )
    session.add(delivery)
    await session.flush()
    await session.refresh(delivery)

    logger.debug(f"Webhook delivery queued: {delivery.id} ({event_type} -> {webhook_id})")
    return delivery


async def mark_success(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    status_code: int | None = None,
) -> WebhookDelivery:
    """Mark a pending delivery as delivered.

    Repeating the call on a successful delivery is a no-op.

    Raises:
        DeliveryNotFoundError: If the delivery does not exist
        InvalidTransitionError: If the delivery is failed
    """
    now = utcnow()
    updated = await _transition(
        session,
        delivery_id,
        (DeliveryStatus.PENDING,),
        status=DeliveryStatus.SUCCESS.value,
        attempts=WebhookDelivery.attempts + 1,
        error=None,
        last_status_code=status_code,
        next_attempt_at=None,
        delivered_at=now,
    )
    delivery = await get_delivery(session, delivery_id)
    if updated:
        logger.info(f"Delivery {delivery_id} marked as delivered")
    elif delivery.status != DeliveryStatus.SUCCESS:
        raise InvalidTransitionError(
            f"Cannot mark delivery with status '{delivery.status}' as successful",
            current_status=delivery.status,
        )
    return delivery


async def mark_failed(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    error: str,
    status_code: int | None = None,
) -> WebhookDelivery:
    """Record a failed attempt on a pending delivery.

    Raises:
        DeliveryNotFoundError: If the delivery does not exist
        InvalidTransitionError: If the delivery is not pending
    """
    updated = await _transition(
        session,
        delivery_id,
        (DeliveryStatus.PENDING,),
        status=DeliveryStatus.FAILED.value,
        attempts=WebhookDelivery.attempts + 1,
        error=error,
        last_status_code=status_code,
        next_attempt_at=None,
    )
    delivery = await get_delivery(session, delivery_id)
    if not updated:
        raise InvalidTransitionError(
            f"Cannot mark delivery with status '{delivery.status}' as failed",
            current_status=delivery.status,
        )
    logger.info(f"Delivery {delivery_id} failed (attempt {delivery.attempts}): {error}")
    return delivery


async def mark_skipped(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    reason: str,
) -> WebhookDelivery:
    """Fail a pending delivery that was never sent.

    No request was made, so the attempt count is left as it is.

    Raises:
        DeliveryNotFoundError: If the delivery does not exist
        InvalidTransitionError: If the delivery is not pending
    """
    updated = await _transition(
        session,
        delivery_id,
        (DeliveryStatus.PENDING,),
        status=DeliveryStatus.FAILED.value,
        error=reason,
        next_attempt_at=None,
    )
    delivery = await get_delivery(session, delivery_id)
    if not updated:
        raise InvalidTransitionError(
            f"Cannot skip delivery with status '{delivery.status}'",
            current_status=delivery.status,
        )
    logger.info(f"Delivery {delivery_id} skipped: {reason}")
    return delivery


async def retry_delivery(session: AsyncSession, delivery_id: uuid.UUID) -> WebhookDelivery:
    """Reset a delivery that has not succeeded for immediate retry.

    Clears the last error and any backoff delay, so a delivery waiting out
    a requeue is also made due now. The attempt count is kept so backoff
    reflects the true history.

    Raises:
        DeliveryNotFoundError: If the delivery does not exist
        InvalidTransitionError: If the delivery already succeeded
    """
    updated = await _transition(
        session,
        delivery_id,
        (DeliveryStatus.FAILED, DeliveryStatus.PENDING),
        status=DeliveryStatus.PENDING.value,
        error=None,
        next_attempt_at=None,
    )
    delivery = await get_delivery(session, delivery_id)
    if updated:
        logger.info(f"Webhook delivery retry queued: {delivery_id}")
    elif delivery.status == DeliveryStatus.SUCCESS:
        logger.warning(f"Cannot retry delivery {delivery_id} with status {delivery.status}")
        raise InvalidTransitionError(
            "Cannot retry successful delivery",
            current_status=delivery.status,
        )
    return delivery


async def requeue_delivery(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    not_before: datetime,
) -> bool:
    """Put a failed delivery back in the queue after a backoff delay.

    Unlike retry_delivery the last error stays visible until the next attempt.

    Returns:
        True if the delivery was requeued, False if it was no longer failed
    """
    updated = await _transition(
        session,
        delivery_id,
        (DeliveryStatus.FAILED,),
        status=DeliveryStatus.PENDING.value,
        next_attempt_at=not_before,
    )
    if updated:
        logger.info(f"Delivery {delivery_id} requeued, next attempt at {not_before}")
    return updated


async def report_outcome(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    success: bool,
    error_message: str | None = None,
    status_code: int | None = None,
) -> WebhookDelivery:
    """Record a worker's delivery outcome."""
    if success:
        return await mark_success(session, delivery_id, status_code=status_code)
    return await mark_failed(
        session, delivery_id, error_message or "Unknown error", status_code=status_code
    )


async def list_deliveries(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    limit: int = 50,
    status: DeliveryStatus | str | None = None,
) -> list[WebhookDelivery]:
    """List the most recent deliveries of a webhook, newest first."""
    stmt = select(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id)
    if status is not None:
        stmt = stmt.where(WebhookDelivery.status == DeliveryStatus(status).value)
    stmt = stmt.order_by(WebhookDelivery.created_at.desc()).limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


def _due_pending_filter(now: datetime):
    return (
        WebhookDelivery.status == DeliveryStatus.PENDING.value,
        or_(WebhookDelivery.next_attempt_at.is_(None), WebhookDelivery.next_attempt_at <= now),
    )


async def list_pending(
    session: AsyncSession,
    webhook_id: uuid.UUID | None = None,
    limit: int = 100,
) -> list[WebhookDelivery]:
    """List pending deliveries that are due, oldest first (FIFO)."""
    stmt = select(WebhookDelivery).where(*_due_pending_filter(utcnow()))
    if webhook_id is not None:
        stmt = stmt.where(WebhookDelivery.webhook_id == webhook_id)
    stmt = stmt.order_by(WebhookDelivery.created_at.asc()).limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def release_claims(session: AsyncSession, delivery_ids: list[uuid.UUID]) -> None:
    """Make claimed but unprocessed pending deliveries due again."""
    if not delivery_ids:
        return
    stmt = (
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id.in_(delivery_ids),
            WebhookDelivery.status == DeliveryStatus.PENDING.value,
        )
        .values(next_attempt_at=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)
    await session.flush()


async def claim_pending_deliveries(
    session: AsyncSession,
    batch_size: int,
    instance_id: str,
    lease_seconds: float,
) -> list[WebhookDelivery]:
    """Claim a FIFO batch of due pending deliveries for one worker instance.

    Uses SELECT FOR UPDATE SKIP LOCKED where the database supports it, and
    pushes next_attempt_at forward by the lease so other instances skip the
    claimed rows after this transaction commits.

    A delivery is skipped while an older pending delivery of the same webhook
    is waiting (backoff or claimed elsewhere), so each subscriber receives its
    events in creation order.
    """
    now = utcnow()
    older = aliased(WebhookDelivery)
    waiting_older = (
        select(older.id)
        .where(
            older.webhook_id == WebhookDelivery.webhook_id,
            older.status == DeliveryStatus.PENDING.value,
            older.created_at < WebhookDelivery.created_at,
            older.next_attempt_at > now,
        )
        .exists()
    )
    stmt = (
        select(WebhookDelivery)
        .where(*_due_pending_filter(now), ~waiting_older)
        .order_by(WebhookDelivery.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    result = await session.execute(stmt)
    deliveries = list(result.scalars().all())

    lease_until = now + timedelta(seconds=lease_seconds)
    for delivery in deliveries:
        delivery.instance_id = instance_id
        delivery.next_attempt_at = lease_until

    if deliveries:
        await session.flush()
    return deliveries


async def get_status_counts(
    session: AsyncSession,
    webhook_id: uuid.UUID | None = None,
) -> dict[str, int]:
    """Count deliveries by status, optionally for a single webhook."""
    stmt = select(WebhookDelivery.status, func.count(WebhookDelivery.id))
    if webhook_id is not None:
        stmt = stmt.where(WebhookDelivery.webhook_id == webhook_id)
    stmt = stmt.group_by(WebhookDelivery.status)

    result = await session.execute(stmt)
    return {row[0]: row[1] for row in result.fetchall()}


async def get_webhook_stats(session: AsyncSession, webhook_id: uuid.UUID) -> WebhookStats:
    """Compute delivery statistics for a webhook."""
    counts = await get_status_counts(session, webhook_id)
    total = sum(counts.values())
    success = counts.get(DeliveryStatus.SUCCESS.value, 0)

    return WebhookStats(
        total=total,
        success_count=success,
        failed_count=counts.get(DeliveryStatus.FAILED.value, 0),
        pending_count=counts.get(DeliveryStatus.PENDING.value, 0),
        success_rate=f"{success / total * 100:.2f}" if total else "0.00",
    )
