"""Webhook subscription registry."""

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.config import Settings, get_settings
from fasthook.crypto import decrypt_secret, encrypt_secret
from fasthook.db.models import Webhook, WebhookDelivery, utcnow
from fasthook.webhook.errors import WebhookNotFoundError, WebhookValidationError
from fasthook.webhook.ledger import list_deliveries
from fasthook.webhook.signing import generate_secret
from fasthook.webhook.url_validator import SSRFError, validate_webhook_url

logger = logging.getLogger(__name__)


def normalize_events(events: Iterable[str]) -> list[str]:
    """Validate and normalize an event subscription set.

    Strips whitespace and drops duplicates, keeping first-seen order.

    Raises:
        WebhookValidationError: If the set is empty or contains non-string/blank entries
    """
    if isinstance(events, str) or events is None:
        raise WebhookValidationError("events must be a list of event type strings")

    normalized: list[str] = []
    for event in events:
        if not isinstance(event, str) or not event.strip():
            raise WebhookValidationError("event types must be non-empty strings")
        event = event.strip()
        if event not in normalized:
            normalized.append(event)

    if not normalized:
        raise WebhookValidationError("A webhook must subscribe to at least one event")
    return normalized


def check_url(url: str, settings: Settings) -> str:
    """Validate a subscriber URL, wrapping SSRF and format errors."""
    try:
        validate_webhook_url(
            url,
            resolve_dns=settings.webhook_resolve_dns,
            allowed_internal_domains=settings.webhook_allowed_internal_domains,
        )
    except (SSRFError, ValueError) as e:
        raise WebhookValidationError(f"Invalid webhook URL: {e}") from e
    return url.strip()


def get_webhook_secret(webhook: Webhook, settings: Settings | None = None) -> str:
    """Return the plaintext secret of a webhook (for signing only).

    Raises:
        SecretDecryptionError: If the encryption key changed since registration
    """
    settings = settings or get_settings()
    return decrypt_secret(webhook.secret, settings.encryption_key)


async def _load_webhook(session: AsyncSession, webhook_id: uuid.UUID) -> Webhook:
    stmt = select(Webhook).where(Webhook.id == webhook_id)
    result = await session.execute(stmt)
    webhook = result.scalar_one_or_none()
    if webhook is None:
        raise WebhookNotFoundError(webhook_id)
    return webhook


async def register_webhook(
    session: AsyncSession,
    url: str,
    events: Iterable[str],
    created_by: str,
    secret: str | None = None,
    settings: Settings | None = None,
) -> tuple[Webhook, str]:
    """Register a new active webhook.

    Args:
        session: Database session
        url: Subscriber endpoint
        events: Event types to subscribe to
        created_by: Owning principal
        secret: Shared secret; generated when omitted
        settings: Application settings

    Returns:
        Tuple of (webhook, plaintext_secret). The secret is not readable
        through any other API afterwards.

    Raises:
        WebhookValidationError: If the URL, events or owner are invalid
    """
    settings = settings or get_settings()

    url = check_url(url, settings)
    event_list = normalize_events(events)
    if not created_by or not created_by.strip():
        raise WebhookValidationError("created_by is required")
    if secret is not None and not secret:
        raise WebhookValidationError("secret must not be empty")

    plaintext_secret = secret or generate_secret()

    webhook = Webhook(
        url=url,
        events=event_list,
        secret=encrypt_secret(plaintext_secret, settings.encryption_key),
        created_by=created_by.strip(),
        is_active=True,
    )
    session.add(webhook)
    await session.flush()
    await session.refresh(webhook)

    logger.info(f"Webhook registered: {webhook.id} for {webhook.url}")
    return webhook, plaintext_secret


async def update_webhook(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    url: str | None = None,
    events: Iterable[str] | None = None,
    is_active: bool | None = None,
    settings: Settings | None = None,
) -> Webhook:
    """Partially update a webhook. Omitted fields are left unchanged.

    Raises:
        WebhookNotFoundError: If the webhook does not exist
        WebhookValidationError: If a supplied field is invalid
    """
    settings = settings or get_settings()
    webhook = await _load_webhook(session, webhook_id)

    if url is not None:
        webhook.url = check_url(url, settings)
    if events is not None:
        webhook.events = normalize_events(events)
    if is_active is not None:
        webhook.is_active = is_active
    webhook.updated_at = utcnow()

    await session.flush()
    await session.refresh(webhook)

    logger.info(f"Webhook updated: {webhook_id}")
    return webhook


async def delete_webhook(session: AsyncSession, webhook_id: uuid.UUID) -> None:
    """Delete a webhook. Its delivery history is kept for audit.

    Raises:
        WebhookNotFoundError: If the webhook does not exist
    """
    webhook = await _load_webhook(session, webhook_id)
    await session.delete(webhook)
    await session.flush()
    logger.info(f"Webhook deleted: {webhook_id}")


async def get_webhook(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    recent_limit: int | None = None,
    settings: Settings | None = None,
) -> tuple[Webhook, list[WebhookDelivery]]:
    """Get a webhook together with its most recent deliveries.

    Raises:
        WebhookNotFoundError: If the webhook does not exist
    """
    settings = settings or get_settings()
    webhook = await _load_webhook(session, webhook_id)
    recent = await list_deliveries(
        session,
        webhook_id,
        limit=recent_limit or settings.webhook_recent_deliveries,
    )
    return webhook, recent


async def list_webhooks(session: AsyncSession, created_by: str) -> list[Webhook]:
    """List all webhooks owned by a principal, newest first."""
    stmt = (
        select(Webhook)
        .where(Webhook.created_by == created_by)
        .order_by(Webhook.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
