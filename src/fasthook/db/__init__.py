"""Database module."""

from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import Base, Webhook, WebhookDelivery
from fasthook.db.session import (
    async_session,
    get_async_session_factory,
    get_session,
    session_scope,
)

__all__ = [
    "Base",
    "DeliveryStatus",
    "Webhook",
    "WebhookDelivery",
    "async_session",
    "get_async_session_factory",
    "get_session",
    "session_scope",
]
