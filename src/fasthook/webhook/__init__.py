"""Webhook subscription and delivery."""

from fasthook.webhook.dispatcher import WebhookEvent, find_subscribed_webhooks, trigger_webhook
from fasthook.webhook.errors import (
    DeliveryNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    WebhookError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from fasthook.webhook.ledger import (
    create_delivery,
    get_delivery,
    get_webhook_stats,
    list_deliveries,
    list_pending,
    mark_failed,
    mark_skipped,
    mark_success,
    report_outcome,
    retry_delivery,
)
from fasthook.webhook.registry import (
    delete_webhook,
    get_webhook,
    list_webhooks,
    register_webhook,
    update_webhook,
)
from fasthook.webhook.signing import canonical_json, sign_payload, verify_signature
from fasthook.webhook.url_validator import SSRFError, validate_webhook_url
from fasthook.webhook.worker import RetryPolicy, WebhookWorker, send_webhook

__all__ = [
    "DeliveryNotFoundError",
    "InvalidTransitionError",
    "NotFoundError",
    "RetryPolicy",
    "SSRFError",
    "WebhookError",
    "WebhookEvent",
    "WebhookNotFoundError",
    "WebhookValidationError",
    "WebhookWorker",
    "canonical_json",
    "create_delivery",
    "delete_webhook",
    "find_subscribed_webhooks",
    "get_delivery",
    "get_webhook",
    "get_webhook_stats",
    "list_deliveries",
    "list_pending",
    "list_webhooks",
    "mark_failed",
    "mark_skipped",
    "mark_success",
    "register_webhook",
    "report_outcome",
    "retry_delivery",
    "send_webhook",
    "sign_payload",
    "trigger_webhook",
    "update_webhook",
    "validate_webhook_url",
    "verify_signature",
]
