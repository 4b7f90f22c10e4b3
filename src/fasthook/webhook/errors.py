"""Webhook error types."""


class WebhookError(Exception):
    """Base class for webhook subsystem errors."""


class WebhookValidationError(WebhookError, ValueError):
    """Raised when a webhook registration or update is invalid."""


class NotFoundError(WebhookError, LookupError):
    """Raised when a referenced record does not exist."""


class WebhookNotFoundError(NotFoundError):
    """Raised when a webhook ID is unknown."""

    def __init__(self, webhook_id: object) -> None:
        super().__init__(f"Webhook {webhook_id} not found")
        self.webhook_id = webhook_id


class DeliveryNotFoundError(NotFoundError):
    """Raised when a delivery ID is unknown."""

    def __init__(self, delivery_id: object) -> None:
        super().__init__(f"Delivery {delivery_id} not found")
        self.delivery_id = delivery_id


class InvalidTransitionError(WebhookError):
    """Raised when a delivery status change is not allowed from its current status."""

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status
