"""Translation of webhook errors into HTTP responses."""

import logging

from fastapi import HTTPException, Request, status
from fastapi.exception_handlers import http_exception_handler
from starlette.responses import Response

from fasthook.webhook.errors import (
    InvalidTransitionError,
    NotFoundError,
    WebhookError,
    WebhookValidationError,
)

logger = logging.getLogger(__name__)


def to_http_exception(error: WebhookError) -> HTTPException:
    """Map a webhook error to the matching HTTP error."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, InvalidTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, WebhookValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))


async def webhook_error_handler(request: Request, exc: Exception) -> Response:
    """Exception handler rendering any WebhookError raised by a route."""
    http_exc = to_http_exception(exc)  # type: ignore[arg-type]
    logger.debug(f"{request.method} {request.url.path} -> {http_exc.status_code}: {exc}")
    return await http_exception_handler(request, http_exc)
