"""Access logging for the webhook API."""

import logging
import time
import uuid
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("fasthook.access")

REQUEST_ID_HEADER = "X-Request-ID"


def client_address(request: Request) -> str:
    """Return the originating client address, honoring X-Forwarded-For."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Writes one access log line per request and tags it with a request ID.

    The ID is taken from the X-Request-ID header when the caller sends one
    and echoed back on the response, so a trigger call can be correlated
    with the dispatcher's log lines. Server errors are logged at ERROR,
    client errors at WARNING. Headers (and so the API key) are not logged.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        logger.log(
            level,
            "[%s] %s %s %s -> %d (%.2fms)",
            request_id,
            client_address(request),
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
