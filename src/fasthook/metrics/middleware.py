"""Prometheus metrics middleware for the webhook API."""

import time
from collections.abc import Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from fasthook.metrics.definitions import REQUEST_DURATION, REQUEST_TOTAL

# Probes and the scrape endpoint itself
DEFAULT_EXCLUDED_PATHS = frozenset({"/metrics", "/api/v1/health", "/api/v1/ready"})

UNMATCHED_ENDPOINT = "unmatched"


def endpoint_label(request: Request) -> str:
    """Label a request by its route template, e.g. /api/v1/webhooks/{webhook_id}.

    Requests that matched no route share one label, so scanning for random
    paths cannot grow the label set.
    """
    route = request.scope.get("route")
    return getattr(route, "path", UNMATCHED_ENDPOINT)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts and times API requests per route template.

    Unhandled exceptions are recorded as status 500 before being re-raised.
    """

    def __init__(self, app: ASGIApp, excluded_paths: Iterable[str] | None = None):
        super().__init__(app)
        self.excluded_paths = (
            DEFAULT_EXCLUDED_PATHS if excluded_paths is None else frozenset(excluded_paths)
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        status_code = 500
        start_time = time.perf_counter()
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = endpoint_label(request)
            REQUEST_TOTAL.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code,
            ).inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
