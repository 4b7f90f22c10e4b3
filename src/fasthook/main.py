"""ASGI application factory.

Run with ``uvicorn --factory fasthook.main:create_app`` or ``fasthook serve``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fasthook import __version__
from fasthook.api.errors import webhook_error_handler
from fasthook.api.router import api_router
from fasthook.config import Settings, get_settings
from fasthook.db.session import close_engine
from fasthook.metrics import MetricsMiddleware
from fasthook.middleware import RequestLoggingMiddleware
from fasthook.middleware.logging import REQUEST_ID_HEADER
from fasthook.webhook.errors import WebhookError
from fasthook.webhook.worker import DELIVERY_HEADER, EVENT_HEADER, SIGNATURE_HEADER

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(f"fasthook {__version__} API starting (instance: {settings.instance_id})")
    if settings.encryption_key is None:
        logger.warning(
            "FASTHOOK_ENCRYPTION_KEY is not set; webhook secrets are stored in plaintext"
        )
    yield
    await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the webhook API application.

    Args:
        settings: Settings to use instead of the environment (tests)
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="fasthook",
        description=(
            "Webhook subscription and delivery service. Deliveries are signed with "
            f"HMAC-SHA256 in the {SIGNATURE_HEADER} header and carry "
            f"{EVENT_HEADER} and {DELIVERY_HEADER}."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(WebhookError, webhook_error_handler)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            # Credentials cannot be combined with a wildcard origin
            allow_credentials="*" not in settings.cors_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["Authorization", "X-API-Key", "Content-Type", REQUEST_ID_HEADER],
            expose_headers=[REQUEST_ID_HEADER],
        )

    app.include_router(api_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
