"""Liveness and readiness probes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook import __version__
from fasthook.config import Settings, get_settings
from fasthook.db.session import get_session
from fasthook.metrics import record_queue_depth
from fasthook.schemas import HealthResponse, QueueStats, ReadyResponse
from fasthook.webhook.ledger import get_status_counts

logger = logging.getLogger(__name__)

router = APIRouter(tags=["operations"])


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """Liveness: the process is up. Touches nothing else."""
    return HealthResponse(version=__version__, instance_id=settings.instance_id)


@router.get("/ready", response_model=ReadyResponse)
async def ready_check(
    session: AsyncSession = Depends(get_session),
    include_queue: bool = Query(False, description="Include delivery counts by status"),
) -> ReadyResponse:
    """Readiness: the delivery ledger is reachable.

    With ``include_queue`` the per-status delivery counts are returned and
    the queue depth gauge is refreshed from them.
    """
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Readiness check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not ready",
        ) from e

    queue = None
    if include_queue:
        counts = await get_status_counts(session)
        record_queue_depth(counts)
        queue = QueueStats(**counts)

    return ReadyResponse(queue=queue)
