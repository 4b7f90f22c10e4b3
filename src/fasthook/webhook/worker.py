"""Webhook delivery worker."""

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook import __version__
from fasthook.config import Settings, get_settings
from fasthook.crypto import SecretDecryptionError
from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import Webhook, WebhookDelivery, utcnow
from fasthook.db.session import SessionFactory, session_scope
from fasthook.metrics.definitions import (
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
    record_queue_depth,
)
from fasthook.webhook.ledger import (
    claim_pending_deliveries,
    get_delivery,
    get_status_counts,
    mark_failed,
    mark_skipped,
    mark_success,
    release_claims,
    requeue_delivery,
)
from fasthook.webhook.registry import get_webhook_secret
from fasthook.webhook.signing import canonical_json, sign_payload
from fasthook.webhook.url_validator import SSRFError, create_ssrf_safe_client, validate_webhook_url

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule for failed deliveries."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.webhook_max_attempts,
            base_delay=settings.webhook_retry_base_delay,
            max_delay=settings.webhook_retry_max_delay,
        )

    def next_delay(self, attempts: int) -> float | None:
        """Seconds to wait before the next attempt, or None when exhausted."""
        if attempts >= self.max_attempts:
            return None
        return min(self.base_delay * (2 ** max(attempts - 1, 0)), self.max_delay)


def build_delivery_headers(delivery: WebhookDelivery, secret: str) -> dict[str, str]:
    """Build the signed request headers for a delivery."""
    return {
        SIGNATURE_HEADER: sign_payload(delivery.payload, secret),
        EVENT_HEADER: delivery.event_type,
        DELIVERY_HEADER: str(delivery.id),
    }


async def send_webhook(
    url: str,
    body: bytes,
    headers: dict[str, str] | None = None,
    request_timeout: float = 30.0,
    client: httpx.AsyncClient | None = None,
    validate_url: bool = True,
    allowed_internal_domains: list[str] | None = None,
) -> tuple[bool, int | None, str | None]:
    """Send a webhook request.

    Args:
        url: Webhook URL
        body: Canonical JSON body
        headers: Additional headers
        request_timeout: Request timeout in seconds
        client: Optional HTTP client (a short-lived SSRF-safe client is used otherwise)
        validate_url: Whether to validate URL for SSRF protection (default True)
        allowed_internal_domains: Domains exempt from the SSRF address checks

    Returns:
        Tuple of (success, status_code, error_message)
    """
    if validate_url:
        try:
            # DNS is re-checked by the SSRF-safe transport at connection time
            validate_webhook_url(
                url,
                resolve_dns=False,
                allowed_internal_domains=allowed_internal_domains or (),
            )
        except SSRFError as e:
            logger.warning(f"Blocked webhook to {url}: {e}")
            return False, None, f"URL blocked: {e}"
        except ValueError as e:
            return False, None, f"Invalid URL: {e}"

    all_headers = {
        "Content-Type": "application/json",
        "User-Agent": f"fasthook/{__version__}",
    }
    if headers:
        all_headers.update(headers)

    owns_client = client is None
    if client is None:
        client = create_ssrf_safe_client(
            timeout=request_timeout,
            allowed_internal_domains=allowed_internal_domains,
        )

    try:
        response = await client.post(
            url,
            content=body,
            headers=all_headers,
            timeout=request_timeout,
        )

        if response.is_success:
            return True, response.status_code, None
        return False, response.status_code, f"HTTP {response.status_code}: {response.text[:200]}"

    except httpx.TimeoutException:
        return False, None, "Request timed out"
    except httpx.ConnectError as e:
        return False, None, f"Connection error: {e}"
    except httpx.HTTPError as e:
        return False, None, f"HTTP error: {e}"
    except SSRFError as e:
        logger.warning(f"Blocked webhook to {url} at connect time: {e}")
        return False, None, f"URL blocked: {e}"
    finally:
        if owns_client:
            await client.aclose()


async def process_delivery(
    delivery: WebhookDelivery,
    settings: Settings,
    session: AsyncSession,
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
) -> WebhookDelivery:
    """Attempt a single delivery and record the outcome.

    Deliveries whose webhook was deleted or deactivated are marked failed
    without a request and without counting an attempt; an administrator can
    retry them later.

    Returns:
        The delivery with its updated status
    """
    policy = policy or RetryPolicy.from_settings(settings)
    logger.debug(f"Processing delivery {delivery.id} for webhook {delivery.webhook_id}")

    stmt = select(Webhook).where(Webhook.id == delivery.webhook_id)
    result = await session.execute(stmt)
    webhook = result.scalar_one_or_none()

    if webhook is None or not webhook.is_active:
        reason = "Webhook deleted" if webhook is None else "Webhook inactive"
        logger.warning(f"Skipping delivery {delivery.id}: {reason.lower()}")
        WEBHOOK_DELIVERIES_TOTAL.labels(status="skipped").inc()
        return await mark_skipped(session, delivery.id, reason)

    try:
        secret = get_webhook_secret(webhook, settings)
    except SecretDecryptionError as e:
        logger.error(f"Cannot sign delivery {delivery.id}: {e}")
        WEBHOOK_DELIVERIES_TOTAL.labels(status="skipped").inc()
        return await mark_skipped(session, delivery.id, str(e))

    headers = build_delivery_headers(delivery, secret)

    start_time = time.perf_counter()
    success, status_code, error = await send_webhook(
        url=webhook.url,
        body=canonical_json(delivery.payload),
        headers=headers,
        request_timeout=settings.webhook_timeout,
        client=client,
        allowed_internal_domains=settings.webhook_allowed_internal_domains,
    )
    WEBHOOK_DELIVERY_DURATION.observe(time.perf_counter() - start_time)

    if success:
        WEBHOOK_DELIVERIES_TOTAL.labels(status="success").inc()
        return await mark_success(session, delivery.id, status_code=status_code)

    failed = await mark_failed(session, delivery.id, error or "Unknown error", status_code)
    delay = policy.next_delay(failed.attempts)
    if delay is None:
        WEBHOOK_DELIVERIES_TOTAL.labels(status="exhausted").inc()
        logger.warning(f"Delivery {delivery.id} exhausted after {failed.attempts} attempts")
        return failed

    WEBHOOK_DELIVERIES_TOTAL.labels(status="failed").inc()
    await requeue_delivery(session, delivery.id, utcnow() + timedelta(seconds=delay))
    return await get_delivery(session, delivery.id)


class WebhookWorker:
    """Background worker that drains the webhook delivery queue.

    Different webhooks are processed concurrently; deliveries of one webhook
    are processed one at a time in creation order.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: SessionFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self.policy = RetryPolicy.from_settings(self.settings)
        self._session_factory = session_factory
        self._http_client: httpx.AsyncClient | None = None
        self._http_client_lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the worker's shared SSRF-safe HTTP client."""
        if self._http_client is None:
            async with self._http_client_lock:
                if self._http_client is None:
                    self._http_client = create_ssrf_safe_client(
                        timeout=self.settings.webhook_timeout,
                        allowed_internal_domains=self.settings.webhook_allowed_internal_domains,
                    )
        return self._http_client

    async def _close_http_client(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _process_single_delivery(self, delivery_id: uuid.UUID) -> bool:
        """Process one delivery in its own session.

        Returns:
            True if the delivery succeeded
        """
        client = await self._get_http_client()
        async with session_scope(self._session_factory) as session:
            delivery = await get_delivery(session, delivery_id)
            if delivery.status != DeliveryStatus.PENDING:
                logger.debug(f"Delivery {delivery_id} is {delivery.status}, skipping")
                return True
            updated = await process_delivery(
                delivery, self.settings, session, client=client, policy=self.policy
            )
            return updated.status == DeliveryStatus.SUCCESS

    async def _process_webhook_stream(self, delivery_ids: list[uuid.UUID]) -> None:
        """Process one webhook's claimed deliveries in order, stopping at the first failure."""
        for index, delivery_id in enumerate(delivery_ids):
            try:
                succeeded = await self._process_single_delivery(delivery_id)
            except Exception:
                logger.exception(f"Delivery {delivery_id} processing failed")
                succeeded = False
            if not succeeded:
                remaining = delivery_ids[index + 1 :]
                if remaining:
                    async with session_scope(self._session_factory) as session:
                        await release_claims(session, remaining)
                return

    async def process_batch(self) -> int:
        """Claim and process a batch of pending deliveries.

        Returns:
            Number of deliveries claimed
        """
        async with session_scope(self._session_factory) as session:
            deliveries = await claim_pending_deliveries(
                session,
                batch_size=self.settings.worker_batch_size,
                instance_id=self.settings.instance_id,
                lease_seconds=self.settings.worker_claim_lease,
            )

        streams: dict[uuid.UUID, list[uuid.UUID]] = {}
        for delivery in deliveries:
            streams.setdefault(delivery.webhook_id, []).append(delivery.id)

        if not streams:
            return 0

        logger.debug(f"Processing {len(deliveries)} deliveries for {len(streams)} webhooks")
        await asyncio.gather(*(self._process_webhook_stream(ids) for ids in streams.values()))
        return len(deliveries)

    async def update_queue_depth(self) -> None:
        """Refresh the queue depth gauge."""
        async with session_scope(self._session_factory) as session:
            counts = await get_status_counts(session)
        record_queue_depth(counts)

    async def run(self) -> None:
        """Run the worker loop."""
        self._running = True
        logger.info(f"Webhook worker started (instance: {self.settings.instance_id})")

        while self._running:
            try:
                processed = await self.process_batch()
                if processed == 0:
                    await self.update_queue_depth()
                    await asyncio.sleep(self.settings.worker_poll_interval)
            except Exception:
                logger.exception("Error in webhook worker loop")
                await asyncio.sleep(self.settings.worker_poll_interval)

        logger.info("Webhook worker stopped")

    def start(self) -> None:
        """Start the worker in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the worker and clean up resources."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
        await self._close_http_client()

    async def wait(self) -> None:
        """Wait for the worker to finish."""
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
