"""Tests for the delivery ledger."""

import uuid
from datetime import timedelta

import pytest

from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import utcnow
from fasthook.webhook.errors import DeliveryNotFoundError, InvalidTransitionError
from fasthook.webhook.ledger import (
    claim_pending_deliveries,
    create_delivery,
    get_delivery,
    get_webhook_stats,
    list_deliveries,
    list_pending,
    mark_failed,
    mark_skipped,
    mark_success,
    release_claims,
    report_outcome,
    requeue_delivery,
    retry_delivery,
    snapshot_payload,
)
from fasthook.webhook.signing import compute_payload_hash


async def _delivery(session, webhook_id=None, event_type="poll.created", payload=None):
    delivery = await create_delivery(
        session,
        webhook_id or uuid.uuid4(),
        event_type,
        payload if payload is not None else {"poll_id": 1},
    )
    await session.commit()
    return delivery


class TestSnapshotPayload:
    """Tests for snapshot_payload."""

    def test_deep_copy(self):
        data = {"items": [1, 2], "meta": {"k": "v"}}
        snapshot = snapshot_payload(data)
        data["items"].append(3)
        data["meta"]["k"] = "changed"
        assert snapshot == {"items": [1, 2], "meta": {"k": "v"}}

    def test_arrays_and_scalars_are_preserved(self):
        assert snapshot_payload([1, 2]) == [1, 2]
        assert snapshot_payload("ping") == "ping"
        assert snapshot_payload(None) is None


class TestCreateDelivery:
    """Tests for create_delivery."""

    @pytest.mark.asyncio
    async def test_creates_pending(self, test_session):
        webhook_id = uuid.uuid4()
        delivery = await _delivery(test_session, webhook_id, payload={"b": 2, "a": 1})

        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 0
        assert delivery.webhook_id == webhook_id
        assert delivery.error is None
        assert delivery.payload_hash == compute_payload_hash({"a": 1, "b": 2})

    @pytest.mark.asyncio
    async def test_array_payload_stored_as_is(self, test_session):
        delivery = await _delivery(test_session, payload=[1, 2])

        stored = await get_delivery(test_session, delivery.id)
        assert stored.payload == [1, 2]
        assert stored.payload_hash == compute_payload_hash([1, 2])

    @pytest.mark.asyncio
    async def test_null_payload_stored_as_null(self, test_session):
        delivery = await create_delivery(test_session, uuid.uuid4(), "poll.closed", None)

        stored = await get_delivery(test_session, delivery.id)
        assert stored.payload is None
        assert stored.payload_hash == compute_payload_hash(None)


class TestMarkSuccess:
    """Tests for mark_success."""

    @pytest.mark.asyncio
    async def test_pending_to_success(self, test_session):
        delivery = await _delivery(test_session)

        updated = await mark_success(test_session, delivery.id, status_code=204)

        assert updated.status == DeliveryStatus.SUCCESS
        assert updated.attempts == 1
        assert updated.last_status_code == 204
        assert updated.delivered_at is not None

    @pytest.mark.asyncio
    async def test_idempotent(self, test_session):
        """A second mark_success does not increment attempts."""
        delivery = await _delivery(test_session)

        await mark_success(test_session, delivery.id)
        again = await mark_success(test_session, delivery.id)

        assert again.status == DeliveryStatus.SUCCESS
        assert again.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_is_illegal(self, test_session):
        delivery = await _delivery(test_session)
        await mark_failed(test_session, delivery.id, "HTTP 500")

        with pytest.raises(InvalidTransitionError):
            await mark_success(test_session, delivery.id)

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, test_session):
        with pytest.raises(DeliveryNotFoundError):
            await mark_success(test_session, uuid.uuid4())


class TestMarkFailed:
    """Tests for mark_failed."""

    @pytest.mark.asyncio
    async def test_pending_to_failed(self, test_session):
        delivery = await _delivery(test_session)

        updated = await mark_failed(test_session, delivery.id, "HTTP 503: busy", status_code=503)

        assert updated.status == DeliveryStatus.FAILED
        assert updated.attempts == 1
        assert updated.error == "HTTP 503: busy"
        assert updated.last_status_code == 503

    @pytest.mark.asyncio
    async def test_success_is_illegal(self, test_session):
        delivery = await _delivery(test_session)
        await mark_success(test_session, delivery.id)

        with pytest.raises(InvalidTransitionError):
            await mark_failed(test_session, delivery.id, "late failure")

        unchanged = await get_delivery(test_session, delivery.id)
        assert unchanged.status == DeliveryStatus.SUCCESS
        assert unchanged.error is None


class TestMarkSkipped:
    """Tests for mark_skipped."""

    @pytest.mark.asyncio
    async def test_pending_to_failed_without_attempt(self, test_session):
        delivery = await _delivery(test_session)

        skipped = await mark_skipped(test_session, delivery.id, "Webhook inactive")

        assert skipped.status == DeliveryStatus.FAILED
        assert skipped.attempts == 0
        assert skipped.error == "Webhook inactive"
        assert skipped.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_success_rejected(self, test_session):
        delivery = await _delivery(test_session)
        await mark_success(test_session, delivery.id)

        with pytest.raises(InvalidTransitionError):
            await mark_skipped(test_session, delivery.id, "Webhook deleted")


class TestRetryDelivery:
    """Tests for retry_delivery."""

    @pytest.mark.asyncio
    async def test_failed_to_pending_keeps_attempts(self, test_session):
        delivery = await _delivery(test_session)
        for _ in range(3):
            await mark_failed(test_session, delivery.id, "timeout")
            await requeue_delivery(test_session, delivery.id, utcnow())
        await mark_failed(test_session, delivery.id, "timeout")

        before = await get_delivery(test_session, delivery.id)
        assert before.attempts == 4

        retried = await retry_delivery(test_session, delivery.id)

        assert retried.status == DeliveryStatus.PENDING
        assert retried.attempts == 4
        assert retried.error is None
        assert retried.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_success_rejected_and_unchanged(self, test_session):
        delivery = await _delivery(test_session)
        await mark_success(test_session, delivery.id)

        with pytest.raises(InvalidTransitionError, match="Cannot retry successful delivery"):
            await retry_delivery(test_session, delivery.id)

        unchanged = await get_delivery(test_session, delivery.id)
        assert unchanged.status == DeliveryStatus.SUCCESS
        assert unchanged.attempts == 1

    @pytest.mark.asyncio
    async def test_requeued_delivery_made_due_and_error_cleared(self, test_session):
        delivery = await _delivery(test_session)
        await mark_failed(test_session, delivery.id, "HTTP 500")
        await requeue_delivery(test_session, delivery.id, utcnow() + timedelta(hours=1))

        retried = await retry_delivery(test_session, delivery.id)

        assert retried.status == DeliveryStatus.PENDING
        assert retried.error is None
        assert retried.next_attempt_at is None
        assert retried.attempts == 1
        assert [d.id for d in await list_pending(test_session)] == [delivery.id]

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, test_session):
        with pytest.raises(DeliveryNotFoundError):
            await retry_delivery(test_session, uuid.uuid4())


class TestRequeueDelivery:
    """Tests for requeue_delivery."""

    @pytest.mark.asyncio
    async def test_requeue_keeps_error(self, test_session):
        delivery = await _delivery(test_session)
        await mark_failed(test_session, delivery.id, "HTTP 500")

        assert await requeue_delivery(test_session, delivery.id, utcnow() + timedelta(minutes=1))

        requeued = await get_delivery(test_session, delivery.id)
        assert requeued.status == DeliveryStatus.PENDING
        assert requeued.error == "HTTP 500"
        assert requeued.next_attempt_at is not None

    @pytest.mark.asyncio
    async def test_requeue_only_from_failed(self, test_session):
        delivery = await _delivery(test_session)
        assert not await requeue_delivery(test_session, delivery.id, utcnow())


class TestReportOutcome:
    """Tests for report_outcome."""

    @pytest.mark.asyncio
    async def test_success(self, test_session):
        delivery = await _delivery(test_session)
        updated = await report_outcome(test_session, delivery.id, True, status_code=200)
        assert updated.status == DeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failure_default_message(self, test_session):
        delivery = await _delivery(test_session)
        updated = await report_outcome(test_session, delivery.id, False)
        assert updated.status == DeliveryStatus.FAILED
        assert updated.error == "Unknown error"


class TestQueries:
    """Tests for listing and pending queries."""

    @pytest.mark.asyncio
    async def test_list_deliveries_newest_first_bounded(self, test_session):
        webhook_id = uuid.uuid4()
        for i in range(5):
            await _delivery(test_session, webhook_id, payload={"n": i})
        await _delivery(test_session, uuid.uuid4())

        deliveries = await list_deliveries(test_session, webhook_id, limit=3)

        assert [d.payload["n"] for d in deliveries] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_list_deliveries_status_filter(self, test_session):
        webhook_id = uuid.uuid4()
        first = await _delivery(test_session, webhook_id)
        await _delivery(test_session, webhook_id)
        await mark_failed(test_session, first.id, "boom")

        failed = await list_deliveries(test_session, webhook_id, status=DeliveryStatus.FAILED)

        assert [d.id for d in failed] == [first.id]

    @pytest.mark.asyncio
    async def test_list_pending_fifo(self, test_session):
        webhook_id = uuid.uuid4()
        ids = [(await _delivery(test_session, webhook_id, payload={"n": i})).id for i in range(3)]
        await mark_success(test_session, ids[1])

        pending = await list_pending(test_session, webhook_id)

        assert [d.id for d in pending] == [ids[0], ids[2]]

    @pytest.mark.asyncio
    async def test_list_pending_excludes_backoff(self, test_session):
        delivery = await _delivery(test_session)
        await mark_failed(test_session, delivery.id, "HTTP 500")
        await requeue_delivery(test_session, delivery.id, utcnow() + timedelta(hours=1))

        assert await list_pending(test_session) == []


class TestClaimPendingDeliveries:
    """Tests for claim_pending_deliveries and release_claims."""

    @pytest.mark.asyncio
    async def test_claim_sets_lease(self, test_session):
        first = await _delivery(test_session)
        second = await _delivery(test_session)

        claimed = await claim_pending_deliveries(
            test_session, batch_size=10, instance_id="worker-a", lease_seconds=300
        )
        await test_session.commit()

        assert [d.id for d in claimed] == [first.id, second.id]
        assert all(d.instance_id == "worker-a" for d in claimed)

        # Leased rows are not due for other instances
        again = await claim_pending_deliveries(
            test_session, batch_size=10, instance_id="worker-b", lease_seconds=300
        )
        assert again == []

    @pytest.mark.asyncio
    async def test_release_makes_due_again(self, test_session):
        delivery = await _delivery(test_session)
        await claim_pending_deliveries(
            test_session, batch_size=10, instance_id="worker-a", lease_seconds=300
        )
        await test_session.commit()

        await release_claims(test_session, [delivery.id])
        await test_session.commit()

        pending = await list_pending(test_session)
        assert [d.id for d in pending] == [delivery.id]

    @pytest.mark.asyncio
    async def test_skips_webhook_with_waiting_older_delivery(self, test_session):
        """A webhook's newer deliveries wait behind an older one in backoff."""
        blocked_webhook = uuid.uuid4()
        other_webhook = uuid.uuid4()
        older = await _delivery(test_session, blocked_webhook)
        await _delivery(test_session, blocked_webhook)
        other = await _delivery(test_session, other_webhook)

        await mark_failed(test_session, older.id, "HTTP 500")
        await requeue_delivery(test_session, older.id, utcnow() + timedelta(hours=1))
        await test_session.commit()

        claimed = await claim_pending_deliveries(
            test_session, batch_size=10, instance_id="worker-a", lease_seconds=300
        )

        assert [d.id for d in claimed] == [other.id]


class TestWebhookStats:
    """Tests for get_webhook_stats."""

    @pytest.mark.asyncio
    async def test_stats_arithmetic(self, test_session):
        webhook_id = uuid.uuid4()
        deliveries = [await _delivery(test_session, webhook_id) for _ in range(10)]
        for delivery in deliveries[:7]:
            await mark_success(test_session, delivery.id)
        for delivery in deliveries[7:9]:
            await mark_failed(test_session, delivery.id, "HTTP 500")
        await test_session.commit()

        stats = await get_webhook_stats(test_session, webhook_id)

        assert stats.model_dump() == {
            "total": 10,
            "success_count": 7,
            "failed_count": 2,
            "pending_count": 1,
            "success_rate": "70.00",
        }

    @pytest.mark.asyncio
    async def test_stats_without_deliveries(self, test_session):
        stats = await get_webhook_stats(test_session, uuid.uuid4())

        assert stats.total == 0
        assert stats.success_rate == "0.00"

    @pytest.mark.asyncio
    async def test_success_rate_two_decimals(self, test_session):
        webhook_id = uuid.uuid4()
        deliveries = [await _delivery(test_session, webhook_id) for _ in range(3)]
        await mark_success(test_session, deliveries[0].id)
        await test_session.commit()

        stats = await get_webhook_stats(test_session, webhook_id)

        assert stats.success_rate == "33.33"
