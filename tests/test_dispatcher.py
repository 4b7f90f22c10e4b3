"""Tests for the event dispatcher (fan-out)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import WebhookDelivery
from fasthook.webhook import ledger
from fasthook.webhook.dispatcher import WebhookEvent, find_subscribed_webhooks, trigger_webhook
from fasthook.webhook.registry import update_webhook


async def _all_deliveries(session) -> list[WebhookDelivery]:
    result = await session.execute(
        select(WebhookDelivery).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestFindSubscribedWebhooks:
    """Tests for find_subscribed_webhooks."""

    @pytest.mark.asyncio
    async def test_matches_active_subscribers_only(self, test_session, make_webhook):
        w1 = await make_webhook(["poll.created", "poll.closed"])
        await make_webhook(["invoice.created"])
        await make_webhook(["poll.created"], is_active=False)

        matches = await find_subscribed_webhooks(test_session, "poll.created")

        assert [w.id for w in matches] == [w1.id]

    @pytest.mark.asyncio
    async def test_exact_match_only(self, test_session, make_webhook):
        await make_webhook(["poll.created"])

        assert await find_subscribed_webhooks(test_session, "poll") == []
        assert await find_subscribed_webhooks(test_session, "poll.created.v2") == []

    @pytest.mark.asyncio
    async def test_postgresql_matches_in_query(self):
        """On PostgreSQL the subscription filter is a JSONB containment test."""
        result = MagicMock()
        result.scalars.return_value.all.return_value = []
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        session.execute = AsyncMock(return_value=result)

        await find_subscribed_webhooks(session, "poll.created")

        stmt = session.execute.await_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "@>" in sql


class TestTriggerWebhook:
    """Tests for trigger_webhook."""

    @pytest.mark.asyncio
    async def test_fan_out(self, test_session, session_factory, make_webhook):
        """Only active subscribers to the event type receive a delivery."""
        w1 = await make_webhook(["poll.created"])
        await make_webhook(["invoice.created"])
        await make_webhook(["poll.created"], is_active=False)

        created = await trigger_webhook(
            WebhookEvent(type="poll.created", data={"poll_id": 42}),
            session_factory=session_factory,
        )

        deliveries = await _all_deliveries(test_session)
        assert len(created) == 1
        assert len(deliveries) == 1
        assert deliveries[0].id == created[0]
        assert deliveries[0].webhook_id == w1.id
        assert deliveries[0].status == DeliveryStatus.PENDING
        assert deliveries[0].attempts == 0
        assert deliveries[0].event_type == "poll.created"
        assert deliveries[0].payload == {"poll_id": 42}

    @pytest.mark.asyncio
    async def test_multiple_subscribers(self, test_session, session_factory, make_webhook):
        hooks = [await make_webhook(["invoice.issued"]) for _ in range(3)]

        created = await trigger_webhook(
            WebhookEvent(type="invoice.issued", data={"invoice_id": "inv-9"}),
            session_factory=session_factory,
        )

        deliveries = await _all_deliveries(test_session)
        assert len(created) == 3
        assert {d.webhook_id for d in deliveries} == {h.id for h in hooks}

    @pytest.mark.asyncio
    async def test_no_subscribers_is_noop(self, test_session, session_factory, make_webhook):
        await make_webhook(["invoice.created"])

        created = await trigger_webhook(
            WebhookEvent(type="maintenance.changed", data={}),
            session_factory=session_factory,
        )

        assert created == []
        assert await _all_deliveries(test_session) == []

    @pytest.mark.asyncio
    async def test_deactivated_webhook_not_matched(
        self, test_session, test_settings, session_factory, make_webhook
    ):
        webhook = await make_webhook(["poll.created"])
        await update_webhook(test_session, webhook.id, is_active=False, settings=test_settings)
        await test_session.commit()

        created = await trigger_webhook(
            WebhookEvent(type="poll.created", data={"poll_id": 1}),
            session_factory=session_factory,
        )

        assert created == []

    @pytest.mark.asyncio
    async def test_per_target_isolation(self, test_session, session_factory, make_webhook):
        """A failure recording one delivery does not stop the others."""
        w1 = await make_webhook(["poll.created"])
        w2 = await make_webhook(["poll.created"])
        w3 = await make_webhook(["poll.created"])

        original_create = ledger.create_delivery

        async def flaky_create(session, webhook_id, event_type, payload):
            if webhook_id == w2.id:
                raise RuntimeError("insert failed")
            return await original_create(session, webhook_id, event_type, payload)

        with patch("fasthook.webhook.dispatcher.create_delivery", side_effect=flaky_create):
            created = await trigger_webhook(
                WebhookEvent(type="poll.created", data={"poll_id": 1}),
                session_factory=session_factory,
            )

        deliveries = await _all_deliveries(test_session)
        assert len(created) == 2
        assert {d.webhook_id for d in deliveries} == {w1.id, w3.id}

    @pytest.mark.asyncio
    async def test_payload_snapshot(self, test_session, session_factory, make_webhook):
        """Mutating event data after dispatch does not change the stored payload."""
        await make_webhook(["poll.created"])
        data = {"poll_id": 7, "options": ["yes", "no"]}

        await trigger_webhook(
            WebhookEvent(type="poll.created", data=data),
            session_factory=session_factory,
        )
        data["options"].append("maybe")
        data["poll_id"] = 8

        deliveries = await _all_deliveries(test_session)
        assert deliveries[0].payload == {"poll_id": 7, "options": ["yes", "no"]}

    @pytest.mark.asyncio
    async def test_unserializable_payload_is_logged_not_raised(
        self, test_session, session_factory, make_webhook
    ):
        await make_webhook(["poll.created"])

        created = await trigger_webhook(
            WebhookEvent(type="poll.created", data={"when": object()}),
            session_factory=session_factory,
        )

        assert created == []
        assert await _all_deliveries(test_session) == []

    @pytest.mark.asyncio
    async def test_array_payload_kept_as_is(self, test_session, session_factory, make_webhook):
        await make_webhook(["poll.created"])

        created = await trigger_webhook(
            WebhookEvent(type="poll.created", data=[1, 2]),
            session_factory=session_factory,
        )

        deliveries = await _all_deliveries(test_session)
        assert len(created) == 1
        assert deliveries[0].payload == [1, 2]

    @pytest.mark.asyncio
    async def test_concurrent_transactions_bounded(
        self, test_session, session_factory, make_webhook
    ):
        """No more than max_concurrency deliveries are recorded at once."""
        for _ in range(4):
            await make_webhook(["poll.created"])

        original_create = ledger.create_delivery
        active = 0
        peak = 0

        async def tracking_create(session, webhook_id, event_type, payload):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                await asyncio.sleep(0.01)
                return await original_create(session, webhook_id, event_type, payload)
            finally:
                active -= 1

        with patch("fasthook.webhook.dispatcher.create_delivery", side_effect=tracking_create):
            created = await trigger_webhook(
                WebhookEvent(type="poll.created", data={"poll_id": 1}),
                session_factory=session_factory,
                max_concurrency=2,
            )

        assert len(created) == 4
        assert peak == 2
        assert len(await _all_deliveries(test_session)) == 4
