"""Status push channel and poll reads."""

import asyncio
from datetime import datetime, timezone

import pytest

from storefront import queries
from storefront.aggregate import OrderStatus
from storefront.checkout import CheckoutOrchestrator, ItemProposal
from storefront.events import OrderStatusChanged, order_status_channel
from storefront.gateway import BuyerDetails
from storefront.notifier import OrderStatusNotifier
from storefront.reconciler import PaymentNotification, WebhookReconciler
from tests.fakes import FakeRedis
from tests.helpers import SERVER_KEY, notification_body


def _changed(code: str, status: str) -> OrderStatusChanged:
    return OrderStatusChanged(
        order_code=code, status=status, timestamp=datetime.now(timezone.utc)
    )


async def _collect(notifier, code, **kwargs) -> list[dict]:
    return [event async for event in notifier.listen(code, **kwargs)]


async def _wait_for_subscriber(redis: FakeRedis, code: str) -> None:
    for _ in range(100):
        if redis.subscribers[order_status_channel(code)]:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("listener never subscribed")


class TestListen:

    async def test_stops_after_terminal_event(self):
        redis = FakeRedis()
        notifier = OrderStatusNotifier(redis, poll_interval=0.05)
        task = asyncio.create_task(_collect(notifier, "TRX-1"))
        await _wait_for_subscriber(redis, "TRX-1")

        await notifier.publish_status(_changed("TRX-1", "success"))
        events = await asyncio.wait_for(task, timeout=2)

        assert [e["status"] for e in events] == ["success"]
        assert redis.subscribers[order_status_channel("TRX-1")] == []

    async def test_only_receives_its_own_order(self):
        redis = FakeRedis()
        notifier = OrderStatusNotifier(redis, poll_interval=0.05)
        task = asyncio.create_task(_collect(notifier, "TRX-1"))
        await _wait_for_subscriber(redis, "TRX-1")

        await notifier.publish_status(_changed("TRX-2", "failed"))
        await notifier.publish_status(_changed("TRX-1", "failed"))
        events = await asyncio.wait_for(task, timeout=2)

        assert [(e["order_code"], e["status"]) for e in events] == [("TRX-1", "failed")]

    async def test_current_state_first_then_stream(self):
        redis = FakeRedis()
        notifier = OrderStatusNotifier(redis, poll_interval=0.05)
        row = {"order_code": "TRX-1", "status": "pending", "lines": []}

        async def load_current():
            return dict(row)

        task = asyncio.create_task(_collect(notifier, "TRX-1", load_current=load_current))
        await _wait_for_subscriber(redis, "TRX-1")
        row["status"] = "success"
        await notifier.publish_status(_changed("TRX-1", "success"))
        events = await asyncio.wait_for(task, timeout=2)

        assert [e["status"] for e in events] == ["pending", "success"]

    async def test_pushed_change_is_reread_in_full(self):
        redis = FakeRedis()
        notifier = OrderStatusNotifier(redis, poll_interval=0.05)
        row = {"order_code": "TRX-1", "status": "pending", "total_amount": 100, "lines": []}

        async def load_current():
            return dict(row)

        task = asyncio.create_task(_collect(notifier, "TRX-1", load_current=load_current))
        await _wait_for_subscriber(redis, "TRX-1")
        row["status"] = "failed"
        await notifier.publish_status(_changed("TRX-1", "failed"))
        events = await asyncio.wait_for(task, timeout=2)

        assert events == [
            {"order_code": "TRX-1", "status": "pending", "total_amount": 100, "lines": []},
            {"order_code": "TRX-1", "status": "failed", "total_amount": 100, "lines": []},
        ]

    async def test_terminal_current_state_ends_immediately(self):
        notifier = OrderStatusNotifier(FakeRedis(), poll_interval=0.05)

        async def load_current():
            return {"order_code": "TRX-1", "status": "failed"}

        events = await asyncio.wait_for(
            _collect(notifier, "TRX-1", load_current=load_current), timeout=2
        )
        assert [e["status"] for e in events] == ["failed"]

    async def test_shutdown_event_ends_stream(self):
        notifier = OrderStatusNotifier(FakeRedis(), poll_interval=0.01)
        shutdown = asyncio.Event()
        shutdown.set()
        events = await asyncio.wait_for(
            _collect(notifier, "TRX-1", shutdown_event=shutdown), timeout=2
        )
        assert events == []

    async def test_publish_failure_is_swallowed(self, caplog):
        notifier = OrderStatusNotifier(FakeRedis(fail_publish=True))
        assert await notifier.publish_status(_changed("TRX-1", "success")) is False
        assert "Failed to publish" in caplog.text


class TestStatusAfterWebhook:

    @pytest.fixture
    async def order_code(self, session_factory, gateway, redis, seed):
        orchestrator = CheckoutOrchestrator(session_factory, gateway, OrderStatusNotifier(redis))
        result = await orchestrator.execute(
            "acct-1", [ItemProposal("p-ebook", 2)], BuyerDetails("Siti", "siti@example.com")
        )
        return result.order_code

    async def test_viewer_sees_webhook_update(self, session_factory, redis, order_code):
        notifier = OrderStatusNotifier(redis, poll_interval=0.05)

        async def load_current():
            async with session_factory() as session:
                return await queries.get_order(session, order_code, "acct-1")

        viewers = [
            asyncio.create_task(_collect(notifier, order_code, load_current=load_current))
            for _ in range(2)
        ]
        for _ in range(100):
            if len(redis.subscribers[order_status_channel(order_code)]) == 2:
                break
            await asyncio.sleep(0.01)

        reconciler = WebhookReconciler(session_factory, SERVER_KEY, notifier)
        await reconciler.reconcile(
            PaymentNotification.model_validate(notification_body(order_code))
        )
        results = await asyncio.wait_for(asyncio.gather(*viewers), timeout=2)

        for events in results:
            # 初回読み込みが Webhook の後になった視聴者は success だけを受け取る
            assert [e["status"] for e in events] in (["pending", "success"], ["success"])
            assert all(e["lines"] for e in events)

        async with session_factory() as session:
            order = await queries.get_order(session, order_code, "acct-1")
        assert order["status"] == "success"
        assert order["paid_at"] is not None
        assert order["lines"][0]["price_at_purchase"] == 100000


class TestQueries:

    @pytest.fixture
    async def codes(self, session_factory, gateway, redis, seed):
        orchestrator = CheckoutOrchestrator(session_factory, gateway, OrderStatusNotifier(redis))
        buyer = BuyerDetails("Siti", "siti@example.com")
        first = await orchestrator.execute("acct-1", [ItemProposal("p-ebook", 1)], buyer)
        second = await orchestrator.execute("acct-1", [ItemProposal("p-course", 1)], buyer)
        other = await orchestrator.execute("acct-2", [ItemProposal("p-ebook", 1)], buyer)
        return first.order_code, second.order_code, other.order_code

    async def test_other_accounts_get_not_found(self, session_factory, codes):
        _, _, other = codes
        async with session_factory() as session:
            assert await queries.get_order(session, other, "acct-1") is None
            assert await queries.get_order(session, other, "acct-2") is not None

    async def test_history_is_scoped_and_filterable(self, session_factory, codes):
        first, second, _ = codes
        reconciler = WebhookReconciler(session_factory, SERVER_KEY)
        await reconciler.reconcile(
            PaymentNotification.model_validate(
                notification_body(first, transaction_status="settlement", gross_amount="100000.00")
            )
        )

        async with session_factory() as session:
            history = await queries.list_orders(session, "acct-1")
            paid = await queries.list_orders(session, "acct-1", OrderStatus.SUCCESS)

        assert {o["order_code"] for o in history} == {first, second}
        assert [o["order_code"] for o in paid] == [first]
