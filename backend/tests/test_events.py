"""
Runner Control Plane - Change Channel & Delivery Tests
======================================================
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

import control_plane.api.main  # noqa: F401  configures structlog
from control_plane.core.fleet.delivery import OrderDelivery, wait_for_orders
from control_plane.core.fleet.events import ChangeEvent, EventChannel, OrderMirror
from control_plane.core.fleet.orders import OrderService
from control_plane.core.models import OrderCategory, Runner

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(order_id, status: str, at: datetime, runner_id: str = "r1") -> ChangeEvent:
    return ChangeEvent(
        entity_type="order",
        action="updated",
        entity_id=order_id,
        payload={"id": str(order_id), "runner_id": runner_id, "status": status},
        updated_at=at,
    )


# ==========================================================================
# Channel
# ==========================================================================

class TestEventChannel:

    async def test_filtered_fan_out(self):
        channel = EventChannel()
        mine = await channel.subscribe("order", runner_id="r1")
        other = await channel.subscribe("order", runner_id="r2")
        routes = await channel.subscribe("route")

        delivered = await channel.publish(_event(uuid4(), "pending", T0))
        assert delivered == 1
        assert len(mine.drain()) == 1
        assert other.drain() == []
        assert routes.drain() == []

    async def test_unsubscribe(self):
        channel = EventChannel()
        subscription = await channel.subscribe("order")
        await channel.unsubscribe(subscription)
        assert await channel.publish(_event(uuid4(), "pending", T0)) == 0

    async def test_replay_since(self):
        channel = EventChannel()
        await channel.publish(_event(uuid4(), "pending", T0))
        await channel.publish(_event(uuid4(), "pending", T0 + timedelta(minutes=5)))
        assert len(channel.replay("order", since=T0 + timedelta(minutes=1))) == 1
        assert len(channel.replay("order", runner_id="r2")) == 0

    async def test_publish_logs_under_app_configuration(self):
        channel = EventChannel()
        subscription = await channel.subscribe("order")
        assert await channel.publish(_event(uuid4(), "pending", T0)) == 1
        assert subscription.drain()[0].payload["status"] == "pending"

    async def test_history_is_bounded(self):
        channel = EventChannel(max_history=3)
        for _ in range(5):
            await channel.publish(_event(uuid4(), "pending", T0))
        assert len(channel.history) == 3


# ==========================================================================
# Mirror
# ==========================================================================

class TestOrderMirror:

    def test_out_of_order_events_are_ignored(self):
        order_id = uuid4()
        mirror = OrderMirror()
        assert mirror.apply(_event(order_id, "running", T0 + timedelta(seconds=2))) is True
        assert mirror.apply(_event(order_id, "pending", T0)) is False
        assert mirror.status_of(order_id) == "running"

    def test_terminal_is_never_regressed(self):
        order_id = uuid4()
        mirror = OrderMirror()
        mirror.apply(_event(order_id, "completed", T0))
        assert mirror.apply(_event(order_id, "running", T0)) is False
        assert mirror.status_of(order_id) == "completed"

    def test_replay_converges(self):
        first, second = uuid4(), uuid4()
        events = [
            _event(first, "pending", T0),
            _event(second, "pending", T0),
            _event(first, "running", T0 + timedelta(seconds=1)),
            _event(first, "completed", T0 + timedelta(seconds=2)),
        ]
        live = OrderMirror()
        live.apply_all(events)

        replayed = OrderMirror()
        replayed.apply_all(events + events[::-1] + events)
        assert replayed.orders == live.orders

    def test_other_entities_are_ignored(self):
        event = ChangeEvent(entity_type="route", action="updated", entity_id=uuid4())
        assert OrderMirror().apply(event) is False


# ==========================================================================
# Delivery
# ==========================================================================

@pytest.fixture
def orders(db_session: AsyncSession, channel: EventChannel) -> OrderService:
    return OrderService(db_session, channel)


async def _dispatch(orders: OrderService, runner: Runner, name: str = "Check disk"):
    return await orders.create(
        runner_id=runner.id,
        category=OrderCategory.MAINTENANCE,
        name=name,
        command="df -h",
    )


class TestOrderDelivery:

    async def test_push_then_poll_delivers_once(
        self,
        orders: OrderService,
        runner: Runner,
        channel: EventChannel,
    ):
        async with OrderDelivery(runner.id, channel) as delivery:
            order = await _dispatch(orders, runner)

            pushed = delivery.take_pushed()
            assert [p["id"] for p in pushed] == [str(order.id)]

            polled = delivery.reconcile(await orders.pending_for_runner(runner.id))
            assert polled == []

    async def test_poll_recovers_missed_push(
        self,
        orders: OrderService,
        runner: Runner,
        channel: EventChannel,
    ):
        order = await _dispatch(orders, runner)

        async with OrderDelivery(runner.id, channel) as delivery:
            assert delivery.take_pushed() == []
            polled = delivery.reconcile(await orders.pending_for_runner(runner.id))
            assert [p["id"] for p in polled] == [str(order.id)]

    async def test_cancelled_order_is_not_delivered(
        self,
        orders: OrderService,
        runner: Runner,
        channel: EventChannel,
    ):
        async with OrderDelivery(runner.id, channel) as delivery:
            order = await _dispatch(orders, runner)
            await orders.cancel(order.id)

            assert delivery.take_pushed() == []
            assert delivery.is_cancelled(order.id) is True

    async def test_wait_returns_on_push(
        self,
        orders: OrderService,
        runner: Runner,
        channel: EventChannel,
    ):
        async def poll():
            return []

        waiter = asyncio.create_task(wait_for_orders(runner.id, poll, timeout=5, channel=channel))
        await asyncio.sleep(0.01)
        order = await _dispatch(orders, runner)

        delivered = await asyncio.wait_for(waiter, timeout=5)
        assert [p["id"] for p in delivered] == [str(order.id)]

    async def test_wait_times_out_empty(self, runner: Runner, channel: EventChannel):
        async def poll():
            return []

        assert await wait_for_orders(runner.id, poll, timeout=0.05, channel=channel) == []

    async def test_wait_requires_start(self, runner: Runner):
        with pytest.raises(RuntimeError):
            await OrderDelivery(runner.id).wait(0.01)
