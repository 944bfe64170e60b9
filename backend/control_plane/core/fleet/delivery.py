"""
Order delivery to runners.

Push through the change channel is the primary path; polling the store is
the reconciliation fallback for anything a subscription missed (restart,
slow consumer). Both paths feed one tracker that hands each order id out
at most once.
"""

import asyncio
from typing import Any, Callable, Iterable, Optional, Union
from uuid import UUID

import structlog

from control_plane.core.fleet.events import (
    ChangeEvent,
    EventChannel,
    OrderMirror,
    Subscription,
    event_channel,
    order_payload,
)
from control_plane.core.models import Order, OrderStatus

logger = structlog.get_logger()

OrderLike = Union[Order, dict[str, Any]]


def _as_payload(order: OrderLike) -> dict[str, Any]:
    return order_payload(order) if isinstance(order, Order) else dict(order)


class OrderDelivery:
    """
    Per-runner delivery tracker.

    take_pushed() drains the subscription; reconcile() folds in a poll
    result. Either way an order id is delivered once, and an order seen as
    cancelled is never delivered.
    """

    def __init__(self, runner_id: Union[str, UUID], channel: Optional[EventChannel] = None):
        self.runner_id = str(runner_id)
        self.channel = channel or event_channel
        self.mirror = OrderMirror()
        self.delivered: set[str] = set()
        self.subscription: Optional[Subscription] = None

    async def start(self) -> None:
        if self.subscription is None:
            self.subscription = await self.channel.subscribe("order", runner_id=self.runner_id)

    async def stop(self) -> None:
        if self.subscription is not None:
            await self.channel.unsubscribe(self.subscription)
            self.subscription = None

    async def __aenter__(self) -> "OrderDelivery":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _accept(self, payloads: Iterable[dict[str, Any]], via: str) -> list[dict[str, Any]]:
        fresh = []
        for payload in payloads:
            order_id = payload["id"]
            if order_id in self.delivered or self.is_cancelled(order_id):
                continue
            if payload.get("status") != OrderStatus.PENDING.value:
                continue
            self.delivered.add(order_id)
            fresh.append(payload)
        if fresh:
            logger.debug("orders_delivered", runner_id=self.runner_id, via=via, count=len(fresh))
        return fresh

    def _apply(self, events: list[ChangeEvent]) -> list[dict[str, Any]]:
        for event in events:
            self.mirror.apply(event)
        return [
            self.mirror.get(event.entity_id)
            for event in events
            if self.mirror.get(event.entity_id) is not None
        ]

    def take_pushed(self) -> list[dict[str, Any]]:
        """New pending orders that arrived through the subscription."""
        if self.subscription is None:
            return []
        events = self.subscription.drain()
        return self._accept(self._apply(events), via="push")

    def reconcile(self, pending: Iterable[OrderLike]) -> list[dict[str, Any]]:
        """Fold in a poll result; returns only orders push has not delivered."""
        return self._accept((_as_payload(o) for o in pending), via="poll")

    def is_cancelled(self, order_id: Any) -> bool:
        return self.mirror.status_of(order_id) == OrderStatus.CANCELLED.value

    async def wait(self, timeout: float) -> list[dict[str, Any]]:
        """Block until a pushed order arrives or the timeout expires."""
        if self.subscription is None:
            raise RuntimeError("OrderDelivery.wait() called before start()")

        fresh = self.take_pushed()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not fresh:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                event = await asyncio.wait_for(self.subscription.queue.get(), remaining)
            except asyncio.TimeoutError:
                break
            fresh = self._accept(self._apply([event]), via="push") + self.take_pushed()
        return fresh


async def wait_for_orders(
    runner_id: Union[str, UUID],
    poll: Callable[[], Any],
    timeout: float,
    channel: Optional[EventChannel] = None,
) -> list[dict[str, Any]]:
    """
    Long-poll for a runner: subscribe, reconcile against the store, then
    wait for a push if nothing was pending.

    `poll` is an async callable returning the runner's pending orders.
    """
    async with OrderDelivery(runner_id, channel) as delivery:
        fresh = delivery.reconcile(await poll())
        if fresh or timeout <= 0:
            return fresh
        return await delivery.wait(timeout)
