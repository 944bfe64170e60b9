"""
Change Notification Channel
===========================

In-process publish/subscribe for entity changes. Subscribers register for
one entity type plus an optional equality filter (e.g. runner_id) and
receive ChangeEvents on an asyncio queue in publish order.

OrderMirror is a pure reducer over order events that tolerates replayed
and out-of-order delivery.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from control_plane.core.clock import as_utc, utcnow
from control_plane.core.models import Order, OrderStatus

logger = structlog.get_logger()


# ==========================================================================
# Event Types
# ==========================================================================

@dataclass
class ChangeEvent:
    """One entity change notification."""
    entity_type: str  # order | route | deployment | runner
    action: str  # created | updated | cancelled | deleted
    entity_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def name(self) -> str:
        return f"{self.entity_type}.{self.action}"


def order_payload(order: Order) -> dict[str, Any]:
    """Serializable snapshot of an order for subscribers."""
    return {
        "id": str(order.id),
        "runner_id": str(order.runner_id),
        "infrastructure_id": str(order.infrastructure_id) if order.infrastructure_id else None,
        "name": order.name,
        "description": order.description,
        "command": order.command,
        "category": order.category.value,
        "status": order.status.value,
        "progress": order.progress,
        "exit_code": order.exit_code,
        "error_message": order.error_message,
        "meta": dict(order.meta or {}),
    }


def order_event(action: str, order: Order) -> ChangeEvent:
    return ChangeEvent(
        entity_type="order",
        action=action,
        entity_id=order.id,
        payload=order_payload(order),
        updated_at=as_utc(order.updated_at) or utcnow(),
    )


# ==========================================================================
# Channel
# ==========================================================================

@dataclass
class Subscription:
    """A queue bound to one entity type and an equality filter."""
    entity_type: str
    filters: dict[str, str] = field(default_factory=dict)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    id: str = field(default_factory=lambda: str(uuid4()))

    def matches(self, event: ChangeEvent) -> bool:
        if event.entity_type != self.entity_type:
            return False
        for key, expected in self.filters.items():
            value = event.payload.get(key)
            if value is None or str(value) != expected:
                return False
        return True

    def drain(self) -> list[ChangeEvent]:
        """Return every queued event without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class EventChannel:
    """
    Fan-out of ChangeEvents to matching subscriptions.

    Delivery is at-least-once from the subscriber's point of view: replays
    from history may repeat events, so consumers de-duplicate by entity id.
    """

    def __init__(self, max_history: int = 1000):
        self.subscriptions: dict[str, Subscription] = {}
        self.history: list[ChangeEvent] = []
        self.max_history = max_history
        self._lock = asyncio.Lock()

    async def subscribe(self, entity_type: str, **filters: Any) -> Subscription:
        subscription = Subscription(
            entity_type=entity_type,
            filters={k: str(v) for k, v in filters.items() if v is not None},
        )
        async with self._lock:
            self.subscriptions[subscription.id] = subscription
        logger.debug("subscription_added", entity_type=entity_type, filters=subscription.filters)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        async with self._lock:
            self.subscriptions.pop(subscription.id, None)

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver to every matching subscriber; returns the delivery count."""
        async with self._lock:
            self.history.append(event)
            if len(self.history) > self.max_history:
                self.history = self.history[-self.max_history:]
            targets = [s for s in self.subscriptions.values() if s.matches(event)]

        for subscription in targets:
            subscription.queue.put_nowait(event)

        logger.debug("event_published", event_name=event.name, entity_id=str(event.entity_id), delivered=len(targets))
        return len(targets)

    def replay(self, entity_type: str, since: Optional[datetime] = None, **filters: Any) -> list[ChangeEvent]:
        """Events from history matching a filter, oldest first."""
        probe = Subscription(
            entity_type=entity_type,
            filters={k: str(v) for k, v in filters.items() if v is not None},
        )
        since = as_utc(since)
        return [
            e for e in self.history
            if probe.matches(e) and (since is None or as_utc(e.updated_at) >= since)
        ]


# Process-wide channel
event_channel = EventChannel()


def get_event_channel() -> EventChannel:
    return event_channel


# ==========================================================================
# Order Mirror
# ==========================================================================

_TERMINAL_VALUES = {s.value for s in (OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED)}


class OrderMirror:
    """
    Local view of orders maintained from change notifications.

    Events are applied in arrival order; an event whose updated_at is older
    than the recorded state for that order id is a no-op, and a recorded
    terminal status is never replaced by a non-terminal one.
    """

    def __init__(self):
        self.orders: dict[str, dict[str, Any]] = {}
        self._updated_at: dict[str, datetime] = {}

    def apply(self, event: ChangeEvent) -> bool:
        """Apply one event. Returns True when the mirror changed."""
        if event.entity_type != "order":
            return False

        key = str(event.entity_id)
        incoming_at = as_utc(event.updated_at)
        current = self.orders.get(key)

        if current is not None:
            if incoming_at < self._updated_at[key]:
                logger.debug("order_event_stale", order_id=key, event_name=event.name)
                return False
            if current.get("status") in _TERMINAL_VALUES and event.payload.get("status") not in _TERMINAL_VALUES:
                return False
            if current == event.payload and incoming_at == self._updated_at[key]:
                return False

        self.orders[key] = dict(event.payload)
        self._updated_at[key] = incoming_at
        return True

    def apply_all(self, events: list[ChangeEvent]) -> int:
        return sum(1 for e in events if self.apply(e))

    def get(self, order_id: Any) -> Optional[dict[str, Any]]:
        return self.orders.get(str(order_id))

    def status_of(self, order_id: Any) -> Optional[str]:
        order = self.get(order_id)
        return order.get("status") if order else None
