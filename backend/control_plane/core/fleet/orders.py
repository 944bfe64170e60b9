"""
Order Service - the order state machine.

pending -> running -> {completed, failed}
pending -> {completed, failed}   (runner reported only the outcome)
pending -> cancelled             (operator, cooperative)

No transition leaves a terminal state. Reports against completed/failed
orders raise InvalidTransition; late reports against cancelled orders are
ignored.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.clock import utcnow
from control_plane.core.config import settings
from control_plane.core.exceptions import (
    InvalidTransition,
    NoActiveRunner,
    NotFoundError,
    ValidationError,
)
from control_plane.core.fleet.events import EventChannel, event_channel, order_event
from control_plane.core.fleet.liveness import is_online
from control_plane.core.fleet.locks import order_locks
from control_plane.core.models import (
    Infrastructure,
    Order,
    OrderCategory,
    OrderStatus,
    Runner,
)

logger = logging.getLogger(__name__)


# Runners may say "applied" for a successful step
_REPORTED_ALIASES = {
    "applied": OrderStatus.COMPLETED,
    "success": OrderStatus.COMPLETED,
    "succeeded": OrderStatus.COMPLETED,
    "error": OrderStatus.FAILED,
}

_REPORTABLE = {OrderStatus.RUNNING, OrderStatus.COMPLETED, OrderStatus.FAILED}


def parse_reported_status(value: Union[str, OrderStatus]) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    word = str(value).strip().lower()
    if word in _REPORTED_ALIASES:
        return _REPORTED_ALIASES[word]
    try:
        return OrderStatus(word)
    except ValueError as e:
        raise ValidationError(f"Unknown order status '{value}'") from e


def effective_status(reported: OrderStatus, exit_code: Optional[int]) -> OrderStatus:
    """
    exit_code is the source of truth for the outcome.

    A running report stays running; otherwise exit 0 means completed and a
    non-zero exit means failed, whatever status string came with it.
    """
    if reported == OrderStatus.RUNNING:
        return OrderStatus.RUNNING
    if exit_code is not None:
        return OrderStatus.COMPLETED if exit_code == 0 else OrderStatus.FAILED
    return reported


def truncate_tail(text: Optional[str], limit: Optional[int] = None) -> Optional[str]:
    """Keep the last `limit` characters of command output."""
    if text is None:
        return None
    limit = limit or settings.OUTPUT_TAIL_MAX_CHARS
    return text[-limit:]


class OrderService:
    """
    Creates orders and applies runner reports.

    Mutations on one order are serialized with a per-order lock; every
    state change is published on the event channel.
    """

    def __init__(self, db: AsyncSession, channel: Optional[EventChannel] = None):
        self.db = db
        self.channel = channel or event_channel

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get(self, order_id: UUID) -> Order:
        order = await self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def list_orders(
        self,
        runner_id: Optional[UUID] = None,
        infrastructure_id: Optional[UUID] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
    ) -> list[Order]:
        query = select(Order).order_by(Order.created_at.desc()).limit(limit)
        if runner_id:
            query = query.where(Order.runner_id == runner_id)
        if infrastructure_id:
            query = query.where(Order.infrastructure_id == infrastructure_id)
        if status:
            query = query.where(Order.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def pending_for_runner(self, runner_id: UUID, limit: Optional[int] = None) -> list[Order]:
        """Pending orders for one runner, oldest first."""
        result = await self.db.execute(
            select(Order)
            .where(Order.runner_id == runner_id, Order.status == OrderStatus.PENDING)
            .order_by(Order.created_at.asc())
            .limit(limit or settings.POLL_BATCH_SIZE)
        )
        return list(result.scalars().all())

    # ==========================================================================
    # Commands
    # ==========================================================================

    async def create(
        self,
        runner_id: UUID,
        category: Union[str, OrderCategory],
        name: str,
        command: str,
        description: Optional[str] = None,
        infrastructure_id: Optional[UUID] = None,
        meta: Optional[dict[str, Any]] = None,
        require_online: bool = False,
    ) -> Order:
        """
        Create a pending order addressed to a runner.

        infrastructure_id defaults to the runner's current association.
        """
        if not command or not command.strip():
            raise ValidationError("Order command must not be empty")
        if not name or not name.strip():
            raise ValidationError("Order name must not be empty")
        try:
            category = OrderCategory(category)
        except ValueError as e:
            raise ValidationError(f"Unknown order category '{category}'") from e

        runner = await self.db.get(Runner, runner_id)
        if runner is None:
            raise ValidationError(f"Runner {runner_id} does not exist")
        if require_online and not is_online(runner):
            raise NoActiveRunner(runner_id=runner_id)

        if infrastructure_id is None:
            infrastructure_id = runner.infrastructure_id
        elif await self.db.get(Infrastructure, infrastructure_id) is None:
            raise ValidationError(f"Infrastructure {infrastructure_id} does not exist")

        order = Order(
            runner_id=runner_id,
            infrastructure_id=infrastructure_id,
            category=category,
            name=name.strip(),
            description=description,
            command=command,
            status=OrderStatus.PENDING,
            meta=dict(meta or {}),
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"Created order {order.id} '{order.name}' for runner {runner_id}")
        await self.channel.publish(order_event("created", order))
        return order

    async def mark_running(self, order_id: UUID) -> Order:
        async with order_locks(order_id):
            order = await self.get(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidTransition("Order", order_id, order.status.value, OrderStatus.RUNNING.value)

            order.status = OrderStatus.RUNNING
            if order.started_at is None:
                order.started_at = utcnow()
            await self.db.commit()
            await self.db.refresh(order)

        logger.info(f"Order {order_id} marked running")
        await self.channel.publish(order_event("updated", order))
        return order

    async def report(
        self,
        order_id: UUID,
        status: Union[str, OrderStatus],
        progress: Optional[int] = None,
        result: Optional[dict[str, Any]] = None,
        stdout_tail: Optional[str] = None,
        stderr_tail: Optional[str] = None,
        exit_code: Optional[int] = None,
        error_message: Optional[str] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Order:
        """
        Apply a runner execution report.

        All validation happens before the first attribute is written, so a
        rejected report leaves the stored order untouched.
        """
        async with order_locks(order_id):
            order = await self.get(order_id)

            if order.status == OrderStatus.CANCELLED:
                logger.warning(f"Ignoring late report for cancelled order {order_id}")
                return order
            if order.status.is_terminal:
                raise InvalidTransition("Order", order_id, order.status.value, str(status))

            reported = parse_reported_status(status)
            if reported not in _REPORTABLE:
                raise InvalidTransition("Order", order_id, order.status.value, reported.value)
            if progress is not None and not 0 <= progress <= 100:
                raise ValidationError(f"Progress must be between 0 and 100, got {progress}")

            new_status = effective_status(reported, exit_code)
            now = utcnow()

            if progress is not None:
                if order.progress is not None and progress < order.progress:
                    logger.warning(
                        f"Order {order_id} progress regressed from {order.progress} to {progress}"
                    )
                order.progress = progress

            if result is not None:
                order.result = dict(result)
            if stdout_tail is not None:
                order.stdout_tail = truncate_tail(stdout_tail)
            if stderr_tail is not None:
                order.stderr_tail = truncate_tail(stderr_tail)
            if exit_code is not None:
                order.exit_code = exit_code
            if error_message is not None:
                order.error_message = error_message
            if meta:
                order.meta = {**(order.meta or {}), **meta}

            if order.started_at is None:
                order.started_at = started_at or now

            if new_status.is_terminal:
                order.completed_at = finished_at or now
                order.report_incomplete = exit_code is None
                if new_status == OrderStatus.FAILED and not order.error_message and order.stderr_tail:
                    order.error_message = order.stderr_tail[: settings.ERROR_MESSAGE_MAX_CHARS]

            order.status = new_status
            await self.db.commit()
            await self.db.refresh(order)

        logger.info(f"Order {order_id} reported {reported.value}, now {new_status.value}")
        await self.channel.publish(order_event("updated", order))
        return order

    async def cancel(self, order_id: UUID) -> Order:
        """
        Cancel a pending order.

        A runner that already dequeued it may still run it; its later
        reports are ignored.
        """
        async with order_locks(order_id):
            order = await self.get(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidTransition("Order", order_id, order.status.value, OrderStatus.CANCELLED.value)

            order.status = OrderStatus.CANCELLED
            order.completed_at = utcnow()
            await self.db.commit()
            await self.db.refresh(order)

        logger.info(f"Order {order_id} cancelled")
        await self.channel.publish(order_event("cancelled", order))
        return order
