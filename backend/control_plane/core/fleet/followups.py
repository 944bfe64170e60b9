"""Consumers of order outcomes: routes, deployment steps and capabilities."""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.fleet.capabilities import CapabilityEngine, capability_engine
from control_plane.core.fleet.deployments import DeploymentExecutor
from control_plane.core.fleet.events import EventChannel
from control_plane.core.fleet.routing import RouteRegistry
from control_plane.core.models import Order, OrderStatus

logger = structlog.get_logger()


async def apply_order_outcome(
    db: AsyncSession,
    order: Order,
    engine: Optional[CapabilityEngine] = None,
    channel: Optional[EventChannel] = None,
) -> None:
    """Fold a reported or cancelled order into everything that tracks it."""
    meta = order.meta or {}

    if meta.get("route_id") and order.status.is_terminal:
        await RouteRegistry(db, meta.get("proxy_kind") or "caddy").apply_verification_order(order)

    if meta.get("deployment_id"):
        await DeploymentExecutor(db, channel).on_step_order_report(order)

    if order.status == OrderStatus.COMPLETED:
        outcome = await (engine or capability_engine).process_order(db, order)
        if outcome.error:
            logger.info(
                "capability_reconcile_skipped",
                order_id=str(order.id),
                reason=outcome.error,
            )
