"""
Runner Control Plane - Orders API
=================================

Operator-side order dispatch and tracking.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from control_plane.api.deps import Channel, DbSession
from control_plane.core.fleet.followups import apply_order_outcome
from control_plane.core.fleet.orders import OrderService
from control_plane.core.models import Order, OrderStatus
from control_plane.core.schemas import OrderCreate, OrderResponse

router = APIRouter(prefix="/orders", tags=["Orders"])


def order_to_response(order: Order) -> OrderResponse:
    return OrderResponse.model_validate(order)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    responses={
        422: {"description": "Blank command or unknown runner"},
        503: {"description": "Runner offline and require_online was set"},
    },
)
async def create_order(data: OrderCreate, db: DbSession, channel: Channel) -> OrderResponse:
    order = await OrderService(db, channel).create(
        runner_id=data.runner_id,
        category=data.category,
        name=data.name,
        command=data.command,
        description=data.description,
        infrastructure_id=data.infrastructure_id,
        meta=data.meta,
        require_online=data.require_online,
    )
    return order_to_response(order)


@router.get("", response_model=list[OrderResponse], summary="List orders")
async def list_orders(
    db: DbSession,
    runner_id: Optional[UUID] = Query(None),
    infrastructure_id: Optional[UUID] = Query(None),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
) -> list[OrderResponse]:
    orders = await OrderService(db).list_orders(
        runner_id=runner_id,
        infrastructure_id=infrastructure_id,
        status=status_filter,
        limit=limit,
    )
    return [order_to_response(o) for o in orders]


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
async def get_order(order_id: UUID, db: DbSession) -> OrderResponse:
    return order_to_response(await OrderService(db).get(order_id))


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    responses={409: {"description": "Order is no longer pending"}},
)
async def cancel_order(order_id: UUID, db: DbSession, channel: Channel) -> OrderResponse:
    """
    Cancel a pending order. A deployment step waiting on it fails; a route
    waiting on it stays provisioning.
    """
    order = await OrderService(db, channel).cancel(order_id)
    await apply_order_outcome(db, order, channel=channel)
    return order_to_response(order)


@router.post(
    "/{order_id}/running",
    response_model=OrderResponse,
    summary="Mark order running",
    responses={409: {"description": "Order is not pending"}},
)
async def mark_order_running(order_id: UUID, db: DbSession, channel: Channel) -> OrderResponse:
    order = await OrderService(db, channel).mark_running(order_id)
    await apply_order_outcome(db, order, channel=channel)
    return order_to_response(order)
