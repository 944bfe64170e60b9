"""
Runner Control Plane - Runner Agent API
=======================================

Endpoints called by runner agents. Everything except registration is
authenticated with the X-Runner-Token header.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from control_plane.api.deps import Channel, CurrentRunner, DbSession
from control_plane.api.orders import order_to_response
from control_plane.core.config import settings
from control_plane.core.fleet.delivery import wait_for_orders
from control_plane.core.fleet.runners import RunnerRegistry
from control_plane.core.models import RunnerStatus
from control_plane.core.schemas import (
    HeartbeatResponse,
    OrderReport,
    OrderResponse,
    PollResponse,
    RunnerRegisterRequest,
    RunnerRegisterResponse,
)

router = APIRouter(prefix="/runner", tags=["Runner Agent"])


@router.post(
    "/register",
    response_model=RunnerRegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a runner",
)
async def register(data: RunnerRegisterRequest, db: DbSession) -> RunnerRegisterResponse:
    """Create the runner, or update the one with the same name."""
    runner = await RunnerRegistry(db).register(
        name=data.name,
        token=data.token,
        host_info=data.host_info,
        capabilities=data.capabilities,
    )
    return RunnerRegisterResponse(runner_id=runner.id)


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(runner: CurrentRunner, db: DbSession) -> HeartbeatResponse:
    runner = await RunnerRegistry(db).heartbeat(runner)
    return HeartbeatResponse(runner_id=runner.id, status=runner.status, last_seen_at=runner.last_seen_at)


@router.get("/orders/poll", response_model=PollResponse)
async def poll_orders(
    runner: CurrentRunner,
    db: DbSession,
    limit: int = Query(settings.POLL_BATCH_SIZE, ge=1, le=100),
) -> PollResponse:
    """Pending orders for the calling runner, oldest first."""
    orders = await RunnerRegistry(db).poll(runner, limit)
    return PollResponse(runner_id=runner.id, orders=[order_to_response(o) for o in orders])


@router.get("/orders/wait", response_model=PollResponse)
async def wait_orders(
    runner: CurrentRunner,
    db: DbSession,
    channel: Channel,
    timeout: float = Query(settings.ORDER_WAIT_MAX_SECONDS, ge=0, le=settings.ORDER_WAIT_MAX_SECONDS),
) -> PollResponse:
    """
    Long-poll: returns as soon as an order is pushed to this runner, or
    with whatever is pending in the store, or empty after the timeout.
    A paused runner gets an empty list without waiting.
    """
    registry = RunnerRegistry(db, channel)
    if runner.status == RunnerStatus.PAUSED:
        await registry.poll(runner)
        return PollResponse(runner_id=runner.id, orders=[])

    async def poll():
        return await registry.poll(runner)

    payloads = await wait_for_orders(runner.id, poll, timeout, channel)
    orders = [await registry.orders.get(UUID(p["id"])) for p in payloads]
    return PollResponse(runner_id=runner.id, orders=[order_to_response(o) for o in orders])


@router.post("/orders/report", response_model=OrderResponse)
async def report_order(data: OrderReport, runner: CurrentRunner, db: DbSession, channel: Channel) -> OrderResponse:
    """Apply an execution report and fold it into routes, deployments and capabilities."""
    order = await RunnerRegistry(db, channel).report_order(
        runner,
        order_id=data.order_id,
        status=data.status,
        progress=data.progress,
        result=data.result,
        stdout_tail=data.stdout_tail,
        stderr_tail=data.stderr_tail,
        exit_code=data.exit_code,
        error_message=data.error_message,
        started_at=data.started_at,
        finished_at=data.finished_at,
        meta=data.meta,
    )
    return order_to_response(order)
