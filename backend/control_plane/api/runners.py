"""
Runner Control Plane - Runners API
==================================

Operator view of runner agents. Liveness is derived at read time.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from control_plane.api.deps import DbSession
from control_plane.core.fleet.liveness import runner_liveness
from control_plane.core.fleet.runners import RunnerRegistry
from control_plane.core.models import Runner, RunnerStatus
from control_plane.core.schemas import (
    MessageResponse,
    RunnerAssociateRequest,
    RunnerResponse,
    RunnerStatusUpdate,
)

router = APIRouter(prefix="/runners", tags=["Runners"])


def _runner_to_response(runner: Runner, liveness: Optional[RunnerStatus] = None) -> RunnerResponse:
    """Convert a Runner model to its response schema."""
    return RunnerResponse(
        id=runner.id,
        name=runner.name,
        status=runner.status,
        liveness=liveness or runner_liveness(runner),
        last_seen_at=runner.last_seen_at,
        host_info=runner.host_info or {},
        capabilities=runner.capabilities or {},
        observed_capabilities=runner.observed_capabilities or {},
        infrastructure_id=runner.infrastructure_id,
        created_at=runner.created_at,
        updated_at=runner.updated_at,
    )


@router.get("", response_model=list[RunnerResponse])
async def list_runners(
    db: DbSession,
    infrastructure_id: Optional[UUID] = Query(None, description="Filter by infrastructure"),
) -> list[RunnerResponse]:
    rows = await RunnerRegistry(db).list_runners(infrastructure_id)
    return [_runner_to_response(runner, liveness) for runner, liveness in rows]


@router.get("/{runner_id}", response_model=RunnerResponse)
async def get_runner(runner_id: UUID, db: DbSession) -> RunnerResponse:
    return _runner_to_response(await RunnerRegistry(db).get(runner_id))


@router.put("/{runner_id}/infrastructure", response_model=RunnerResponse)
async def associate_runner(runner_id: UUID, data: RunnerAssociateRequest, db: DbSession) -> RunnerResponse:
    """Bind the runner to an infrastructure, or unbind it with null."""
    runner = await RunnerRegistry(db).associate(runner_id, data.infrastructure_id)
    return _runner_to_response(runner)


@router.put("/{runner_id}/status", response_model=RunnerResponse)
async def set_runner_status(runner_id: UUID, data: RunnerStatusUpdate, db: DbSession) -> RunnerResponse:
    """Pause or resume a runner."""
    runner = await RunnerRegistry(db).set_status(runner_id, data.status)
    return _runner_to_response(runner)


@router.delete("/{runner_id}", response_model=MessageResponse)
async def delete_runner(runner_id: UUID, db: DbSession) -> MessageResponse:
    await RunnerRegistry(db).delete(runner_id)
    return MessageResponse(message=f"Runner {runner_id} deleted")
