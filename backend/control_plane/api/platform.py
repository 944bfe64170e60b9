"""
Runner Control Plane - Platform Services API
============================================

Prerequisite gating and platform service installation.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from control_plane.api.deps import DbSession
from control_plane.api.orders import order_to_response
from control_plane.core.fleet.gating import GateCheck, GatingResult, PlatformGating
from control_plane.core.schemas import (
    GateCheckResponse,
    GatingResponse,
    InstallResponse,
    PlatformServiceResponse,
)

router = APIRouter(prefix="/platform", tags=["Platform"])


def _check_to_response(check: Optional[GateCheck]) -> Optional[GateCheckResponse]:
    if check is None:
        return None
    return GateCheckResponse(key=check.key, label=check.label, met=check.met)


def _gating_to_response(
    result: GatingResult,
    infrastructure_id: Optional[UUID],
    runner_id: Optional[UUID],
    service_id: Optional[str] = None,
) -> GatingResponse:
    return GatingResponse(
        infrastructure_id=infrastructure_id,
        runner_id=runner_id,
        service_id=service_id,
        checks=[_check_to_response(c) for c in result.checks],
        all_met=result.all_met,
        first_unmet=_check_to_response(result.first_unmet),
        missing=result.missing,
        can_install_prerequisites=result.can_install_prerequisites,
    )


@router.get("/gating", response_model=GatingResponse)
async def get_gating(
    db: DbSession,
    infrastructure_id: Optional[UUID] = Query(None),
    service_id: Optional[str] = Query(None, description="Evaluate the gates of one service"),
) -> GatingResponse:
    """Prerequisite checks in canonical order, with the first unmet gate."""
    snap, result = await PlatformGating(db).gating(infrastructure_id, service_id)
    return _gating_to_response(
        result,
        snap.infrastructure.id if snap.infrastructure else None,
        snap.runner.id if snap.runner else None,
        service_id,
    )


@router.get("/services", response_model=list[PlatformServiceResponse])
async def list_services(
    db: DbSession,
    infrastructure_id: Optional[UUID] = Query(None),
) -> list[PlatformServiceResponse]:
    entries = await PlatformGating(db).services(infrastructure_id)
    return [
        PlatformServiceResponse(
            service_id=entry["service"].id,
            name=entry["service"].name,
            description=entry["service"].description,
            status=entry["status"],
            required_capabilities=list(entry["service"].required_capabilities),
            verifies=entry["service"].verifies,
            install_playbooks=list(entry["service"].install_playbooks),
            last_order_id=entry["last_order"].id if entry["last_order"] else None,
            gating=_gating_to_response(
                entry["gating"],
                entry["infrastructure_id"],
                entry["runner_id"],
                entry["service"].id,
            ),
        )
        for entry in entries
    ]


@router.post(
    "/infrastructures/{infrastructure_id}/prerequisites",
    response_model=InstallResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={503: {"description": "Runner offline"}},
)
async def install_prerequisites(infrastructure_id: UUID, db: DbSession) -> InstallResponse:
    """Dispatch base packages, Docker Engine and Docker Compose."""
    orders = await PlatformGating(db).install_prerequisites(infrastructure_id)
    return InstallResponse(orders=[order_to_response(o) for o in orders])


@router.post(
    "/infrastructures/{infrastructure_id}/services/{service_id}/install",
    response_model=InstallResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        422: {"description": "A prerequisite gate is not met"},
        503: {"description": "Runner offline"},
    },
)
async def install_service(infrastructure_id: UUID, service_id: str, db: DbSession) -> InstallResponse:
    orders = await PlatformGating(db).install_service(infrastructure_id, service_id)
    return InstallResponse(orders=[order_to_response(o) for o in orders])
