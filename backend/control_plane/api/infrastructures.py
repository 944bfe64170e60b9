"""
Runner Control Plane - Infrastructure API
=========================================

Operator-declared servers.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Query, status
from sqlalchemy import delete, select, update

from control_plane.api.deps import DbSession
from control_plane.core.exceptions import NotFoundError, RouteInUse
from control_plane.core.models import (
    CaddyRoute,
    Deployment,
    Infrastructure,
    InfrastructureType,
    NginxRoute,
    Order,
    Runner,
)
from control_plane.core.schemas import (
    InfrastructureCreate,
    InfrastructureResponse,
    InfrastructureUpdate,
    MessageResponse,
)

router = APIRouter(prefix="/infrastructures", tags=["Infrastructure"])

logger = structlog.get_logger()


# ==========================================================================
# Helper Functions
# ==========================================================================

async def get_infrastructure_or_404(infrastructure_id: UUID, db) -> Infrastructure:
    """Get infrastructure by ID or raise NotFoundError."""
    infra = await db.get(Infrastructure, infrastructure_id)
    if infra is None:
        raise NotFoundError("Infrastructure", infrastructure_id)
    return infra


# ==========================================================================
# Infrastructure CRUD
# ==========================================================================

@router.get(
    "",
    response_model=list[InfrastructureResponse],
    summary="List infrastructures",
)
async def list_infrastructures(
    db: DbSession,
    type_filter: Optional[InfrastructureType] = Query(None, alias="type", description="Filter by type"),
) -> list[InfrastructureResponse]:
    query = select(Infrastructure).order_by(Infrastructure.name)
    if type_filter:
        query = query.where(Infrastructure.type == type_filter)
    result = await db.execute(query)
    return [InfrastructureResponse.model_validate(i) for i in result.scalars().all()]


@router.get(
    "/{infrastructure_id}",
    response_model=InfrastructureResponse,
    summary="Get infrastructure",
    responses={404: {"description": "Infrastructure not found"}},
)
async def get_infrastructure(infrastructure_id: UUID, db: DbSession) -> InfrastructureResponse:
    infra = await get_infrastructure_or_404(infrastructure_id, db)
    return InfrastructureResponse.model_validate(infra)


@router.post(
    "",
    response_model=InfrastructureResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create infrastructure",
)
async def create_infrastructure(data: InfrastructureCreate, db: DbSession) -> InfrastructureResponse:
    infra = Infrastructure(
        name=data.name,
        type=data.type,
        os=data.os,
        distribution=data.distribution,
        architecture=data.architecture,
        cpu_cores=data.cpu_cores,
        ram_gb=data.ram_gb,
        disk_gb=data.disk_gb,
        notes=data.notes,
        capabilities=dict(data.capabilities),
        observed_capabilities={},
    )
    db.add(infra)
    await db.commit()
    await db.refresh(infra)

    logger.info("infrastructure_created", infrastructure_id=str(infra.id), name=infra.name)
    return InfrastructureResponse.model_validate(infra)


@router.patch(
    "/{infrastructure_id}",
    response_model=InfrastructureResponse,
    summary="Update infrastructure",
    responses={404: {"description": "Infrastructure not found"}},
)
async def update_infrastructure(
    infrastructure_id: UUID,
    data: InfrastructureUpdate,
    db: DbSession,
) -> InfrastructureResponse:
    """
    Update declared fields. Declared capabilities are replaced as a whole;
    observed capabilities are never written here.
    """
    infra = await get_infrastructure_or_404(infrastructure_id, db)

    for field, value in data.model_dump(exclude_unset=True).items():
        if field == "capabilities":
            value = dict(value or {})
        setattr(infra, field, value)

    await db.commit()
    await db.refresh(infra)
    return InfrastructureResponse.model_validate(infra)


@router.delete(
    "/{infrastructure_id}",
    response_model=MessageResponse,
    summary="Delete infrastructure",
    responses={
        404: {"description": "Infrastructure not found"},
        409: {"description": "A route of the infrastructure is claimed"},
    },
)
async def delete_infrastructure(infrastructure_id: UUID, db: DbSession) -> MessageResponse:
    """
    Delete an infrastructure and its routes.

    Refused with RouteInUse while any of its routes is claimed. Runners, orders and deployments survive with the association cleared.
    """
    infra = await get_infrastructure_or_404(infrastructure_id, db)

    for route_model in (CaddyRoute, NginxRoute):
        claimed = await db.execute(
            select(route_model)
            .where(route_model.infrastructure_id == infrastructure_id)
            .where(route_model.consumed_by.is_not(None))
            .limit(1)
        )
        route = claimed.scalar_one_or_none()
        if route is not None:
            raise RouteInUse(route.full_domain, route.consumed_by)

    for model in (Runner, Order, Deployment):
        await db.execute(
            update(model)
            .where(model.infrastructure_id == infrastructure_id)
            .values(infrastructure_id=None)
        )
    for route_model in (CaddyRoute, NginxRoute):
        await db.execute(
            delete(route_model)
            .where(route_model.infrastructure_id == infrastructure_id)
        )

    await db.delete(infra)
    await db.commit()

    logger.info("infrastructure_deleted", infrastructure_id=str(infrastructure_id))
    return MessageResponse(message=f"Infrastructure {infra.name} deleted")
