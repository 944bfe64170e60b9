"""
Runner Control Plane - Reverse Proxy Routes API
===============================================

Caddy and Nginx route registries share one set of endpoints, mounted
under /caddy-routes and /nginx-routes.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from control_plane.api.deps import DbSession
from control_plane.api.orders import order_to_response
from control_plane.core.fleet.routing import ProxyRoute, RouteRegistry
from control_plane.core.models import ProxyKind
from control_plane.core.schemas import (
    MessageResponse,
    ProvisioningResponse,
    RouteClaimRequest,
    RouteCreate,
    RouteResponse,
    RouteUpdate,
    VerificationResultRequest,
)


def _route_to_response(route: ProxyRoute) -> RouteResponse:
    return RouteResponse.model_validate(route)


def build_router(kind: ProxyKind) -> APIRouter:
    """Create the route endpoints for one proxy kind."""
    router = APIRouter(prefix=f"/{kind.value}-routes", tags=[f"{kind.value.capitalize()} Routes"])

    def registry(db) -> RouteRegistry:
        return RouteRegistry(db, kind)

    @router.get("", response_model=list[RouteResponse])
    async def list_routes(
        db: DbSession,
        infrastructure_id: Optional[UUID] = Query(None),
        available_only: bool = Query(False, description="Only routes not claimed by a consumer"),
        https_ready_only: bool = Query(False, description="Only routes with HTTPS ok"),
        consumed_by: Optional[str] = Query(None),
    ) -> list[RouteResponse]:
        routes = await registry(db).list_routes(
            infrastructure_id=infrastructure_id,
            available_only=available_only,
            https_ready_only=https_ready_only,
            consumed_by=consumed_by,
        )
        return [_route_to_response(r) for r in routes]

    @router.get("/{route_id}", response_model=RouteResponse)
    async def get_route(route_id: UUID, db: DbSession) -> RouteResponse:
        return _route_to_response(await registry(db).get(route_id))

    @router.post(
        "",
        response_model=list[RouteResponse],
        status_code=status.HTTP_201_CREATED,
        responses={422: {"description": "Invalid domain, backend or duplicate full domain"}},
    )
    async def create_routes(data: RouteCreate, db: DbSession) -> list[RouteResponse]:
        """
        Create one route, or expand routing_type into several.

        Without routing_type a single row is created for domain/subdomain.
        """
        backend = dict(
            backend_host=data.backend_host,
            backend_port=data.backend_port,
            backend_protocol=data.backend_protocol,
            https_enabled=data.https_enabled,
            consumed_by=data.consumed_by,
            notes=data.notes,
        )
        routes: list[ProxyRoute]
        if data.routing_type is None:
            routes = [await registry(db).create_route(data.infrastructure_id, data.domain, data.subdomain, **backend)]
        else:
            routes = await registry(db).create_routes(
                data.infrastructure_id, data.routing_type, data.domain, data.subdomain, **backend
            )
        return [_route_to_response(r) for r in routes]

    @router.patch("/{route_id}", response_model=RouteResponse)
    async def update_route(route_id: UUID, data: RouteUpdate, db: DbSession) -> RouteResponse:
        route = await registry(db).update_route(route_id, **data.model_dump(exclude_unset=True))
        return _route_to_response(route)

    @router.delete(
        "/{route_id}",
        response_model=MessageResponse,
        responses={409: {"description": "Route is claimed by a consumer"}},
    )
    async def delete_route(route_id: UUID, db: DbSession) -> MessageResponse:
        await registry(db).delete_route(route_id)
        return MessageResponse(message=f"Route {route_id} deleted")

    @router.post(
        "/{route_id}/provision",
        response_model=ProvisioningResponse,
        responses={
            409: {"description": "HTTPS already ok"},
            503: {"description": "No online runner for the infrastructure"},
        },
    )
    async def request_provisioning(route_id: UUID, db: DbSession) -> ProvisioningResponse:
        """Dispatch (or return the outstanding) verification order."""
        route, order = await registry(db).request_provisioning(route_id)
        return ProvisioningResponse(route=_route_to_response(route), order=order_to_response(order))

    @router.post(
        "/{route_id}/verification",
        response_model=RouteResponse,
        responses={409: {"description": "Route is not provisioning"}},
    )
    async def record_verification(route_id: UUID, data: VerificationResultRequest, db: DbSession) -> RouteResponse:
        route = await registry(db).on_verification_result(route_id, data.succeeded)
        return _route_to_response(route)

    @router.post(
        "/{route_id}/claim",
        response_model=RouteResponse,
        responses={409: {"description": "Route is claimed by another consumer"}},
    )
    async def claim_route(route_id: UUID, data: RouteClaimRequest, db: DbSession) -> RouteResponse:
        return _route_to_response(await registry(db).claim(route_id, data.consumer))

    @router.post("/{route_id}/release", response_model=RouteResponse)
    async def release_route(route_id: UUID, db: DbSession) -> RouteResponse:
        return _route_to_response(await registry(db).release(route_id))

    return router


caddy_router = build_router(ProxyKind.CADDY)
nginx_router = build_router(ProxyKind.NGINX)
