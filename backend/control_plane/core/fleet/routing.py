"""
Domain Routing Registry
=======================

Reverse-proxy route records for Caddy and Nginx.

https_status: pending -> provisioning -> {ok, failed}, failed -> provisioning.

A route has at most one active verification order; a second provisioning
request while one is outstanding returns the outstanding order. A route
claimed by a consumer cannot be deleted or claimed by another consumer.
"""

import logging
import re
import shlex
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.exceptions import (
    InvalidTransition,
    NoActiveRunner,
    NotFoundError,
    RouteInUse,
    ValidationError,
)
from control_plane.core.fleet.liveness import online_runner_for
from control_plane.core.fleet.locks import route_locks
from control_plane.core.fleet.orders import OrderService
from control_plane.core.fleet.output import parse_https_status
from control_plane.core.models import (
    ACTIVE_ORDER_STATUSES,
    ROUTE_MODELS,
    CaddyRoute,
    HttpsStatus,
    Infrastructure,
    NginxRoute,
    Order,
    OrderCategory,
    OrderStatus,
    ProxyKind,
    RoutingType,
)

logger = logging.getLogger(__name__)

ProxyRoute = Union[CaddyRoute, NginxRoute]

_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
DOMAIN_PATTERN = re.compile(rf"^{_LABEL}(\.{_LABEL})+$")
SUBDOMAIN_PATTERN = re.compile(rf"^{_LABEL}(\.{_LABEL})*$")
CONSUMER_PATTERN = re.compile(r"^(supabase|(app|api):[A-Za-z0-9][A-Za-z0-9._-]*)$")
BACKEND_PROTOCOLS = ("http", "https")


# ==========================================================================
# Validation
# ==========================================================================

def normalize_domain(value: str) -> str:
    domain = (value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    return domain.rstrip("/").rstrip(".")


def compute_full_domain(domain: str, subdomain: Optional[str]) -> str:
    return f"{subdomain}.{domain}" if subdomain else domain


def validate_backend(port: int, protocol: str) -> None:
    if not 1 <= int(port) <= 65535:
        raise ValidationError(f"Backend port must be between 1 and 65535, got {port}")
    if protocol not in BACKEND_PROTOCOLS:
        raise ValidationError(f"Backend protocol must be http or https, got '{protocol}'")


def validate_consumer(consumer: str) -> str:
    consumer = (consumer or "").strip()
    if not CONSUMER_PATTERN.match(consumer):
        raise ValidationError(
            f"Consumer must be 'supabase', 'app:<name>' or 'api:<name>', got '{consumer}'"
        )
    return consumer


def expand_routing_type(
    routing_type: RoutingType,
    subdomain: Optional[str],
) -> list[Optional[str]]:
    """Subdomains to create for a routing type; None stands for the root."""
    if routing_type == RoutingType.ROOT_ONLY:
        return [None]
    if not subdomain:
        raise ValidationError(f"Routing type '{routing_type.value}' requires a subdomain")
    if routing_type == RoutingType.SUBDOMAIN_ONLY:
        return [subdomain]
    return [None, subdomain]


# ==========================================================================
# Verification Commands
# ==========================================================================

def build_verification_command(kind: ProxyKind, route: ProxyRoute) -> str:
    """Configure script for one route. Prints HTTPS_STATUS=ok|provisioning."""
    domain = shlex.quote(route.full_domain)
    backend = shlex.quote(f"{route.backend_protocol}://{route.backend_host}:{route.backend_port}")

    if kind == ProxyKind.CADDY:
        configure = f"""command -v caddy >/dev/null 2>&1 || {{ echo "caddy is not installed" >&2; exit 1; }}
mkdir -p /var/log/caddy
sed -i "/^$DOMAIN {{/,/^}}/d" /etc/caddy/Caddyfile 2>/dev/null || true
cat >> /etc/caddy/Caddyfile <<EOF

$DOMAIN {{
  reverse_proxy $BACKEND
  encode gzip
}}
EOF
caddy validate --config /etc/caddy/Caddyfile
systemctl reload caddy"""
    else:
        configure = f"""command -v nginx >/dev/null 2>&1 || {{ echo "nginx is not installed" >&2; exit 1; }}
cat > /etc/nginx/sites-available/$DOMAIN <<EOF
server {{
  listen 80;
  server_name $DOMAIN;
  location / {{ proxy_pass $BACKEND; proxy_set_header Host \\$host; }}
}}
EOF
ln -sf /etc/nginx/sites-available/$DOMAIN /etc/nginx/sites-enabled/$DOMAIN
nginx -t
systemctl reload nginx"""
        if route.https_enabled:
            configure += "\ncertbot --nginx -d \"$DOMAIN\" --non-interactive --agree-tos --register-unsafely-without-email || true"

    return f"""#!/bin/bash
set -e
DOMAIN={domain}
BACKEND={backend}
{configure}
sleep 10
if curl -sf -o /dev/null "https://$DOMAIN"; then
  echo "HTTPS_STATUS=ok"
else
  echo "HTTPS_STATUS=provisioning"
fi
"""


# ==========================================================================
# Registry
# ==========================================================================

class RouteRegistry:
    """Route CRUD, HTTPS provisioning and consumer claims for one proxy kind."""

    def __init__(self, db: AsyncSession, kind: Union[str, ProxyKind] = ProxyKind.CADDY):
        self.db = db
        self.kind = ProxyKind(kind)
        self.model = ROUTE_MODELS[self.kind]

    @property
    def entity(self) -> str:
        return f"{self.kind.value.capitalize()}Route"

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get(self, route_id: UUID) -> ProxyRoute:
        route = await self.db.get(self.model, route_id)
        if route is None:
            raise NotFoundError(self.entity, route_id)
        return route

    async def list_routes(
        self,
        infrastructure_id: Optional[UUID] = None,
        available_only: bool = False,
        https_ready_only: bool = False,
        consumed_by: Optional[str] = None,
    ) -> list[ProxyRoute]:
        query = select(self.model).order_by(self.model.full_domain)
        if infrastructure_id:
            query = query.where(self.model.infrastructure_id == infrastructure_id)
        if available_only:
            query = query.where(self.model.consumed_by.is_(None))
        if https_ready_only:
            query = query.where(self.model.https_status == HttpsStatus.OK)
        if consumed_by:
            query = query.where(self.model.consumed_by == consumed_by)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ==========================================================================
    # Creation
    # ==========================================================================

    async def create_route(
        self,
        infrastructure_id: UUID,
        domain: str,
        subdomain: Optional[str] = None,
        backend_host: str = "localhost",
        backend_port: int = 3000,
        backend_protocol: str = "http",
        https_enabled: bool = True,
        consumed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ProxyRoute:
        routes = await self._create_many(
            infrastructure_id,
            domain,
            [subdomain or None],
            backend_host=backend_host,
            backend_port=backend_port,
            backend_protocol=backend_protocol,
            https_enabled=https_enabled,
            consumed_by=consumed_by,
            notes=notes,
        )
        return routes[0]

    async def create_routes(
        self,
        infrastructure_id: UUID,
        routing_type: Union[str, RoutingType],
        domain: str,
        subdomain: Optional[str] = None,
        **backend,
    ) -> list[ProxyRoute]:
        """
        Expand a routing type into independent route rows.

        root_and_subdomain yields the root row first, then the subdomain row;
        each has its own provisioning lifecycle.
        """
        try:
            routing_type = RoutingType(routing_type)
        except ValueError as e:
            raise ValidationError(f"Unknown routing type '{routing_type}'") from e
        subdomains = expand_routing_type(routing_type, subdomain)
        return await self._create_many(infrastructure_id, domain, subdomains, **backend)

    async def _create_many(
        self,
        infrastructure_id: UUID,
        domain: str,
        subdomains: list[Optional[str]],
        backend_host: str = "localhost",
        backend_port: int = 3000,
        backend_protocol: str = "http",
        https_enabled: bool = True,
        consumed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> list[ProxyRoute]:
        """Validate every row, then write them all in one transaction."""
        if await self.db.get(Infrastructure, infrastructure_id) is None:
            raise ValidationError(f"Infrastructure {infrastructure_id} does not exist")

        domain = normalize_domain(domain)
        if not DOMAIN_PATTERN.match(domain):
            raise ValidationError(f"Invalid domain '{domain}'")
        validate_backend(backend_port, backend_protocol)
        if consumed_by is not None:
            consumed_by = validate_consumer(consumed_by)

        planned = []
        for sub in subdomains:
            if sub is not None:
                sub = normalize_domain(sub)
                if not SUBDOMAIN_PATTERN.match(sub):
                    raise ValidationError(f"Invalid subdomain '{sub}'")
            full_domain = compute_full_domain(domain, sub)
            if full_domain in {fd for _, fd in planned}:
                raise ValidationError(f"Duplicate domain {full_domain} in request")
            planned.append((sub, full_domain))

        existing = await self.db.execute(
            select(self.model.full_domain).where(
                self.model.infrastructure_id == infrastructure_id,
                self.model.full_domain.in_([fd for _, fd in planned]),
            )
        )
        taken = sorted(existing.scalars().all())
        if taken:
            raise ValidationError(f"Route already exists for {', '.join(taken)}")

        routes = [
            self.model(
                infrastructure_id=infrastructure_id,
                domain=domain,
                subdomain=sub,
                full_domain=full_domain,
                backend_host=backend_host.strip() or "localhost",
                backend_port=int(backend_port),
                backend_protocol=backend_protocol,
                https_enabled=https_enabled,
                https_status=HttpsStatus.PENDING,
                consumed_by=consumed_by,
                notes=notes,
            )
            for sub, full_domain in planned
        ]
        self.db.add_all(routes)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationError(f"Route already exists for {domain}") from e

        for route in routes:
            await self.db.refresh(route)
        logger.info(f"Created {self.kind.value} routes: {', '.join(fd for _, fd in planned)}")
        return routes

    async def update_route(
        self,
        route_id: UUID,
        backend_host: Optional[str] = None,
        backend_port: Optional[int] = None,
        backend_protocol: Optional[str] = None,
        https_enabled: Optional[bool] = None,
        notes: Optional[str] = None,
    ) -> ProxyRoute:
        async with route_locks(route_id):
            route = await self.get(route_id)
            validate_backend(
                backend_port if backend_port is not None else route.backend_port,
                backend_protocol if backend_protocol is not None else route.backend_protocol,
            )
            if backend_host is not None:
                route.backend_host = backend_host
            if backend_port is not None:
                route.backend_port = backend_port
            if backend_protocol is not None:
                route.backend_protocol = backend_protocol
            if https_enabled is not None:
                route.https_enabled = https_enabled
            if notes is not None:
                route.notes = notes
            await self.db.commit()
            await self.db.refresh(route)
        return route

    # ==========================================================================
    # HTTPS Provisioning
    # ==========================================================================

    async def request_provisioning(self, route_id: UUID) -> tuple[ProxyRoute, Order]:
        """
        Dispatch a verification order and move the route to provisioning.

        Returns the outstanding order instead of dispatching a second one.
        """
        async with route_locks(route_id):
            route = await self.get(route_id)
            if route.https_status == HttpsStatus.OK:
                raise InvalidTransition(self.entity, route_id, route.https_status.value, HttpsStatus.PROVISIONING.value)

            if route.verification_order_id is not None:
                outstanding = await self.db.get(Order, route.verification_order_id)
                if outstanding is not None and outstanding.status in ACTIVE_ORDER_STATUSES:
                    logger.info(f"Coalesced provisioning request for {route.full_domain} into order {outstanding.id}")
                    return route, outstanding

            runner = await online_runner_for(self.db, route.infrastructure_id)
            if runner is None:
                raise NoActiveRunner(infrastructure_id=route.infrastructure_id)

            order = await OrderService(self.db).create(
                runner_id=runner.id,
                infrastructure_id=route.infrastructure_id,
                category=OrderCategory.INSTALLATION,
                name=f"{self.kind.value.capitalize()}: configure {route.full_domain}",
                description=f"[proxy.{self.kind.value}.configure] Reverse proxy for {route.full_domain}",
                command=build_verification_command(self.kind, route),
                meta={"route_id": str(route.id), "proxy_kind": self.kind.value},
            )

            route.https_status = HttpsStatus.PROVISIONING
            route.verification_order_id = order.id
            await self.db.commit()
            await self.db.refresh(route)

        logger.info(f"Provisioning {route.full_domain} via order {order.id}")
        return route, order

    async def on_verification_result(self, route_id: UUID, succeeded: bool) -> ProxyRoute:
        async with route_locks(route_id):
            route = await self.get(route_id)
            target = HttpsStatus.OK if succeeded else HttpsStatus.FAILED
            if route.https_status != HttpsStatus.PROVISIONING:
                raise InvalidTransition(self.entity, route_id, route.https_status.value, target.value)
            route.https_status = target
            route.verification_order_id = None
            await self.db.commit()
            await self.db.refresh(route)

        logger.info(f"Route {route.full_domain} HTTPS {target.value}")
        return route

    async def apply_verification_order(self, order: Order) -> Optional[ProxyRoute]:
        """
        Fold a finished verification order into its route.

        HTTPS_STATUS=ok (or https_ready) -> ok; failed order -> failed;
        provisioning marker, missing marker or cancelled order -> the route
        stays provisioning with the outstanding link cleared.
        """
        route_id = (order.meta or {}).get("route_id")
        if not route_id or not order.status.is_terminal:
            return None

        async with route_locks(route_id):
            route = await self.db.get(self.model, UUID(str(route_id)))
            if route is None:
                logger.warning(f"Verification order {order.id} references missing route {route_id}")
                return None
            if route.verification_order_id != order.id:
                logger.info(f"Ignoring superseded verification order {order.id} for {route.full_domain}")
                return route

            route.verification_order_id = None
            if route.https_status == HttpsStatus.PROVISIONING:
                if order.status == OrderStatus.FAILED:
                    route.https_status = HttpsStatus.FAILED
                elif order.status == OrderStatus.COMPLETED:
                    verdict = parse_https_status(order.stdout_tail)
                    if verdict == "ok":
                        route.https_status = HttpsStatus.OK
                    elif verdict == "failed":
                        route.https_status = HttpsStatus.FAILED

            await self.db.commit()
            await self.db.refresh(route)

        logger.info(f"Verification order {order.id} applied: {route.full_domain} is {route.https_status.value}")
        return route

    # ==========================================================================
    # Claims
    # ==========================================================================

    async def claim(self, route_id: UUID, consumer: str) -> ProxyRoute:
        consumer = validate_consumer(consumer)
        async with route_locks(route_id):
            route = await self.get(route_id)
            if route.consumed_by and route.consumed_by != consumer:
                raise RouteInUse(route.full_domain, route.consumed_by)
            route.consumed_by = consumer
            await self.db.commit()
            await self.db.refresh(route)
        logger.info(f"Route {route.full_domain} claimed by {consumer}")
        return route

    async def release(self, route_id: UUID) -> ProxyRoute:
        async with route_locks(route_id):
            route = await self.get(route_id)
            route.consumed_by = None
            await self.db.commit()
            await self.db.refresh(route)
        logger.info(f"Route {route.full_domain} released")
        return route

    async def delete_route(self, route_id: UUID) -> None:
        async with route_locks(route_id):
            route = await self.get(route_id)
            if route.consumed_by:
                raise RouteInUse(route.full_domain, route.consumed_by)
            await self.db.delete(route)
            await self.db.commit()
        route_locks.discard(route_id)
        logger.info(f"Deleted {self.kind.value} route {route_id}")


async def https_ready(db: AsyncSession, infrastructure_id: UUID) -> bool:
    """True when any Caddy or Nginx route of the infrastructure has HTTPS ok."""
    for model in (CaddyRoute, NginxRoute):
        result = await db.execute(
            select(model.id).where(
                model.infrastructure_id == infrastructure_id,
                model.https_status == HttpsStatus.OK,
            ).limit(1)
        )
        if result.first() is not None:
            return True
    return False
