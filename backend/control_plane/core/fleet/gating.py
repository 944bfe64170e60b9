"""
Platform Service Gating
=======================

Composed prerequisite checks that permit or block platform actions.

Checks are evaluated in a fixed order and the first unmet one is reported
alongside every missing label, so the operator knows which gate is closed.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.exceptions import (
    NoActiveRunner,
    NotFoundError,
    PlaybookCatalogError,
    ValidationError,
)
from control_plane.core.fleet.capabilities import effective_capabilities, infrastructure_view
from control_plane.core.fleet.liveness import is_online, online_runner_for
from control_plane.core.fleet.orders import OrderService
from control_plane.core.fleet.output import extract_playbook_key
from control_plane.core.fleet.playbooks import StaticPlaybookProvider, get_static_catalog
from control_plane.core.fleet.routing import https_ready
from control_plane.core.models import (
    ACTIVE_ORDER_STATUSES,
    CapabilityValue,
    Infrastructure,
    Order,
    OrderCategory,
    OrderStatus,
    Runner,
)

logger = logging.getLogger(__name__)


# ==========================================================================
# Checks
# ==========================================================================

# Evaluation order; labels are what the operator sees
GATE_LABELS: dict[str, str] = {
    "has_infra": "Infrastructure selected",
    "has_runner": "Runner associated",
    "runner_online": "Runner online",
    "docker_installed": "Docker installed",
    "docker_compose_installed": "Docker Compose installed",
    "git_installed": "Git installed",
    "caddy_verified": "Caddy installed",
    "proxy_ready": "HTTPS proxy ready",
}

BASE_GATES = ("has_infra", "has_runner", "runner_online")
DOCKER_GATES = BASE_GATES + ("docker_installed", "docker_compose_installed")

PREREQUISITE_PLAYBOOKS = (
    "system.packages.base",
    "docker.install_engine",
    "docker.install_compose",
)


@dataclass
class GateCheck:
    key: str
    label: str
    met: bool


@dataclass
class GateContext:
    """Booleans computed from stored state and runner liveness."""
    has_infra: bool = False
    has_runner: bool = False
    runner_online: bool = False
    docker_installed: bool = False
    docker_compose_installed: bool = False
    proxy_ready: bool = False
    extras: dict[str, bool] = field(default_factory=dict)

    def value(self, key: str) -> bool:
        if key in self.extras:
            return self.extras[key]
        return bool(getattr(self, key, False))


@dataclass
class GatingResult:
    checks: list[GateCheck]
    all_met: bool
    first_unmet: Optional[GateCheck]
    missing: list[str]
    can_install_prerequisites: bool


def evaluate(ctx: GateContext, gates: Iterable[str] = DOCKER_GATES) -> GatingResult:
    """AND of the requested gates, in the canonical order."""
    wanted = set(gates)
    ordered = [k for k in GATE_LABELS if k in wanted] + sorted(wanted - set(GATE_LABELS))
    checks = [GateCheck(key=k, label=GATE_LABELS.get(k, k), met=ctx.value(k)) for k in ordered]
    unmet = [c for c in checks if not c.met]
    return GatingResult(
        checks=checks,
        all_met=not unmet,
        first_unmet=unmet[0] if unmet else None,
        missing=[c.label for c in unmet],
        can_install_prerequisites=can_install_prerequisites(ctx),
    )


def can_install_prerequisites(ctx: GateContext) -> bool:
    return (
        ctx.has_infra
        and ctx.has_runner
        and ctx.runner_online
        and not (ctx.docker_installed and ctx.docker_compose_installed)
    )


# ==========================================================================
# Service Catalogue
# ==========================================================================

@dataclass(frozen=True)
class ServiceDefinition:
    id: str
    name: str
    description: str
    verifies: str
    install_playbooks: tuple[str, ...]
    gates: tuple[str, ...] = BASE_GATES
    required_capabilities: tuple[str, ...] = ()
    precheck_playbook: Optional[str] = None
    status_playbook: str = "maintenance.services.status"

    @property
    def tracked_playbooks(self) -> tuple[str, ...]:
        if self.precheck_playbook:
            return self.install_playbooks + (self.precheck_playbook,)
        return self.install_playbooks


SERVICES: dict[str, ServiceDefinition] = {
    s.id: s
    for s in (
        ServiceDefinition(
            id="caddy",
            name="Caddy",
            description="Reverse proxy with automatic HTTPS",
            verifies="caddy.installed",
            install_playbooks=("proxy.caddy.install",),
        ),
        ServiceDefinition(
            id="redis",
            name="Redis",
            description="In-memory key-value store",
            verifies="redis.installed",
            install_playbooks=("redis.install",),
            gates=DOCKER_GATES,
            required_capabilities=("docker.installed", "docker.compose.installed"),
        ),
        ServiceDefinition(
            id="prometheus",
            name="Prometheus",
            description="Metrics collection",
            verifies="prometheus.installed",
            install_playbooks=("monitor.node_exporter.install",),
            gates=DOCKER_GATES,
            required_capabilities=("docker.installed", "docker.compose.installed"),
        ),
        ServiceDefinition(
            id="supabase",
            name="Supabase",
            description="Self-hosted backend stack",
            verifies="supabase.installed",
            install_playbooks=("supabase.selfhost.pull",),
            gates=DOCKER_GATES + ("git_installed", "proxy_ready"),
            required_capabilities=("docker.installed", "docker.compose.installed", "git.installed"),
            precheck_playbook="supabase.precheck",
            status_playbook="supabase.precheck",
        ),
    )
}


def compute_service_status(
    service: ServiceDefinition,
    capabilities: dict[str, CapabilityValue],
    orders: list[Order],
    ctx: GateContext,
) -> tuple[str, Optional[Order]]:
    """
    Status of one service from capabilities and its latest order.

    `orders` must be newest first.
    """
    if not ctx.has_infra or not ctx.has_runner:
        return "not_configured", None

    if capabilities.get(service.verifies) == CapabilityValue.INSTALLED:
        return "installed", None

    last_order = next(
        (o for o in orders if extract_playbook_key(o.description) in service.tracked_playbooks),
        None,
    )
    if last_order is not None and last_order.status in ACTIVE_ORDER_STATUSES:
        return "installing", last_order
    if last_order is not None and last_order.status == OrderStatus.FAILED:
        return "failed", last_order

    if not evaluate(ctx, service.gates).all_met:
        return "precheck_failed", last_order
    return "ready_to_install", last_order


def _order_category(value: str) -> OrderCategory:
    try:
        return OrderCategory(value)
    except ValueError:
        return OrderCategory.INSTALLATION


# ==========================================================================
# Platform Gating Service
# ==========================================================================

@dataclass
class GatingSnapshot:
    context: GateContext
    infrastructure: Optional[Infrastructure]
    runner: Optional[Runner]
    capabilities: dict[str, CapabilityValue]


class PlatformGating:
    """Reads stored state into a GateContext and dispatches install orders."""

    def __init__(self, db: AsyncSession, catalog: Optional[StaticPlaybookProvider] = None):
        self.db = db
        self.catalog = catalog or get_static_catalog()

    async def snapshot(self, infrastructure_id: Optional[UUID]) -> GatingSnapshot:
        ctx = GateContext()
        infra = await self.db.get(Infrastructure, infrastructure_id) if infrastructure_id else None
        if infra is None:
            return GatingSnapshot(ctx, None, None, {})

        ctx.has_infra = True
        runner = await online_runner_for(self.db, infra.id)
        if runner is None:
            result = await self.db.execute(
                select(Runner).where(Runner.infrastructure_id == infra.id).order_by(Runner.created_at).limit(1)
            )
            runner = result.scalar_one_or_none()
        ctx.has_runner = runner is not None
        ctx.runner_online = is_online(runner)

        capabilities = effective_capabilities(await infrastructure_view(self.db, infra.id))

        def installed(key: str) -> bool:
            return capabilities.get(key) == CapabilityValue.INSTALLED

        ctx.docker_installed = installed("docker.installed")
        ctx.docker_compose_installed = installed("docker.compose.installed")
        ctx.proxy_ready = await https_ready(self.db, infra.id)
        ctx.extras = {
            "git_installed": installed("git.installed"),
            "caddy_verified": installed("caddy.installed") or installed("caddy.verified"),
        }
        return GatingSnapshot(ctx, infra, runner, capabilities)

    async def gating(self, infrastructure_id: Optional[UUID], service_id: Optional[str] = None) -> tuple[GatingSnapshot, GatingResult]:
        gates = self._service(service_id).gates if service_id else DOCKER_GATES
        snap = await self.snapshot(infrastructure_id)
        return snap, evaluate(snap.context, gates)

    async def services(self, infrastructure_id: Optional[UUID]) -> list[dict]:
        snap = await self.snapshot(infrastructure_id)
        orders = await self._recent_orders(snap.runner)
        entries = []
        for service in SERVICES.values():
            status, last_order = compute_service_status(service, snap.capabilities, orders, snap.context)
            entries.append({
                "service": service,
                "status": status,
                "last_order": last_order,
                "gating": evaluate(snap.context, service.gates),
                "infrastructure_id": snap.infrastructure.id if snap.infrastructure else None,
                "runner_id": snap.runner.id if snap.runner else None,
            })
        return entries

    async def install_prerequisites(self, infrastructure_id: UUID) -> list[Order]:
        """Dispatch base packages, Docker Engine and Docker Compose."""
        snap = await self._require_infra(infrastructure_id)
        self._raise_for_runner(snap)
        if snap.context.docker_installed and snap.context.docker_compose_installed:
            raise ValidationError("Docker and Docker Compose are already installed")
        return await self._dispatch(snap, PREREQUISITE_PLAYBOOKS, meta={"purpose": "prerequisites"})

    async def install_service(self, infrastructure_id: UUID, service_id: str) -> list[Order]:
        service = self._service(service_id)
        snap = await self._require_infra(infrastructure_id)
        result = evaluate(snap.context, service.gates)
        if not result.all_met:
            if result.first_unmet.key in ("has_runner", "runner_online"):
                self._raise_for_runner(snap)
            raise ValidationError(f"Cannot install {service.name}: {result.first_unmet.label} is not satisfied")

        orders = await self._recent_orders(snap.runner)
        status, last_order = compute_service_status(service, snap.capabilities, orders, snap.context)
        if status == "installing":
            logger.info(f"{service.name} install already in progress via order {last_order.id}")
            return [last_order]

        return await self._dispatch(snap, service.install_playbooks, meta={"service_id": service.id})

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _service(self, service_id: str) -> ServiceDefinition:
        service = SERVICES.get(service_id)
        if service is None:
            raise NotFoundError("PlatformService", service_id)
        return service

    async def _require_infra(self, infrastructure_id: UUID) -> GatingSnapshot:
        snap = await self.snapshot(infrastructure_id)
        if snap.infrastructure is None:
            raise NotFoundError("Infrastructure", infrastructure_id)
        return snap

    @staticmethod
    def _raise_for_runner(snap: GatingSnapshot) -> None:
        if not snap.context.has_runner:
            raise ValidationError(f"Cannot install: {GATE_LABELS['has_runner']} is not satisfied")
        if not snap.context.runner_online:
            raise NoActiveRunner(infrastructure_id=snap.infrastructure.id)

    async def _recent_orders(self, runner: Optional[Runner]) -> list[Order]:
        if runner is None:
            return []
        return await OrderService(self.db).list_orders(runner_id=runner.id, limit=100)

    async def _dispatch(self, snap: GatingSnapshot, playbook_keys: Iterable[str], meta: dict) -> list[Order]:
        catalog = self.catalog.by_key()
        playbooks = []
        for key in playbook_keys:
            playbook = catalog.get(key)
            if playbook is None or not playbook.command:
                raise PlaybookCatalogError(f"Playbook '{key}' has no runnable command")
            playbooks.append(playbook)

        service = OrderService(self.db)
        orders = []
        for playbook in playbooks:
            orders.append(await service.create(
                runner_id=snap.runner.id,
                infrastructure_id=snap.infrastructure.id,
                category=_order_category(playbook.category),
                name=playbook.title,
                description=f"[{playbook.key}] {playbook.description or playbook.title}",
                command=playbook.command,
                meta={**meta, "playbook_key": playbook.key},
                require_online=True,
            ))
        logger.info(f"Dispatched {len(orders)} playbook orders to runner {snap.runner.id}")
        return orders
