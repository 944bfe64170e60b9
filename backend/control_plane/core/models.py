"""
Runner Control Plane - Database Models
======================================

SQLAlchemy models for all entities.
These define the database schema; the Alembic migration in
backend/alembic/versions must be kept in step with them.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from control_plane.core.clock import utcnow
from control_plane.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class InfrastructureType(str, enum.Enum):
    """Kind of declared server."""
    VPS = "vps"
    BARE_METAL = "bare_metal"
    CLOUD = "cloud"


class CapabilityValue(str, enum.Enum):
    """Tri-state capability fact."""
    INSTALLED = "installed"
    NOT_INSTALLED = "not_installed"
    UNKNOWN = "unknown"


class RunnerStatus(str, enum.Enum):
    """Last-known runner status hint (liveness is derived at read time)."""
    ONLINE = "online"
    OFFLINE = "offline"
    PAUSED = "paused"


class OrderStatus(str, enum.Enum):
    """Order lifecycle."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})

ACTIVE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.RUNNING})


class OrderCategory(str, enum.Enum):
    """Order category."""
    INSTALLATION = "installation"
    UPDATE = "update"
    SECURITY = "security"
    MAINTENANCE = "maintenance"
    DETECTION = "detection"


class ProxyKind(str, enum.Enum):
    """Reverse proxy flavour of a route registry."""
    CADDY = "caddy"
    NGINX = "nginx"


class HttpsStatus(str, enum.Enum):
    """HTTPS provisioning state of a route."""
    PENDING = "pending"
    PROVISIONING = "provisioning"
    OK = "ok"
    FAILED = "failed"


class RoutingType(str, enum.Enum):
    """How a domain request expands into route rows."""
    ROOT_ONLY = "root_only"
    SUBDOMAIN_ONLY = "subdomain_only"
    ROOT_AND_SUBDOMAIN = "root_and_subdomain"


class DeploymentType(str, enum.Enum):
    NODEJS = "nodejs"
    DOCKER_COMPOSE = "docker_compose"
    STATIC_SITE = "static_site"
    CUSTOM = "custom"


class DeploymentStatus(str, enum.Enum):
    """Deployment lifecycle: draft -> planning -> ready -> running -> terminal."""
    DRAFT = "draft"
    PLANNING = "planning"
    READY = "ready"
    RUNNING = "running"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeploymentStepType(str, enum.Enum):
    CLONE_REPO = "clone_repo"
    CHECKOUT = "checkout"
    ENV_WRITE = "env_write"
    INSTALL_DEPS = "install_deps"
    BUILD = "build"
    START = "start"
    HEALTHCHECK = "healthcheck"
    EXPOSE = "expose"
    FINALIZE = "finalize"
    STOP = "stop"
    ROLLBACK = "rollback"
    CUSTOM = "custom"


class DeploymentStepStatus(str, enum.Enum):
    """Step status: order terminal states (completed shown as applied) plus skipped."""
    PENDING = "pending"
    RUNNING = "running"
    APPLIED = "applied"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class HealthcheckType(str, enum.Enum):
    HTTP = "http"
    TCP = "tcp"
    COMMAND = "command"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Infrastructure & Runners
# ==========================================================================

class Infrastructure(Base, TimestampMixin):
    """
    A declared server.

    `capabilities` holds operator-declared values. `observed_capabilities`
    is written only by order reconciliation and maps a capability key to
    {"status", "observed_at", "order_id"}.
    """

    __tablename__ = "infrastructures"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    type: Mapped[InfrastructureType] = mapped_column(
        Enum(InfrastructureType),
        default=InfrastructureType.VPS,
        nullable=False,
    )

    # Hardware / OS (optional, operator-declared)
    os: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    distribution: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    architecture: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    cpu_cores: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ram_gb: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    disk_gb: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    capabilities: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    observed_capabilities: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Relationships
    runners: Mapped[list["Runner"]] = relationship(
        back_populates="infrastructure",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Infrastructure {self.name}>"


class Runner(Base, TimestampMixin):
    """
    One agent process bound to zero-or-one Infrastructure.

    `status` is a last-known hint; use liveness.derive_liveness() for truth.
    """

    __tablename__ = "runners"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )
    status: Mapped[RunnerStatus] = mapped_column(
        Enum(RunnerStatus),
        default=RunnerStatus.OFFLINE,
        nullable=False,
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    host_info: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    capabilities: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    observed_capabilities: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    infrastructure_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("infrastructures.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Relationships
    infrastructure: Mapped[Optional["Infrastructure"]] = relationship(
        back_populates="runners",
    )

    def __repr__(self) -> str:
        return f"<Runner {self.name}>"


# ==========================================================================
# Orders
# ==========================================================================

class Order(Base, TimestampMixin):
    """
    One dispatched command to one runner.

    Invariants: completed_at is set iff status is terminal; started_at is
    set iff the order has reached running.
    """

    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    runner_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("runners.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    infrastructure_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("infrastructures.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    category: Mapped[OrderCategory] = mapped_column(
        Enum(OrderCategory),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    command: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    progress: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )  # 0-100, backend-authoritative

    # Execution report
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stdout_tail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stderr_tail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    report_incomplete: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    meta: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    # Timeline
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.status.value}>"


# ==========================================================================
# Reverse Proxy Routes
# ==========================================================================

class ProxyRouteMixin:
    """Columns shared by the Caddy and Nginx route tables."""

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    infrastructure_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("infrastructures.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    domain: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    subdomain: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )  # null means the root domain
    full_domain: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )

    backend_host: Mapped[str] = mapped_column(
        String(255),
        default="localhost",
        nullable=False,
    )
    backend_port: Mapped[int] = mapped_column(
        Integer,
        default=3000,
        nullable=False,
    )
    backend_protocol: Mapped[str] = mapped_column(
        String(10),
        default="http",
        nullable=False,
    )

    https_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    https_status: Mapped[HttpsStatus] = mapped_column(
        Enum(HttpsStatus),
        default=HttpsStatus.PENDING,
        nullable=False,
        index=True,
    )
    consumed_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )  # 'supabase', 'app:<name>', 'api:<name>' or null if free
    verification_order_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )


class CaddyRoute(Base, ProxyRouteMixin, TimestampMixin):
    """Caddy reverse-proxy route."""

    __tablename__ = "caddy_routes"
    __table_args__ = (
        UniqueConstraint("infrastructure_id", "full_domain", name="uq_caddy_routes_infra_domain"),
    )

    def __repr__(self) -> str:
        return f"<CaddyRoute {self.full_domain}>"


class NginxRoute(Base, ProxyRouteMixin, TimestampMixin):
    """Nginx reverse-proxy route."""

    __tablename__ = "nginx_routes"
    __table_args__ = (
        UniqueConstraint("infrastructure_id", "full_domain", name="uq_nginx_routes_infra_domain"),
    )

    def __repr__(self) -> str:
        return f"<NginxRoute {self.full_domain}>"


ROUTE_MODELS = {
    ProxyKind.CADDY: CaddyRoute,
    ProxyKind.NGINX: NginxRoute,
}


# ==========================================================================
# Deployments
# ==========================================================================

class Deployment(Base, TimestampMixin):
    """One application rollout."""

    __tablename__ = "deployments"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    app_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    repo_url: Mapped[str] = mapped_column(
        String(2000),
        nullable=False,
    )
    branch: Mapped[str] = mapped_column(
        String(255),
        default="main",
        nullable=False,
    )
    deploy_type: Mapped[DeploymentType] = mapped_column(
        Enum(DeploymentType),
        nullable=False,
    )
    runner_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("runners.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    infrastructure_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("infrastructures.id", ondelete="SET NULL"),
        nullable=True,
    )

    status: Mapped[DeploymentStatus] = mapped_column(
        Enum(DeploymentStatus),
        default=DeploymentStatus.DRAFT,
        nullable=False,
        index=True,
    )
    current_step: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    working_dir: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    # App configuration
    port: Mapped[int] = mapped_column(
        Integer,
        default=3000,
        nullable=False,
    )
    start_command: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    build_command: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    healthcheck_type: Mapped[HealthcheckType] = mapped_column(
        Enum(HealthcheckType),
        default=HealthcheckType.HTTP,
        nullable=False,
    )
    healthcheck_value: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    env_vars: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    expose_via_caddy: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    domain: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    rolled_back_from: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deployments.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    steps: Mapped[list["DeploymentStep"]] = relationship(
        back_populates="deployment",
        order_by="DeploymentStep.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Deployment {self.app_name} {self.status.value}>"


class DeploymentStep(Base, TimestampMixin):
    """One typed, ordered unit of a deployment plan."""

    __tablename__ = "deployment_steps"
    __table_args__ = (
        UniqueConstraint("deployment_id", "step_order", name="uq_deployment_steps_order"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    deployment_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deployments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_order: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    step_type: Mapped[DeploymentStepType] = mapped_column(
        Enum(DeploymentStepType),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    command: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    order_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[DeploymentStepStatus] = mapped_column(
        Enum(DeploymentStepStatus),
        default=DeploymentStepStatus.PENDING,
        nullable=False,
    )

    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stdout_tail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stderr_tail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    deployment: Mapped["Deployment"] = relationship(
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return f"<DeploymentStep {self.step_order}:{self.step_type.value}>"
