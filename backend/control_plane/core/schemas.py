"""
Runner Control Plane - Pydantic Schemas
=======================================

Request and response schemas for API validation.
These define the API contract for operators and runner agents.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from control_plane.core.models import (
    CapabilityValue,
    DeploymentStatus,
    DeploymentStepStatus,
    DeploymentStepType,
    DeploymentType,
    HealthcheckType,
    HttpsStatus,
    InfrastructureType,
    OrderCategory,
    OrderStatus,
    RoutingType,
    RunnerStatus,
)


# Declared capability keys that hold free-form text rather than a tri-state value
FREE_FORM_CAPABILITY_KEYS = frozenset({"provider", "location"})


def _check_declared_capabilities(value: dict[str, Any]) -> dict[str, Any]:
    for key, item in value.items():
        if key in FREE_FORM_CAPABILITY_KEYS:
            continue
        try:
            CapabilityValue(item)
        except ValueError as e:
            raise ValueError(
                f"Capability '{key}' must be one of installed, not_installed, unknown"
            ) from e
    return value


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Infrastructure Schemas
# ==========================================================================

class InfrastructureCreate(BaseSchema):
    """Schema for declaring a server."""

    name: str = Field(min_length=1, max_length=255)
    type: InfrastructureType = InfrastructureType.VPS
    os: Optional[str] = Field(None, max_length=100)
    distribution: Optional[str] = Field(None, max_length=100)
    architecture: Optional[str] = Field(None, max_length=50)
    cpu_cores: Optional[int] = Field(None, ge=1)
    ram_gb: Optional[int] = Field(None, ge=0)
    disk_gb: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
    capabilities: dict[str, Any] = Field(default_factory=dict)

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, v: dict[str, Any]) -> dict[str, Any]:
        return _check_declared_capabilities(v)


class InfrastructureUpdate(BaseSchema):
    """Schema for editing a server. Omitted fields are left unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[InfrastructureType] = None
    os: Optional[str] = Field(None, max_length=100)
    distribution: Optional[str] = Field(None, max_length=100)
    architecture: Optional[str] = Field(None, max_length=50)
    cpu_cores: Optional[int] = Field(None, ge=1)
    ram_gb: Optional[int] = Field(None, ge=0)
    disk_gb: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
    capabilities: Optional[dict[str, Any]] = None

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, v: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        if v is None:
            return v
        return _check_declared_capabilities(v)


class InfrastructureResponse(TimestampSchema):
    """Declared server in responses."""

    id: UUID
    name: str
    type: InfrastructureType
    os: Optional[str] = None
    distribution: Optional[str] = None
    architecture: Optional[str] = None
    cpu_cores: Optional[int] = None
    ram_gb: Optional[int] = None
    disk_gb: Optional[int] = None
    notes: Optional[str] = None
    capabilities: dict[str, Any]
    observed_capabilities: dict[str, Any]


# ==========================================================================
# Runner Schemas
# ==========================================================================

class RunnerRegisterRequest(BaseSchema):
    """Agent registration payload (upsert by name)."""

    name: str = Field(min_length=1, max_length=255)
    token: str = Field(min_length=8, max_length=512)
    host_info: dict[str, Any] = Field(default_factory=dict)
    capabilities: dict[str, Any] = Field(default_factory=dict)


class RunnerRegisterResponse(BaseSchema):
    runner_id: UUID


class HeartbeatResponse(BaseSchema):
    runner_id: UUID
    status: RunnerStatus
    last_seen_at: datetime


class RunnerResponse(TimestampSchema):
    """Runner with read-time liveness."""

    id: UUID
    name: str
    status: RunnerStatus
    liveness: RunnerStatus
    last_seen_at: Optional[datetime] = None
    host_info: dict[str, Any]
    capabilities: dict[str, Any]
    observed_capabilities: dict[str, Any]
    infrastructure_id: Optional[UUID] = None


class RunnerAssociateRequest(BaseSchema):
    """Bind a runner to an infrastructure, or unbind with null."""

    infrastructure_id: Optional[UUID] = None


class RunnerStatusUpdate(BaseSchema):
    status: RunnerStatus


# ==========================================================================
# Order Schemas
# ==========================================================================

class OrderCreate(BaseSchema):
    """Operator request to dispatch a command to a runner."""

    runner_id: UUID
    category: OrderCategory
    name: str = Field(min_length=1, max_length=500)
    command: str
    description: Optional[str] = None
    infrastructure_id: Optional[UUID] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    require_online: bool = False


class OrderReport(BaseSchema):
    """Execution report sent by a runner."""

    order_id: UUID
    status: str
    progress: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    stdout_tail: Optional[str] = None
    stderr_tail: Optional[str] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    meta: Optional[dict[str, Any]] = None


class OrderResponse(TimestampSchema):
    """Order in responses."""

    id: UUID
    runner_id: UUID
    infrastructure_id: Optional[UUID] = None
    category: OrderCategory
    name: str
    description: Optional[str] = None
    command: str
    status: OrderStatus
    progress: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    stdout_tail: Optional[str] = None
    stderr_tail: Optional[str] = None
    report_incomplete: bool
    meta: dict[str, Any]
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PollResponse(BaseSchema):
    runner_id: UUID
    orders: list[OrderResponse]


# ==========================================================================
# Capability Schemas
# ==========================================================================

class CapabilityStatusResponse(BaseSchema):
    """Reconciled value of one capability."""

    key: str
    value: CapabilityValue
    source: str  # declared | observed
    observed_at: Optional[datetime] = None
    stale: bool = False


class CapabilityViewResponse(BaseSchema):
    target_type: str  # infrastructure | runner
    target_id: UUID
    capabilities: list[CapabilityStatusResponse]


class InstalledCapabilityResponse(BaseSchema):
    playbook_key: str
    title: str
    group: str
    status: str  # active | stale | failed
    version: Optional[str] = None
    order_id: UUID
    completed_at: Optional[datetime] = None


class InstalledSummaryResponse(BaseSchema):
    total: int
    active: int
    stale: int
    failed: int
    by_group: dict[str, list[InstalledCapabilityResponse]]


# ==========================================================================
# Route Schemas
# ==========================================================================

class RouteCreate(BaseSchema):
    """Request to register one or two reverse-proxy routes."""

    infrastructure_id: UUID
    domain: str = Field(min_length=1, max_length=255)
    subdomain: Optional[str] = Field(None, max_length=255)
    routing_type: Optional[RoutingType] = None
    backend_host: str = "localhost"
    backend_port: int = 3000
    backend_protocol: str = "http"
    https_enabled: bool = True
    consumed_by: Optional[str] = None
    notes: Optional[str] = None


class RouteUpdate(BaseSchema):
    backend_host: Optional[str] = None
    backend_port: Optional[int] = None
    backend_protocol: Optional[str] = None
    https_enabled: Optional[bool] = None
    notes: Optional[str] = None


class RouteResponse(TimestampSchema):
    id: UUID
    infrastructure_id: UUID
    domain: str
    subdomain: Optional[str] = None
    full_domain: str
    backend_host: str
    backend_port: int
    backend_protocol: str
    https_enabled: bool
    https_status: HttpsStatus
    consumed_by: Optional[str] = None
    verification_order_id: Optional[UUID] = None
    notes: Optional[str] = None


class RouteClaimRequest(BaseSchema):
    consumer: str = Field(min_length=1, max_length=255)


class VerificationResultRequest(BaseSchema):
    succeeded: bool


class ProvisioningResponse(BaseSchema):
    route: RouteResponse
    order: OrderResponse


# ==========================================================================
# Platform Schemas
# ==========================================================================

class GateCheckResponse(BaseSchema):
    key: str
    label: str
    met: bool


class GatingResponse(BaseSchema):
    """Composed prerequisite checks for a platform action."""

    infrastructure_id: Optional[UUID] = None
    runner_id: Optional[UUID] = None
    service_id: Optional[str] = None
    checks: list[GateCheckResponse]
    all_met: bool
    first_unmet: Optional[GateCheckResponse] = None
    missing: list[str]
    can_install_prerequisites: bool


class PlatformServiceResponse(BaseSchema):
    service_id: str
    name: str
    description: str
    status: str
    required_capabilities: list[str]
    verifies: str
    install_playbooks: list[str]
    last_order_id: Optional[UUID] = None
    gating: GatingResponse


class InstallResponse(BaseSchema):
    orders: list[OrderResponse]


# ==========================================================================
# Deployment Schemas
# ==========================================================================

class DeploymentCreate(BaseSchema):
    """Request to plan an application rollout."""

    app_name: str = Field(min_length=1, max_length=255, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    repo_url: str = Field(min_length=1, max_length=2000)
    branch: str = Field("main", min_length=1, max_length=255)
    deploy_type: DeploymentType
    runner_id: UUID
    infrastructure_id: Optional[UUID] = None
    port: int = 3000
    start_command: Optional[str] = None
    build_command: Optional[str] = None
    healthcheck_type: HealthcheckType = HealthcheckType.HTTP
    healthcheck_value: Optional[str] = None
    env_vars: dict[str, str] = Field(default_factory=dict)
    expose_via_caddy: bool = False
    domain: Optional[str] = None


class StepDraftResponse(BaseSchema):
    step_order: int
    step_type: DeploymentStepType
    step_name: str
    command: str


class DeploymentStepResponse(TimestampSchema):
    id: UUID
    deployment_id: UUID
    step_order: int
    step_type: DeploymentStepType
    step_name: str
    command: str
    order_id: Optional[UUID] = None
    status: DeploymentStepStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    stdout_tail: Optional[str] = None
    stderr_tail: Optional[str] = None
    exit_code: Optional[int] = None


class DeploymentResponse(TimestampSchema):
    id: UUID
    app_name: str
    repo_url: str
    branch: str
    deploy_type: DeploymentType
    runner_id: UUID
    infrastructure_id: Optional[UUID] = None
    status: DeploymentStatus
    current_step: Optional[str] = None
    working_dir: Optional[str] = None
    port: int
    start_command: Optional[str] = None
    build_command: Optional[str] = None
    healthcheck_type: HealthcheckType
    healthcheck_value: Optional[str] = None
    env_vars: dict[str, str]
    expose_via_caddy: bool
    domain: Optional[str] = None
    rolled_back_from: Optional[UUID] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: list[DeploymentStepResponse] = []


# ==========================================================================
# Playbook Schemas
# ==========================================================================

class PlaybookResponse(BaseSchema):
    key: str
    version: str
    title: str
    description: str = ""
    visibility: str = "public"
    actions: list[str] = []
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="schema")
    group: str = "other"
    verifies: list[str] = []


# ==========================================================================
# Common Schemas
# ==========================================================================

class MessageResponse(BaseSchema):
    """Simple message response."""

    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
