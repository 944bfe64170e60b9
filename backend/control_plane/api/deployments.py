"""
Runner Control Plane - Deployments API
======================================

Deployment planning, execution and rollback.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from control_plane.api.deps import Channel, DbSession
from control_plane.core.fleet.deployments import DeploymentExecutor
from control_plane.core.fleet.planner import DeploymentInput, StepDraft, generate_steps
from control_plane.core.models import Deployment, DeploymentStatus
from control_plane.core.schemas import (
    DeploymentCreate,
    DeploymentResponse,
    MessageResponse,
    StepDraftResponse,
)

router = APIRouter(prefix="/deployments", tags=["Deployments"])


def _input_from_request(data: DeploymentCreate) -> DeploymentInput:
    return DeploymentInput(
        app_name=data.app_name,
        repo_url=data.repo_url,
        branch=data.branch,
        deploy_type=data.deploy_type,
        port=data.port,
        start_command=data.start_command,
        build_command=data.build_command,
        healthcheck_type=data.healthcheck_type,
        healthcheck_value=data.healthcheck_value,
        env_vars=dict(data.env_vars),
        expose_via_caddy=data.expose_via_caddy,
        domain=data.domain,
    )


def _draft_to_response(draft: StepDraft) -> StepDraftResponse:
    return StepDraftResponse(
        step_order=draft.step_order,
        step_type=draft.step_type,
        step_name=draft.step_name,
        command=draft.command,
    )


def _deployment_to_response(deployment: Deployment) -> DeploymentResponse:
    return DeploymentResponse.model_validate(deployment)


@router.post(
    "/preview",
    response_model=list[StepDraftResponse],
    summary="Preview deployment steps",
)
async def preview_deployment(data: DeploymentCreate) -> list[StepDraftResponse]:
    """The exact steps a deployment with this input would run. Nothing is stored."""
    return [_draft_to_response(d) for d in generate_steps(_input_from_request(data))]


@router.post(
    "",
    response_model=DeploymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create deployment",
)
async def create_deployment(data: DeploymentCreate, db: DbSession, channel: Channel) -> DeploymentResponse:
    deployment = await DeploymentExecutor(db, channel).create_deployment(
        _input_from_request(data),
        runner_id=data.runner_id,
        infrastructure_id=data.infrastructure_id,
    )
    return _deployment_to_response(deployment)


@router.get("", response_model=list[DeploymentResponse], summary="List deployments")
async def list_deployments(
    db: DbSession,
    runner_id: Optional[UUID] = Query(None),
    infrastructure_id: Optional[UUID] = Query(None),
    status_filter: Optional[DeploymentStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
) -> list[DeploymentResponse]:
    deployments = await DeploymentExecutor(db).list_deployments(
        runner_id=runner_id,
        infrastructure_id=infrastructure_id,
        status=status_filter,
        limit=limit,
    )
    return [_deployment_to_response(d) for d in deployments]


@router.get("/{deployment_id}", response_model=DeploymentResponse, summary="Get deployment")
async def get_deployment(deployment_id: UUID, db: DbSession) -> DeploymentResponse:
    return _deployment_to_response(await DeploymentExecutor(db).get(deployment_id))


@router.post(
    "/{deployment_id}/start",
    response_model=DeploymentResponse,
    summary="Start deployment",
    responses={409: {"description": "Deployment is not ready or failed"}},
)
async def start_deployment(deployment_id: UUID, db: DbSession, channel: Channel) -> DeploymentResponse:
    """Run (or re-run after a failure) from the first step not yet applied."""
    return _deployment_to_response(await DeploymentExecutor(db, channel).start(deployment_id))


@router.post(
    "/{deployment_id}/rollback",
    response_model=DeploymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create rollback deployment",
    responses={409: {"description": "Deployment is not applied or failed"}},
)
async def rollback_deployment(deployment_id: UUID, db: DbSession, channel: Channel) -> DeploymentResponse:
    return _deployment_to_response(await DeploymentExecutor(db, channel).rollback(deployment_id))


@router.delete(
    "/{deployment_id}",
    response_model=MessageResponse,
    summary="Delete deployment",
    responses={409: {"description": "Deployment is running"}},
)
async def delete_deployment(deployment_id: UUID, db: DbSession) -> MessageResponse:
    await DeploymentExecutor(db).delete(deployment_id)
    return MessageResponse(message=f"Deployment {deployment_id} deleted")
