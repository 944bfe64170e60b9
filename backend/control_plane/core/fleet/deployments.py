"""
Deployment Executor
===================

Materializes a deployment plan up front and runs it as a sequence of
orders, one step at a time, strictly in step_order.

    draft -> planning -> ready -> running -> {applied, failed}
    applied/failed -> rolled_back   (once a rollback deployment is applied)

A failed deployment may be started again; steps that were not applied are
reset and the run resumes from the first of them.
"""

from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from control_plane.core.clock import utcnow
from control_plane.core.config import settings
from control_plane.core.exceptions import InvalidTransition, NotFoundError, ValidationError
from control_plane.core.fleet.events import EventChannel
from control_plane.core.fleet.locks import deployment_locks
from control_plane.core.fleet.orders import OrderService
from control_plane.core.fleet.planner import (
    DONE_STEP_STATUSES,
    DeploymentInput,
    StepDraft,
    can_start_step,
    generate_steps,
    rollback_steps,
)
from control_plane.core.models import (
    Deployment,
    DeploymentStatus,
    DeploymentStep,
    DeploymentStepStatus,
    Infrastructure,
    Order,
    OrderCategory,
    OrderStatus,
    Runner,
)

logger = structlog.get_logger()

_STEP_OUTCOME = {
    OrderStatus.COMPLETED: DeploymentStepStatus.APPLIED,
    OrderStatus.FAILED: DeploymentStepStatus.FAILED,
    OrderStatus.CANCELLED: DeploymentStepStatus.CANCELLED,
}

_STARTABLE = {DeploymentStatus.READY, DeploymentStatus.FAILED}
_ROLLBACK_SOURCES = {DeploymentStatus.APPLIED, DeploymentStatus.FAILED}


def deployment_input(deployment: Deployment) -> DeploymentInput:
    """Rebuild the planner input a stored deployment was created from."""
    return DeploymentInput(
        app_name=deployment.app_name,
        repo_url=deployment.repo_url,
        branch=deployment.branch,
        deploy_type=deployment.deploy_type,
        port=deployment.port,
        start_command=deployment.start_command,
        build_command=deployment.build_command,
        healthcheck_type=deployment.healthcheck_type,
        healthcheck_value=deployment.healthcheck_value,
        env_vars=dict(deployment.env_vars or {}),
        expose_via_caddy=deployment.expose_via_caddy,
        domain=deployment.domain,
    )


class DeploymentExecutor:
    """Creates deployments and drives their steps through orders."""

    def __init__(self, db: AsyncSession, channel: Optional[EventChannel] = None):
        self.db = db
        self.orders = OrderService(db, channel)

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get(self, deployment_id: UUID) -> Deployment:
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.id == deployment_id)
            .options(selectinload(Deployment.steps))
            .execution_options(populate_existing=True)
        )
        deployment = result.scalar_one_or_none()
        if deployment is None:
            raise NotFoundError("Deployment", deployment_id)
        return deployment

    async def list_deployments(
        self,
        runner_id: Optional[UUID] = None,
        infrastructure_id: Optional[UUID] = None,
        status: Optional[DeploymentStatus] = None,
        limit: int = 50,
    ) -> list[Deployment]:
        query = (
            select(Deployment)
            .options(selectinload(Deployment.steps))
            .order_by(Deployment.created_at.desc())
            .limit(limit)
        )
        if runner_id:
            query = query.where(Deployment.runner_id == runner_id)
        if infrastructure_id:
            query = query.where(Deployment.infrastructure_id == infrastructure_id)
        if status:
            query = query.where(Deployment.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _steps(self, deployment_id: UUID) -> list[DeploymentStep]:
        result = await self.db.execute(
            select(DeploymentStep)
            .where(DeploymentStep.deployment_id == deployment_id)
            .order_by(DeploymentStep.step_order)
        )
        return list(result.scalars().all())

    # ==========================================================================
    # Creation
    # ==========================================================================

    @staticmethod
    def preview(plan_input: DeploymentInput) -> list[StepDraft]:
        return generate_steps(plan_input)

    async def create_deployment(
        self,
        plan_input: DeploymentInput,
        runner_id: UUID,
        infrastructure_id: Optional[UUID] = None,
        rolled_back_from: Optional[UUID] = None,
        rollback: bool = False,
    ) -> Deployment:
        """
        Create a deployment with its full step plan.

        draft -> planning -> ready happens in one transaction; a plan that
        fails validation leaves nothing behind.
        """
        runner = await self.db.get(Runner, runner_id)
        if runner is None:
            raise ValidationError(f"Runner {runner_id} does not exist")
        if infrastructure_id is None:
            infrastructure_id = runner.infrastructure_id
        elif await self.db.get(Infrastructure, infrastructure_id) is None:
            raise ValidationError(f"Infrastructure {infrastructure_id} does not exist")

        deployment = Deployment(
            app_name=plan_input.app_name,
            repo_url=plan_input.repo_url,
            branch=plan_input.branch,
            deploy_type=plan_input.deploy_type,
            runner_id=runner_id,
            infrastructure_id=infrastructure_id,
            status=DeploymentStatus.DRAFT,
            working_dir=plan_input.working_dir,
            port=plan_input.port,
            start_command=plan_input.start_command,
            build_command=plan_input.build_command,
            healthcheck_type=plan_input.healthcheck_type,
            healthcheck_value=plan_input.healthcheck_value,
            env_vars=dict(plan_input.env_vars),
            expose_via_caddy=plan_input.expose_via_caddy,
            domain=plan_input.domain,
            rolled_back_from=rolled_back_from,
        )
        self.db.add(deployment)
        await self.db.flush()

        deployment.status = DeploymentStatus.PLANNING
        try:
            drafts = rollback_steps(plan_input) if rollback else generate_steps(plan_input)
        except ValidationError:
            await self.db.rollback()
            raise

        self.db.add_all([
            DeploymentStep(
                deployment_id=deployment.id,
                step_order=draft.step_order,
                step_type=draft.step_type,
                step_name=draft.step_name,
                command=draft.command,
                status=DeploymentStepStatus.PENDING,
            )
            for draft in drafts
        ])
        deployment.status = DeploymentStatus.READY
        await self.db.commit()

        logger.info(
            "deployment_created",
            deployment_id=str(deployment.id),
            app_name=deployment.app_name,
            steps=len(drafts),
            rollback=rollback,
        )
        return await self.get(deployment.id)

    # ==========================================================================
    # Execution
    # ==========================================================================

    async def start(self, deployment_id: UUID) -> Deployment:
        async with deployment_locks(deployment_id):
            deployment = await self.get(deployment_id)
            if deployment.status not in _STARTABLE:
                raise InvalidTransition("Deployment", deployment_id, deployment.status.value, DeploymentStatus.RUNNING.value)

            for step in await self._steps(deployment_id):
                if step.status in DONE_STEP_STATUSES:
                    continue
                step.status = DeploymentStepStatus.PENDING
                step.order_id = None
                step.started_at = None
                step.finished_at = None
                step.error_message = None
                step.exit_code = None

            deployment.status = DeploymentStatus.RUNNING
            deployment.error_message = None
            deployment.completed_at = None
            deployment.started_at = deployment.started_at or utcnow()
            await self.db.commit()

            logger.info("deployment_started", deployment_id=str(deployment_id))
            await self._advance(deployment)
        return await self.get(deployment_id)

    async def dispatch_next(self, deployment_id: UUID) -> Optional[Order]:
        async with deployment_locks(deployment_id):
            deployment = await self.get(deployment_id)
            if deployment.status != DeploymentStatus.RUNNING:
                raise InvalidTransition("Deployment", deployment_id, deployment.status.value, DeploymentStatus.RUNNING.value)
            return await self._advance(deployment)

    async def _advance(self, deployment: Deployment) -> Optional[Order]:
        """Dispatch the lowest pending step, or finish the deployment."""
        steps = await self._steps(deployment.id)
        remaining = [s for s in steps if s.status not in DONE_STEP_STATUSES]

        if not remaining:
            await self._finish(deployment)
            return None

        step = remaining[0]
        if step.status == DeploymentStepStatus.RUNNING:
            return None
        if not can_start_step(steps, step.step_order):
            logger.warning(
                "deployment_step_blocked",
                deployment_id=str(deployment.id),
                step_order=step.step_order,
                status=step.status.value,
            )
            return None

        order = await self.orders.create(
            runner_id=deployment.runner_id,
            infrastructure_id=deployment.infrastructure_id,
            category=OrderCategory.MAINTENANCE,
            name=f"{deployment.app_name}: {step.step_name}",
            description=f"[deploy.{step.step_type.value}] {step.step_name} for {deployment.app_name}",
            command=step.command,
            meta={
                "deployment_id": str(deployment.id),
                "step_id": str(step.id),
                "step_order": step.step_order,
            },
        )

        step.order_id = order.id
        step.status = DeploymentStepStatus.RUNNING
        step.started_at = utcnow()
        deployment.current_step = step.step_type.value
        await self.db.commit()

        logger.info(
            "deployment_step_dispatched",
            deployment_id=str(deployment.id),
            step_order=step.step_order,
            step_type=step.step_type.value,
            order_id=str(order.id),
        )
        return order

    async def _finish(self, deployment: Deployment) -> None:
        deployment.status = DeploymentStatus.APPLIED
        deployment.current_step = None
        deployment.completed_at = utcnow()

        if deployment.rolled_back_from is not None:
            original = await self.db.get(Deployment, deployment.rolled_back_from)
            if original is not None:
                original.status = DeploymentStatus.ROLLED_BACK
                logger.info(
                    "deployment_rolled_back",
                    deployment_id=str(original.id),
                    rollback_id=str(deployment.id),
                )

        await self.db.commit()
        logger.info("deployment_applied", deployment_id=str(deployment.id))

    async def on_step_order_report(self, order: Order) -> Optional[DeploymentStep]:
        """
        Copy an order's outcome onto its step.

        applied -> next step is dispatched (or the deployment is applied);
        failed/cancelled -> the deployment fails. Reports for orders a step
        no longer points at are ignored.
        """
        meta = order.meta or {}
        deployment_id = meta.get("deployment_id")
        if not deployment_id:
            return None
        deployment_id = UUID(str(deployment_id))

        async with deployment_locks(deployment_id):
            result = await self.db.execute(
                select(DeploymentStep).where(DeploymentStep.order_id == order.id)
            )
            step = result.scalar_one_or_none()
            if step is None:
                logger.info("deployment_step_order_superseded", order_id=str(order.id))
                return None

            deployment = await self.get(deployment_id)

            if order.status == OrderStatus.RUNNING:
                step.status = DeploymentStepStatus.RUNNING
                step.started_at = step.started_at or order.started_at
                await self.db.commit()
                return step

            outcome = _STEP_OUTCOME.get(order.status)
            if outcome is None:
                return step

            step.status = outcome
            step.exit_code = order.exit_code
            step.stdout_tail = order.stdout_tail
            step.stderr_tail = order.stderr_tail
            step.error_message = order.error_message
            step.started_at = step.started_at or order.started_at
            step.finished_at = order.completed_at or utcnow()

            if deployment.status != DeploymentStatus.RUNNING:
                await self.db.commit()
                return step

            if outcome == DeploymentStepStatus.APPLIED:
                await self.db.commit()
                await self._advance(deployment)
            else:
                reason = order.error_message or f"order {outcome.value}"
                deployment.status = DeploymentStatus.FAILED
                deployment.error_message = f"Step '{step.step_name}' {outcome.value}: {reason}"[
                    : settings.ERROR_MESSAGE_MAX_CHARS
                ]
                deployment.completed_at = utcnow()
                await self.db.commit()
                logger.warning(
                    "deployment_failed",
                    deployment_id=str(deployment_id),
                    step_order=step.step_order,
                    step_status=outcome.value,
                )
        return step

    # ==========================================================================
    # Rollback & Deletion
    # ==========================================================================

    async def rollback(self, deployment_id: UUID) -> Deployment:
        """
        Create a rollback deployment (stop + restore previous revision).

        The original is marked rolled_back once the rollback is applied.
        """
        original = await self.get(deployment_id)
        if original.status not in _ROLLBACK_SOURCES:
            raise InvalidTransition("Deployment", deployment_id, original.status.value, DeploymentStatus.ROLLED_BACK.value)

        return await self.create_deployment(
            deployment_input(original),
            runner_id=original.runner_id,
            infrastructure_id=original.infrastructure_id,
            rolled_back_from=original.id,
            rollback=True,
        )

    async def delete(self, deployment_id: UUID) -> None:
        async with deployment_locks(deployment_id):
            deployment = await self.get(deployment_id)
            if deployment.status == DeploymentStatus.RUNNING:
                raise InvalidTransition("Deployment", deployment_id, deployment.status.value, "deleted")

            await self.db.execute(
                update(Deployment)
                .where(Deployment.rolled_back_from == deployment_id)
                .values(rolled_back_from=None)
            )
            await self.db.delete(deployment)
            await self.db.commit()

        deployment_locks.discard(deployment_id)
        logger.info("deployment_deleted", deployment_id=str(deployment_id))
