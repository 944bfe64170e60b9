"""
Runner Registry
===============

Server side of the runner agent contract (register, heartbeat, poll,
report) plus the operator-facing runner management.

Tokens are never stored; runners are looked up by the SHA-256 hex digest
of the token they present.
"""

import hashlib
from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.clock import utcnow
from control_plane.core.exceptions import NotFoundError, RunnerAuthError, ValidationError
from control_plane.core.fleet.events import EventChannel
from control_plane.core.fleet.followups import apply_order_outcome
from control_plane.core.fleet.liveness import parse_runner_status, runner_liveness
from control_plane.core.fleet.orders import OrderService
from control_plane.core.fleet.output import normalize_capability_map
from control_plane.core.models import (
    Deployment,
    DeploymentStep,
    Infrastructure,
    Order,
    Runner,
    RunnerStatus,
)
from control_plane.core.schemas import FREE_FORM_CAPABILITY_KEYS

logger = structlog.get_logger()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RunnerRegistry:
    """Runner registration, liveness updates and order exchange."""

    def __init__(self, db: AsyncSession, channel: Optional[EventChannel] = None):
        self.db = db
        self.channel = channel
        self.orders = OrderService(db, channel)

    # ==========================================================================
    # Agent Contract
    # ==========================================================================

    async def register(
        self,
        name: str,
        token: str,
        host_info: Optional[dict[str, Any]] = None,
        capabilities: Optional[dict[str, Any]] = None,
    ) -> Runner:
        """
        Register a runner, or update the existing runner with this name.

        Re-registration rotates the token and replaces host info and
        self-reported capabilities.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Runner name must not be empty")
        if not token or len(token) < 8:
            raise ValidationError("Runner token must be at least 8 characters")

        token_hash = hash_token(token)
        holder = await self._by_token_hash(token_hash)
        if holder is not None and holder.name != name:
            raise ValidationError("Runner token is already in use")

        result = await self.db.execute(select(Runner).where(Runner.name == name))
        runner = result.scalar_one_or_none()
        now = utcnow()

        if runner is None:
            runner = Runner(name=name, token_hash=token_hash)
            self.db.add(runner)
            created = True
        else:
            runner.token_hash = token_hash
            created = False

        runner.host_info = dict(host_info or {})
        reported = dict(capabilities or {})
        runner.capabilities = {
            key: reported[key] if key in FREE_FORM_CAPABILITY_KEYS else value.value
            for key, value in normalize_capability_map(reported).items()
        }
        runner.last_seen_at = now
        if runner.status != RunnerStatus.PAUSED:
            runner.status = RunnerStatus.ONLINE

        await self.db.commit()
        await self.db.refresh(runner)

        logger.info(
            "runner_registered",
            runner_id=str(runner.id),
            name=name,
            created=created,
        )
        return runner

    async def authenticate(self, token: Optional[str]) -> Runner:
        if not token:
            raise RunnerAuthError("Missing runner token")
        runner = await self._by_token_hash(hash_token(token))
        if runner is None:
            raise RunnerAuthError("Invalid runner token")
        return runner

    async def heartbeat(self, runner: Runner, host_info: Optional[dict[str, Any]] = None) -> Runner:
        """Record contact; a paused runner stays paused."""
        runner.last_seen_at = utcnow()
        if runner.status != RunnerStatus.PAUSED:
            runner.status = RunnerStatus.ONLINE
        if host_info:
            runner.host_info = {**(runner.host_info or {}), **host_info}
        await self.db.commit()
        await self.db.refresh(runner)
        logger.debug("runner_heartbeat", runner_id=str(runner.id))
        return runner

    async def poll(self, runner: Runner, limit: Optional[int] = None) -> list[Order]:
        """Pending orders for this runner, oldest first. Polling counts as contact."""
        runner.last_seen_at = utcnow()
        await self.db.commit()
        if runner.status == RunnerStatus.PAUSED:
            return []
        return await self.orders.pending_for_runner(runner.id, limit)

    async def report_order(
        self,
        runner: Runner,
        order_id: UUID,
        status: str,
        progress: Optional[int] = None,
        result: Optional[dict[str, Any]] = None,
        stdout_tail: Optional[str] = None,
        stderr_tail: Optional[str] = None,
        exit_code: Optional[int] = None,
        error_message: Optional[str] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Order:
        """Apply a report for one of this runner's orders, then its follow-ups."""
        order = await self.orders.get(order_id)
        if order.runner_id != runner.id:
            raise NotFoundError("Order", order_id)

        order = await self.orders.report(
            order_id,
            status=status,
            progress=progress,
            result=result,
            stdout_tail=stdout_tail,
            stderr_tail=stderr_tail,
            exit_code=exit_code,
            error_message=error_message,
            started_at=started_at,
            finished_at=finished_at,
            meta=meta,
        )

        runner.last_seen_at = utcnow()
        await self.db.commit()

        await apply_order_outcome(self.db, order, channel=self.channel)
        return order

    # ==========================================================================
    # Operator Management
    # ==========================================================================

    async def get(self, runner_id: UUID) -> Runner:
        runner = await self.db.get(Runner, runner_id)
        if runner is None:
            raise NotFoundError("Runner", runner_id)
        return runner

    async def list_runners(self, infrastructure_id: Optional[UUID] = None) -> list[tuple[Runner, RunnerStatus]]:
        """Runners with their liveness derived at read time."""
        query = select(Runner).order_by(Runner.name)
        if infrastructure_id:
            query = query.where(Runner.infrastructure_id == infrastructure_id)
        result = await self.db.execute(query)
        now = utcnow()
        return [(runner, runner_liveness(runner, now)) for runner in result.scalars().all()]

    async def associate(self, runner_id: UUID, infrastructure_id: Optional[UUID]) -> Runner:
        runner = await self.get(runner_id)
        if infrastructure_id is not None and await self.db.get(Infrastructure, infrastructure_id) is None:
            raise ValidationError(f"Infrastructure {infrastructure_id} does not exist")
        runner.infrastructure_id = infrastructure_id
        await self.db.commit()
        await self.db.refresh(runner)
        logger.info(
            "runner_associated",
            runner_id=str(runner_id),
            infrastructure_id=str(infrastructure_id) if infrastructure_id else None,
        )
        return runner

    async def set_status(self, runner_id: UUID, status: Union[str, RunnerStatus]) -> Runner:
        """Operator pause/resume. Liveness still decides online vs offline."""
        runner = await self.get(runner_id)
        runner.status = parse_runner_status(status)
        await self.db.commit()
        await self.db.refresh(runner)
        logger.info("runner_status_set", runner_id=str(runner_id), status=runner.status.value)
        return runner

    async def delete(self, runner_id: UUID) -> None:
        """Delete a runner with its orders and deployments. Its infrastructure stays."""
        runner = await self.get(runner_id)

        deployment_ids = select(Deployment.id).where(Deployment.runner_id == runner_id)
        await self.db.execute(delete(DeploymentStep).where(DeploymentStep.deployment_id.in_(deployment_ids)))
        await self.db.execute(
            update(Deployment)
            .where(Deployment.rolled_back_from.in_(deployment_ids))
            .values(rolled_back_from=None)
        )
        await self.db.execute(delete(Deployment).where(Deployment.runner_id == runner_id))
        await self.db.execute(delete(Order).where(Order.runner_id == runner_id))
        await self.db.delete(runner)
        await self.db.commit()

        logger.info("runner_deleted", runner_id=str(runner_id))

    async def _by_token_hash(self, token_hash: str) -> Optional[Runner]:
        result = await self.db.execute(select(Runner).where(Runner.token_hash == token_hash))
        return result.scalar_one_or_none()
