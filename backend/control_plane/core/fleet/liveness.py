"""
Runner liveness.

The stored runner status is a last-known hint: heartbeats can stop without
an explicit status update (crash, partition). Liveness is always recomputed
at read time from the age of last_seen_at.
"""

from datetime import datetime, timedelta
from typing import Optional, Union
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.clock import as_utc, utcnow
from control_plane.core.config import settings
from control_plane.core.models import Runner, RunnerStatus

logger = structlog.get_logger()


def parse_runner_status(value: Union[str, RunnerStatus, None]) -> RunnerStatus:
    """
    Coerce a stored status string into the closed RunnerStatus enum.

    Values outside online/offline/paused are treated as offline and logged
    so that legacy rows can be migrated.
    """
    if isinstance(value, RunnerStatus):
        return value
    if value is None:
        return RunnerStatus.OFFLINE
    try:
        return RunnerStatus(str(value).strip().lower())
    except ValueError:
        logger.warning("unknown_runner_status", value=value)
        return RunnerStatus.OFFLINE


def derive_liveness(
    status: Union[str, RunnerStatus, None],
    last_seen_at: Optional[datetime],
    now: datetime,
    window: Optional[timedelta] = None,
) -> RunnerStatus:
    """Pure liveness derivation from (status, last_seen_at, now)."""
    if last_seen_at is None:
        return RunnerStatus.OFFLINE

    if window is None:
        window = timedelta(seconds=settings.LIVENESS_WINDOW_SECONDS)

    if as_utc(now) - as_utc(last_seen_at) < window:
        if parse_runner_status(status) == RunnerStatus.PAUSED:
            return RunnerStatus.PAUSED
        return RunnerStatus.ONLINE

    return RunnerStatus.OFFLINE


def runner_liveness(runner: Runner, now: Optional[datetime] = None) -> RunnerStatus:
    return derive_liveness(runner.status, runner.last_seen_at, now or utcnow())


def is_online(runner: Optional[Runner], now: Optional[datetime] = None) -> bool:
    if runner is None:
        return False
    return runner_liveness(runner, now) == RunnerStatus.ONLINE


async def online_runner_for(
    db: AsyncSession,
    infrastructure_id: UUID,
    now: Optional[datetime] = None,
) -> Optional[Runner]:
    """The most recently seen online runner bound to an infrastructure."""
    result = await db.execute(
        select(Runner)
        .where(Runner.infrastructure_id == infrastructure_id)
        .order_by(Runner.last_seen_at.desc())
    )
    now = now or utcnow()
    for runner in result.scalars().all():
        if is_online(runner, now):
            return runner
    return None
