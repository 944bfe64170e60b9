"""
Runner Control Plane - API Dependencies
=======================================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.database import get_db
from control_plane.core.fleet.events import EventChannel, get_event_channel
from control_plane.core.fleet.runners import RunnerRegistry
from control_plane.core.models import Runner


RUNNER_TOKEN_HEADER = "X-Runner-Token"


# ==========================================================================
# Runner Dependencies
# ==========================================================================

async def get_current_runner(
    db: Annotated[AsyncSession, Depends(get_db)],
    x_runner_token: Annotated[Optional[str], Header(alias=RUNNER_TOKEN_HEADER)] = None,
) -> Runner:
    """
    Resolve the calling runner from its token header.

    Raises:
        RunnerAuthError: If the header is missing or matches no runner
    """
    return await RunnerRegistry(db).authenticate(x_runner_token)


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentRunner = Annotated[Runner, Depends(get_current_runner)]
Channel = Annotated[EventChannel, Depends(get_event_channel)]
