"""
Runner Control Plane - Playbooks API
====================================

Read-only playbook catalog (remote with static fallback).
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from control_plane.core.exceptions import NotFoundError
from control_plane.core.fleet.playbooks import Playbook, PlaybookProvider, get_playbook_provider
from control_plane.core.schemas import PlaybookResponse

router = APIRouter(prefix="/playbooks", tags=["Playbooks"])

Provider = Annotated[PlaybookProvider, Depends(get_playbook_provider)]


def _playbook_to_response(playbook: Playbook) -> PlaybookResponse:
    return PlaybookResponse(
        key=playbook.key,
        version=playbook.version,
        title=playbook.title,
        description=playbook.description,
        visibility=playbook.visibility,
        actions=playbook.actions,
        input_schema=playbook.schema,
        group=playbook.group,
        verifies=playbook.verifies,
    )


@router.get("", response_model=list[PlaybookResponse])
async def list_playbooks(
    provider: Provider,
    group: Optional[str] = Query(None, description="Filter by playbook group"),
) -> list[PlaybookResponse]:
    playbooks = await provider.list_playbooks()
    if group:
        playbooks = [p for p in playbooks if p.group == group]
    return [_playbook_to_response(p) for p in playbooks]


@router.get("/{key}", response_model=PlaybookResponse)
async def get_playbook(key: str, provider: Provider) -> PlaybookResponse:
    playbook = await provider.get_playbook(key)
    if playbook is None:
        raise NotFoundError("Playbook", key)
    return _playbook_to_response(playbook)
