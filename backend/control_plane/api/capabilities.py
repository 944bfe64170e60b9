"""
Runner Control Plane - Capabilities API
=======================================

Reconciled capability views and installed-playbook summaries.
"""

from dataclasses import asdict
from typing import Any
from uuid import UUID

from fastapi import APIRouter

from control_plane.api.deps import DbSession
from control_plane.core.fleet.capabilities import (
    CapabilityStatus,
    ReconcileOutcome,
    capability_engine,
    infrastructure_view,
    installed_summary,
    runner_view,
)
from control_plane.core.schemas import (
    CapabilityStatusResponse,
    CapabilityViewResponse,
    InstalledSummaryResponse,
)

router = APIRouter(prefix="/capabilities", tags=["Capabilities"])


def _view_to_response(target_type: str, target_id: UUID, view: list[CapabilityStatus]) -> CapabilityViewResponse:
    return CapabilityViewResponse(
        target_type=target_type,
        target_id=target_id,
        capabilities=[CapabilityStatusResponse(**asdict(status)) for status in view],
    )


def _summary_to_response(summary: dict[str, Any]) -> InstalledSummaryResponse:
    return InstalledSummaryResponse(
        total=summary["total"],
        active=summary["active"],
        stale=summary["stale"],
        failed=summary["failed"],
        by_group={
            group: [asdict(item) for item in items]
            for group, items in summary["by_group"].items()
        },
    )


@router.get("/infrastructures/{infrastructure_id}", response_model=CapabilityViewResponse)
async def get_infrastructure_capabilities(infrastructure_id: UUID, db: DbSession) -> CapabilityViewResponse:
    """Declared, self-reported and observed values joined per capability key."""
    view = await infrastructure_view(db, infrastructure_id)
    return _view_to_response("infrastructure", infrastructure_id, view)


@router.get("/runners/{runner_id}", response_model=CapabilityViewResponse)
async def get_runner_capabilities(runner_id: UUID, db: DbSession) -> CapabilityViewResponse:
    view = await runner_view(db, runner_id)
    return _view_to_response("runner", runner_id, view)


@router.get("/infrastructures/{infrastructure_id}/installed", response_model=InstalledSummaryResponse)
async def get_infrastructure_installed(infrastructure_id: UUID, db: DbSession) -> InstalledSummaryResponse:
    return _summary_to_response(await installed_summary(db, infrastructure_id=infrastructure_id))


@router.get("/runners/{runner_id}/installed", response_model=InstalledSummaryResponse)
async def get_runner_installed(runner_id: UUID, db: DbSession) -> InstalledSummaryResponse:
    return _summary_to_response(await installed_summary(db, runner_id=runner_id))


@router.post("/orders/{order_id}/reconcile")
async def reconcile_order(order_id: UUID, db: DbSession) -> dict[str, Any]:
    """
    Re-run reconciliation for one order.

    Already-applied orders are reported as skipped; unparseable output is
    a 422 ParseFailure.
    """
    outcome: ReconcileOutcome = await capability_engine.reprocess(db, order_id)
    return {
        "order_id": str(outcome.order_id),
        "applied": outcome.applied,
        "target_type": outcome.target_type,
        "target_id": str(outcome.target_id) if outcome.target_id else None,
        "changed": outcome.changed,
        "refreshed": outcome.refreshed,
        "skipped_reason": outcome.skipped_reason,
        "error": outcome.error,
    }
