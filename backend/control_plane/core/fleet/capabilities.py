"""
Capability Reconciliation Engine
================================

Turns completed order reports into observed capability values.

Declared values (operator intent, or runner self-report) and observed values
(runtime evidence from orders) are kept in separate maps and joined at read
time. Reported values are gathered from, in increasing precedence:

1. version banners in stdout
2. the capabilities verified by the playbook named in the order description
3. a JSON object in stdout carrying "capabilities"
4. result["capabilities"]

Each order is processed at most once per engine lifetime, and orders already
recorded as the source of an observation are skipped.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.clock import as_utc, utcnow
from control_plane.core.config import settings
from control_plane.core.exceptions import NotFoundError, ParseFailure
from control_plane.core.fleet.locks import capability_locks
from control_plane.core.fleet.output import (
    detect_capabilities,
    extract_json_object,
    extract_playbook_key,
    extract_version,
    normalize_capability_map,
    normalize_capability_value,
)
from control_plane.core.fleet.playbooks import get_static_catalog
from control_plane.core.models import (
    CapabilityValue,
    Infrastructure,
    Order,
    OrderStatus,
    Runner,
)
from control_plane.core.schemas import FREE_FORM_CAPABILITY_KEYS

logger = structlog.get_logger()


# ==========================================================================
# Result Types
# ==========================================================================

@dataclass
class CapabilityStatus:
    """Reconciled value of one capability key."""
    key: str
    value: CapabilityValue
    source: str  # declared | self_reported | observed
    observed_at: Optional[datetime] = None
    stale: bool = False


@dataclass
class ReconcileOutcome:
    """What processing one order did to its target's capabilities."""
    order_id: UUID
    applied: bool = False
    target_type: Optional[str] = None
    target_id: Optional[UUID] = None
    changed: list[str] = field(default_factory=list)
    refreshed: list[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class InstalledCapability:
    playbook_key: str
    title: str
    group: str
    status: str  # active | stale | failed
    order_id: UUID
    completed_at: Optional[datetime] = None
    version: Optional[str] = None


# ==========================================================================
# Pure Helpers
# ==========================================================================

def playbook_key_of(order: Order) -> Optional[str]:
    meta = order.meta or {}
    return meta.get("playbook_key") or meta.get("playbook_id") or extract_playbook_key(order.description)


def extract_reported(order: Order, verifies_map: dict[str, list[str]]) -> dict[str, CapabilityValue]:
    """
    Capability values claimed by one order's output.

    Raises ParseFailure when nothing recognizable can be extracted.
    """
    reported: dict[str, CapabilityValue] = {}

    reported.update(detect_capabilities(order.stdout_tail))

    playbook_key = playbook_key_of(order)
    for key in verifies_map.get(playbook_key or "", []):
        reported[key] = CapabilityValue.INSTALLED

    embedded = extract_json_object(order.stdout_tail, keys=("capabilities",))
    if embedded is not None:
        reported.update(normalize_capability_map(embedded.get("capabilities")))

    if isinstance(order.result, dict):
        reported.update(normalize_capability_map(order.result.get("capabilities")))

    # "unknown" is not evidence
    reported = {k: v for k, v in reported.items() if v != CapabilityValue.UNKNOWN}
    if not reported:
        raise ParseFailure(
            f"Order {order.id} output carries no recognizable capability data",
            raw_output=order.stdout_tail,
        )
    return reported


def merge_observations(
    declared: dict[str, Any],
    observed: dict[str, Any],
    reported: dict[str, CapabilityValue],
    order_id: UUID,
    observed_at: datetime,
) -> tuple[dict[str, Any], list[str], list[str]]:
    """
    Fold reported values into the observed map.

    Returns (new observed map, changed keys, refreshed keys). Keys holding
    evidence newer than `observed_at` are left alone.
    """
    merged = {k: dict(v) for k, v in observed.items()}
    changed, refreshed = [], []
    stamp = as_utc(observed_at)

    for key in sorted(reported):
        value = reported[key]
        previous = merged.get(key)
        if previous is not None:
            previous_at = _parse_timestamp(previous.get("observed_at"))
            if previous_at is not None and previous_at > stamp:
                continue
            current = previous.get("status")
        else:
            current = declared.get(key)

        if current == value.value:
            refreshed.append(key)
        else:
            changed.append(key)

        merged[key] = {
            "status": value.value,
            "observed_at": stamp.isoformat(),
            "order_id": str(order_id),
        }

    return merged, changed, refreshed


def reconciled_view(
    declared: dict[str, Any],
    observed: dict[str, Any],
    now: datetime,
    self_reported: Optional[dict[str, Any]] = None,
    stale_after: Optional[timedelta] = None,
) -> list[CapabilityStatus]:
    """Join declared, self-reported and observed maps; observed wins."""
    if stale_after is None:
        stale_after = timedelta(hours=settings.CAPABILITY_STALE_AFTER_HOURS)
    self_reported = self_reported or {}
    now = as_utc(now)

    keys = (set(declared) | set(self_reported) | set(observed)) - FREE_FORM_CAPABILITY_KEYS
    view = []
    for key in sorted(keys):
        entry = observed.get(key)
        if entry is not None:
            observed_at = _parse_timestamp(entry.get("observed_at"))
            view.append(CapabilityStatus(
                key=key,
                value=normalize_capability_value(entry.get("status")),
                source="observed",
                observed_at=observed_at,
                stale=observed_at is None or now - observed_at > stale_after,
            ))
        elif key in self_reported and normalize_capability_value(self_reported[key]) != CapabilityValue.UNKNOWN:
            view.append(CapabilityStatus(
                key=key,
                value=normalize_capability_value(self_reported[key]),
                source="self_reported",
            ))
        else:
            view.append(CapabilityStatus(
                key=key,
                value=normalize_capability_value(declared.get(key, self_reported.get(key))),
                source="declared",
            ))
    return view


def effective_capabilities(view: list[CapabilityStatus]) -> dict[str, CapabilityValue]:
    return {c.key: c.value for c in view}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


# ==========================================================================
# Engine
# ==========================================================================

class CapabilityEngine:
    """
    Applies completed orders to Infrastructure/Runner observed capabilities.

    One engine instance is shared by the process so the processed-order set
    spans every request.
    """

    def __init__(self, verifies_map: Optional[dict[str, list[str]]] = None):
        self._verifies_map = verifies_map
        self.processed: set[str] = set()

    @property
    def verifies_map(self) -> dict[str, list[str]]:
        if self._verifies_map is None:
            self._verifies_map = get_static_catalog().verifies_map()
        return self._verifies_map

    async def _target(self, db: AsyncSession, order: Order) -> Union[Infrastructure, Runner, None]:
        if order.infrastructure_id is not None:
            target = await db.get(Infrastructure, order.infrastructure_id)
            if target is not None:
                return target
        return await db.get(Runner, order.runner_id)

    async def process_order(
        self,
        db: AsyncSession,
        order: Order,
        raise_on_parse_failure: bool = False,
    ) -> ReconcileOutcome:
        """
        Reconcile one order. Only completed orders touch capabilities.

        Failed orders and unparseable output leave the maps untouched; the
        outcome carries the order's error message or the parse failure.
        """
        outcome = ReconcileOutcome(order_id=order.id)
        key = str(order.id)

        if order.status != OrderStatus.COMPLETED:
            outcome.skipped_reason = f"order is {order.status.value}"
            outcome.error = order.error_message
            return outcome

        if key in self.processed:
            outcome.skipped_reason = "already processed"
            return outcome

        target = await self._target(db, order)
        if target is None:
            self.processed.add(key)
            outcome.skipped_reason = "target no longer exists"
            return outcome

        outcome.target_type = "infrastructure" if isinstance(target, Infrastructure) else "runner"
        outcome.target_id = target.id

        async with capability_locks(target.id):
            observed = dict(target.observed_capabilities or {})
            if any(entry.get("order_id") == key for entry in observed.values()):
                self.processed.add(key)
                outcome.skipped_reason = "already recorded"
                return outcome

            try:
                reported = extract_reported(order, self.verifies_map)
            except ParseFailure as e:
                self.processed.add(key)
                outcome.error = e.message
                logger.info("capability_parse_failure", order_id=key)
                if raise_on_parse_failure:
                    raise
                return outcome

            merged, changed, refreshed = merge_observations(
                declared=dict(target.capabilities or {}),
                observed=observed,
                reported=reported,
                order_id=order.id,
                observed_at=order.completed_at or utcnow(),
            )
            target.observed_capabilities = merged
            await db.commit()

        self.processed.add(key)
        outcome.applied = True
        outcome.changed = changed
        outcome.refreshed = refreshed
        logger.info(
            "capabilities_reconciled",
            order_id=key,
            target=outcome.target_type,
            target_id=str(target.id),
            changed=changed,
            refreshed=len(refreshed),
        )
        return outcome

    async def reprocess(self, db: AsyncSession, order_id: UUID) -> ReconcileOutcome:
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return await self.process_order(db, order, raise_on_parse_failure=True)


capability_engine = CapabilityEngine()


# ==========================================================================
# Views
# ==========================================================================

async def infrastructure_view(
    db: AsyncSession,
    infrastructure_id: UUID,
    now: Optional[datetime] = None,
) -> list[CapabilityStatus]:
    infra = await db.get(Infrastructure, infrastructure_id)
    if infra is None:
        raise NotFoundError("Infrastructure", infrastructure_id)

    self_reported: dict[str, Any] = {}
    result = await db.execute(
        select(Runner).where(Runner.infrastructure_id == infrastructure_id).order_by(Runner.created_at)
    )
    for runner in result.scalars().all():
        self_reported.update(runner.capabilities or {})

    return reconciled_view(
        declared=infra.capabilities or {},
        observed=infra.observed_capabilities or {},
        now=now or utcnow(),
        self_reported=self_reported,
    )


async def runner_view(
    db: AsyncSession,
    runner_id: UUID,
    now: Optional[datetime] = None,
) -> list[CapabilityStatus]:
    runner = await db.get(Runner, runner_id)
    if runner is None:
        raise NotFoundError("Runner", runner_id)
    return reconciled_view(
        declared={},
        observed=runner.observed_capabilities or {},
        now=now or utcnow(),
        self_reported=runner.capabilities or {},
    )


async def installed_summary(
    db: AsyncSession,
    infrastructure_id: Optional[UUID] = None,
    runner_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Latest finished order per playbook key, classified active/stale/failed
    and grouped by playbook group.
    """
    summary: dict[str, Any] = {"total": 0, "active": 0, "stale": 0, "failed": 0, "by_group": {}}
    if infrastructure_id is None and runner_id is None:
        return summary

    query = (
        select(Order)
        .where(Order.status.in_([OrderStatus.COMPLETED, OrderStatus.FAILED]))
        .order_by(Order.completed_at.desc())
    )
    if infrastructure_id is not None:
        query = query.where(Order.infrastructure_id == infrastructure_id)
    else:
        query = query.where(Order.runner_id == runner_id)
    result = await db.execute(query)

    catalog = get_static_catalog().by_key()
    stale_after = timedelta(hours=settings.CAPABILITY_STALE_AFTER_HOURS)
    now = as_utc(now or utcnow())

    latest: dict[str, InstalledCapability] = {}
    for order in result.scalars().all():
        playbook_key = playbook_key_of(order)
        if not playbook_key or playbook_key in latest:
            continue

        completed_at = as_utc(order.completed_at)
        if order.status == OrderStatus.FAILED or (order.exit_code not in (None, 0)):
            status = "failed"
        elif completed_at is not None and now - completed_at > stale_after:
            status = "stale"
        else:
            status = "active"

        playbook = catalog.get(playbook_key)
        latest[playbook_key] = InstalledCapability(
            playbook_key=playbook_key,
            title=playbook.title if playbook else order.name,
            group=playbook.group if playbook else "other",
            status=status,
            order_id=order.id,
            completed_at=completed_at,
            version=extract_version(order.stdout_tail, order.result),
        )

    for item in latest.values():
        summary["total"] += 1
        summary[item.status] += 1
        summary["by_group"].setdefault(item.group, []).append(item)
    return summary
