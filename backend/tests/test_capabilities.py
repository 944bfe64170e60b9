"""
Runner Control Plane - Capability Reconciliation Tests
======================================================
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.exceptions import ParseFailure
from control_plane.core.fleet.capabilities import (
    CapabilityEngine,
    extract_reported,
    installed_summary,
    merge_observations,
    reconciled_view,
)
from control_plane.core.fleet.orders import OrderService
from control_plane.core.models import (
    CapabilityValue,
    Infrastructure,
    Order,
    OrderCategory,
    OrderStatus,
    Runner,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
VERIFIES = {"docker.install_engine": ["docker.installed"]}


def _order(**kwargs) -> Order:
    return Order(
        id=uuid4(),
        runner_id=uuid4(),
        category=OrderCategory.INSTALLATION,
        name="Install",
        command="true",
        status=OrderStatus.COMPLETED,
        meta=kwargs.pop("meta", {}),
        **kwargs,
    )


async def _completed_order(db: AsyncSession, runner: Runner, **report) -> Order:
    service = OrderService(db)
    order = await service.create(
        runner_id=runner.id,
        category=OrderCategory.INSTALLATION,
        name="Install Docker",
        description=report.pop("description", "[docker.install_engine] Install Docker"),
        command="curl -fsSL https://get.docker.com | sh",
    )
    return await service.report(order.id, "completed", exit_code=report.pop("exit_code", 0), **report)


# ==========================================================================
# Extraction
# ==========================================================================

class TestExtractReported:

    def test_version_banner(self):
        order = _order(stdout_tail="Docker version 24.0.7, build afdd53b")
        assert extract_reported(order, {}) == {"docker.installed": CapabilityValue.INSTALLED}

    def test_playbook_verifies(self):
        order = _order(description="[docker.install_engine] Install Docker", stdout_tail="done")
        assert extract_reported(order, VERIFIES) == {"docker.installed": CapabilityValue.INSTALLED}

    def test_result_overrides_stdout(self):
        order = _order(
            stdout_tail="Docker version 24.0.7",
            result={"capabilities": {"docker.installed": "not_installed"}},
        )
        assert extract_reported(order, {})["docker.installed"] == CapabilityValue.NOT_INSTALLED

    def test_embedded_json(self):
        order = _order(stdout_tail='noise\n{"capabilities": {"git.installed": "2.43.0"}}\n')
        assert extract_reported(order, {}) == {"git.installed": CapabilityValue.INSTALLED}

    def test_nothing_recognizable(self):
        with pytest.raises(ParseFailure):
            extract_reported(_order(stdout_tail="hello world"), {})


# ==========================================================================
# Merge & View
# ==========================================================================

class TestMerge:

    def test_changed_and_refreshed(self):
        order_id = uuid4()
        merged, changed, refreshed = merge_observations(
            declared={"docker.installed": "installed", "git.installed": "not_installed"},
            observed={},
            reported={
                "docker.installed": CapabilityValue.INSTALLED,
                "git.installed": CapabilityValue.INSTALLED,
            },
            order_id=order_id,
            observed_at=NOW,
        )
        assert changed == ["git.installed"]
        assert refreshed == ["docker.installed"]
        assert merged["git.installed"]["order_id"] == str(order_id)

    def test_newer_evidence_is_kept(self):
        observed = {
            "docker.installed": {
                "status": "not_installed",
                "observed_at": (NOW + timedelta(hours=1)).isoformat(),
                "order_id": "newer",
            }
        }
        merged, changed, refreshed = merge_observations(
            {}, observed, {"docker.installed": CapabilityValue.INSTALLED}, uuid4(), NOW
        )
        assert merged == observed
        assert changed == refreshed == []

    def test_merge_is_idempotent(self):
        order_id = uuid4()
        reported = {"docker.installed": CapabilityValue.INSTALLED}
        once, _, _ = merge_observations({}, {}, reported, order_id, NOW)
        twice, changed, _ = merge_observations({}, once, reported, order_id, NOW)
        assert once == twice
        assert changed == []


class TestReconciledView:

    def test_observed_wins_over_declared(self):
        view = reconciled_view(
            declared={"docker.installed": "not_installed", "provider": "hetzner"},
            observed={"docker.installed": {"status": "installed", "observed_at": NOW.isoformat()}},
            now=NOW,
        )
        assert len(view) == 1
        assert view[0].value == CapabilityValue.INSTALLED
        assert view[0].source == "observed"
        assert view[0].stale is False

    def test_old_observation_is_stale(self):
        view = reconciled_view(
            declared={},
            observed={"docker.installed": {"status": "installed", "observed_at": (NOW - timedelta(days=2)).isoformat()}},
            now=NOW,
        )
        assert view[0].stale is True

    def test_self_reported_between_declared_and_observed(self):
        view = reconciled_view(
            declared={"git.installed": "unknown"},
            observed={},
            now=NOW,
            self_reported={"git.installed": "installed"},
        )
        assert view[0].source == "self_reported"
        assert view[0].value == CapabilityValue.INSTALLED


# ==========================================================================
# Engine
# ==========================================================================

class TestCapabilityEngine:

    async def test_completed_order_updates_infrastructure(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        engine = CapabilityEngine(VERIFIES)
        order = await _completed_order(db_session, runner, stdout_tail="Docker version 24.0.7")

        outcome = await engine.process_order(db_session, order)
        assert outcome.applied is True
        assert outcome.target_type == "infrastructure"
        assert outcome.changed == ["docker.installed"]

        await db_session.refresh(infrastructure)
        assert infrastructure.observed_capabilities["docker.installed"]["status"] == "installed"
        assert infrastructure.observed_capabilities["docker.installed"]["order_id"] == str(order.id)

    async def test_processing_twice_is_a_noop(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        order = await _completed_order(db_session, runner, stdout_tail="Docker version 24.0.7")
        await CapabilityEngine(VERIFIES).process_order(db_session, order)
        await db_session.refresh(infrastructure)
        before = dict(infrastructure.observed_capabilities)

        # A fresh engine has no memory; the recorded order id still stops it
        outcome = await CapabilityEngine(VERIFIES).process_order(db_session, order)
        assert outcome.applied is False
        assert outcome.skipped_reason == "already recorded"

        await db_session.refresh(infrastructure)
        assert infrastructure.observed_capabilities == before

    async def test_failed_order_changes_nothing(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        order = await _completed_order(db_session, runner, exit_code=1, stderr_tail="E: apt failed")
        assert order.status == OrderStatus.FAILED

        outcome = await CapabilityEngine(VERIFIES).process_order(db_session, order)
        assert outcome.applied is False
        assert outcome.error == "E: apt failed"

        await db_session.refresh(infrastructure)
        assert infrastructure.observed_capabilities == {}

    async def test_unparseable_output_is_reported(
        self,
        db_session: AsyncSession,
        runner: Runner,
    ):
        order = await _completed_order(db_session, runner, description="Misc", stdout_tail="nothing here")
        outcome = await CapabilityEngine({}).process_order(db_session, order)
        assert outcome.applied is False
        assert outcome.error is not None

    async def test_installed_summary(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        await _completed_order(db_session, runner, stdout_tail="Docker version 24.0.7")
        summary = await installed_summary(db_session, infrastructure_id=infrastructure.id)
        assert summary["total"] == 1
        assert summary["active"] == 1
        item = summary["by_group"]["docker"][0]
        assert item.playbook_key == "docker.install_engine"
        assert item.version == "24.0.7"
