"""
Runner Control Plane - Platform Gating Tests
============================================
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.exceptions import NoActiveRunner, NotFoundError, ValidationError
from control_plane.core.fleet.gating import (
    DOCKER_GATES,
    SERVICES,
    GateContext,
    PlatformGating,
    compute_service_status,
    evaluate,
)
from control_plane.core.models import (
    CapabilityValue,
    Infrastructure,
    Order,
    OrderCategory,
    OrderStatus,
    Runner,
)


def _ready_context(**overrides) -> GateContext:
    values = dict(
        has_infra=True,
        has_runner=True,
        runner_online=True,
        docker_installed=True,
        docker_compose_installed=True,
    )
    values.update(overrides)
    return GateContext(**values)


async def _declare_docker(db: AsyncSession, infra: Infrastructure) -> None:
    infra.capabilities = {
        **infra.capabilities,
        "docker.installed": "installed",
        "docker.compose.installed": "installed",
    }
    await db.commit()


# ==========================================================================
# Pure Evaluation
# ==========================================================================

class TestEvaluate:

    def test_all_met(self):
        result = evaluate(_ready_context())
        assert result.all_met is True
        assert result.first_unmet is None
        assert result.missing == []

    def test_first_unmet_follows_canonical_order(self):
        result = evaluate(_ready_context(runner_online=False, docker_installed=False))
        assert result.first_unmet.key == "runner_online"
        assert result.missing == ["Runner online", "Docker installed"]

    def test_nothing_selected(self):
        result = evaluate(GateContext())
        assert result.first_unmet.key == "has_infra"
        assert len(result.missing) == len(DOCKER_GATES)
        assert result.can_install_prerequisites is False

    def test_can_install_prerequisites(self):
        assert evaluate(_ready_context(docker_installed=False)).can_install_prerequisites is True
        assert evaluate(_ready_context()).can_install_prerequisites is False
        assert evaluate(_ready_context(runner_online=False, docker_installed=False)).can_install_prerequisites is False

    def test_extras_are_gates(self):
        ctx = _ready_context(extras={"git_installed": False})
        result = evaluate(ctx, DOCKER_GATES + ("git_installed",))
        assert result.first_unmet.label == "Git installed"


class TestServiceStatus:

    def test_installed_from_capabilities(self):
        status, _ = compute_service_status(
            SERVICES["redis"], {"redis.installed": CapabilityValue.INSTALLED}, [], _ready_context()
        )
        assert status == "installed"

    def test_installing_while_order_active(self):
        order = Order(
            category=OrderCategory.INSTALLATION,
            name="Install Redis",
            command="true",
            description="[redis.install] Install Redis",
            status=OrderStatus.RUNNING,
        )
        status, last_order = compute_service_status(SERVICES["redis"], {}, [order], _ready_context())
        assert status == "installing"
        assert last_order is order

    def test_precheck_failed(self):
        status, _ = compute_service_status(SERVICES["redis"], {}, [], _ready_context(docker_installed=False))
        assert status == "precheck_failed"

    def test_not_configured(self):
        status, _ = compute_service_status(SERVICES["caddy"], {}, [], GateContext(has_infra=True))
        assert status == "not_configured"


# ==========================================================================
# Stored State
# ==========================================================================

class TestPlatformGating:

    async def test_snapshot_reads_capabilities(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        await _declare_docker(db_session, infrastructure)
        _, result = await PlatformGating(db_session).gating(infrastructure.id)
        assert result.all_met is True

    async def test_offline_runner_blocks(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        offline_runner: Runner,
    ):
        _, result = await PlatformGating(db_session).gating(infrastructure.id)
        assert result.first_unmet.key == "runner_online"

    async def test_install_prerequisites_dispatches_three_orders(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        orders = await PlatformGating(db_session).install_prerequisites(infrastructure.id)
        assert [o.meta["playbook_key"] for o in orders] == [
            "system.packages.base",
            "docker.install_engine",
            "docker.install_compose",
        ]
        assert all(o.runner_id == runner.id for o in orders)

    async def test_install_prerequisites_needs_online_runner(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        offline_runner: Runner,
    ):
        with pytest.raises(NoActiveRunner):
            await PlatformGating(db_session).install_prerequisites(infrastructure.id)

    async def test_install_service_blocked_by_first_unmet_gate(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        with pytest.raises(ValidationError, match="Docker installed"):
            await PlatformGating(db_session).install_service(infrastructure.id, "redis")

    async def test_install_service_is_coalesced(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        await _declare_docker(db_session, infrastructure)
        gating = PlatformGating(db_session)

        first = await gating.install_service(infrastructure.id, "redis")
        second = await gating.install_service(infrastructure.id, "redis")
        assert len(first) == 1
        assert [o.id for o in second] == [first[0].id]

    async def test_unknown_service(self, db_session: AsyncSession, infrastructure: Infrastructure):
        with pytest.raises(NotFoundError):
            await PlatformGating(db_session).install_service(infrastructure.id, "kafka")
