"""
Runner Control Plane - Liveness Tests
=====================================

Liveness is derived from (status, last_seen_at, now), never trusted from
the stored status alone.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.fleet.liveness import derive_liveness, online_runner_for, parse_runner_status
from control_plane.core.models import Infrastructure, Runner, RunnerStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(seconds=60)


class TestDeriveLiveness:
    """Pure derivation."""

    def test_never_seen_is_offline(self):
        assert derive_liveness("online", None, NOW, WINDOW) == RunnerStatus.OFFLINE

    def test_recent_contact_is_online(self):
        assert derive_liveness("online", NOW - timedelta(seconds=5), NOW, WINDOW) == RunnerStatus.ONLINE

    def test_stored_online_but_silent_is_offline(self):
        """A crashed runner keeps status=online in the store."""
        assert derive_liveness("online", NOW - timedelta(seconds=90), NOW, WINDOW) == RunnerStatus.OFFLINE

    def test_window_boundary_is_offline(self):
        assert derive_liveness("online", NOW - WINDOW, NOW, WINDOW) == RunnerStatus.OFFLINE

    def test_stored_offline_with_recent_contact_is_online(self):
        assert derive_liveness("offline", NOW - timedelta(seconds=1), NOW, WINDOW) == RunnerStatus.ONLINE

    def test_paused_runner_stays_paused_while_alive(self):
        assert derive_liveness("paused", NOW - timedelta(seconds=1), NOW, WINDOW) == RunnerStatus.PAUSED
        assert derive_liveness("paused", NOW - timedelta(minutes=5), NOW, WINDOW) == RunnerStatus.OFFLINE

    def test_naive_timestamps_are_utc(self):
        naive = (NOW - timedelta(seconds=10)).replace(tzinfo=None)
        assert derive_liveness("online", naive, NOW, WINDOW) == RunnerStatus.ONLINE


class TestParseRunnerStatus:

    def test_known_values(self):
        assert parse_runner_status("ONLINE") == RunnerStatus.ONLINE
        assert parse_runner_status(RunnerStatus.PAUSED) == RunnerStatus.PAUSED

    def test_unknown_values_are_offline(self):
        assert parse_runner_status("busy") == RunnerStatus.OFFLINE
        assert parse_runner_status(None) == RunnerStatus.OFFLINE


class TestOnlineRunnerFor:

    async def test_picks_online_runner(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
        offline_runner: Runner,
    ):
        found = await online_runner_for(db_session, infrastructure.id)
        assert found is not None
        assert found.id == runner.id

    async def test_none_when_all_offline(
        self,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        offline_runner: Runner,
    ):
        assert await online_runner_for(db_session, infrastructure.id) is None
