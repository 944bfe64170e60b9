"""
Runner Control Plane - Runner Agent API Tests
=============================================

The agent contract: register, heartbeat, poll, wait and report.
"""

import asyncio
from uuid import uuid4

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.fleet.events import EventChannel
from control_plane.core.fleet.orders import OrderService
from control_plane.core.models import Infrastructure, OrderCategory, Runner, RunnerStatus

API = "/api/v1/runner"


async def _order_for(db: AsyncSession, runner: Runner, **kwargs):
    return await OrderService(db).create(
        runner_id=runner.id,
        category=kwargs.pop("category", OrderCategory.DETECTION),
        name=kwargs.pop("name", "Detect Docker"),
        command=kwargs.pop("command", "docker --version"),
        **kwargs,
    )


# ==========================================================================
# Registration
# ==========================================================================

class TestRegister:

    async def test_register_new_runner(self, client: AsyncClient):
        response = await client.post(
            f"{API}/register",
            json={
                "name": "edge-01",
                "token": "a-long-runner-token",
                "host_info": {"hostname": "edge-01"},
                "capabilities": {"docker": True, "provider": "ovh"},
            },
        )
        assert response.status_code == 201
        runner_id = response.json()["runner_id"]

        runner = (await client.get(f"/api/v1/runners/{runner_id}")).json()
        assert runner["liveness"] == "online"
        assert runner["capabilities"] == {"docker": "installed", "provider": "ovh"}

    async def test_reregister_by_name_keeps_id(self, client: AsyncClient):
        payload = {"name": "edge-02", "token": "first-token-value"}
        first = (await client.post(f"{API}/register", json=payload)).json()["runner_id"]

        payload["token"] = "second-token-value"
        second = (await client.post(f"{API}/register", json=payload)).json()["runner_id"]
        assert first == second

        old = await client.post(f"{API}/heartbeat", headers={"X-Runner-Token": "first-token-value"})
        assert old.status_code == 401

    async def test_token_held_by_other_runner(self, client: AsyncClient):
        await client.post(f"{API}/register", json={"name": "a", "token": "shared-token-1"})
        response = await client.post(f"{API}/register", json={"name": "b", "token": "shared-token-1"})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_short_token_rejected(self, client: AsyncClient):
        response = await client.post(f"{API}/register", json={"name": "a", "token": "short"})
        assert response.status_code == 422


# ==========================================================================
# Authentication
# ==========================================================================

class TestAuthentication:

    async def test_missing_token(self, client: AsyncClient):
        response = await client.post(f"{API}/heartbeat")
        assert response.status_code == 401
        assert response.json()["code"] == "RUNNER_AUTH_FAILED"

    async def test_unknown_token(self, client: AsyncClient, runner: Runner):
        response = await client.get(f"{API}/orders/poll", headers={"X-Runner-Token": "not-a-real-token"})
        assert response.status_code == 401

    async def test_heartbeat(self, client: AsyncClient, runner_headers: dict):
        response = await client.post(f"{API}/heartbeat", headers=runner_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "online"


# ==========================================================================
# Orders
# ==========================================================================

class TestPollAndReport:

    async def test_poll_returns_pending_oldest_first(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        runner: Runner,
        runner_headers: dict,
    ):
        first = await _order_for(db_session, runner, name="first")
        second = await _order_for(db_session, runner, name="second")

        response = await client.get(f"{API}/orders/poll", headers=runner_headers)
        assert response.status_code == 200
        ids = [o["id"] for o in response.json()["orders"]]
        assert ids == [str(first.id), str(second.id)]

    async def test_paused_runner_gets_nothing(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        runner: Runner,
        runner_headers: dict,
    ):
        await _order_for(db_session, runner)
        await client.put(f"/api/v1/runners/{runner.id}/status", json={"status": "paused"})

        response = await client.get(f"{API}/orders/poll", headers=runner_headers)
        assert response.json()["orders"] == []

        listed = (await client.get(f"/api/v1/runners/{runner.id}")).json()
        assert listed["status"] == RunnerStatus.PAUSED.value
        assert listed["liveness"] == "paused"

    async def test_paused_runner_wait_ignores_pushed_orders(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        channel: EventChannel,
        runner: Runner,
        runner_headers: dict,
    ):
        await client.put(f"/api/v1/runners/{runner.id}/status", json={"status": "paused"})

        waiter = asyncio.create_task(
            client.get(f"{API}/orders/wait", params={"timeout": 1}, headers=runner_headers)
        )
        await asyncio.sleep(0.05)
        await OrderService(db_session, channel).create(
            runner_id=runner.id,
            category=OrderCategory.DETECTION,
            name="Detect Docker",
            command="docker --version",
        )

        response = await asyncio.wait_for(waiter, timeout=5)
        assert response.status_code == 200
        assert response.json()["orders"] == []

    async def test_wait_returns_pending_immediately(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        runner: Runner,
        runner_headers: dict,
    ):
        order = await _order_for(db_session, runner)
        response = await client.get(f"{API}/orders/wait", params={"timeout": 1}, headers=runner_headers)
        assert response.status_code == 200
        assert [o["id"] for o in response.json()["orders"]] == [str(order.id)]

    async def test_wait_times_out_empty(self, client: AsyncClient, runner_headers: dict):
        response = await client.get(f"{API}/orders/wait", params={"timeout": 0.05}, headers=runner_headers)
        assert response.status_code == 200
        assert response.json()["orders"] == []

    async def test_report_completes_order_and_reconciles(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        infrastructure: Infrastructure,
        runner: Runner,
        runner_headers: dict,
    ):
        order = await _order_for(db_session, runner)

        running = await client.post(
            f"{API}/orders/report",
            headers=runner_headers,
            json={"order_id": str(order.id), "status": "running", "progress": 5},
        )
        assert running.json()["status"] == "running"

        response = await client.post(
            f"{API}/orders/report",
            headers=runner_headers,
            json={
                "order_id": str(order.id),
                "status": "completed",
                "exit_code": 0,
                "progress": 100,
                "stdout_tail": "Docker version 25.0.3, build 4debf41",
            },
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        capabilities = (await client.get(f"/api/v1/capabilities/infrastructures/{infrastructure.id}")).json()
        docker = next(c for c in capabilities["capabilities"] if c["key"] == "docker.installed")
        assert docker["value"] == "installed"
        assert docker["source"] == "observed"

    async def test_report_on_terminal_order_conflicts(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        runner: Runner,
        runner_headers: dict,
    ):
        order = await _order_for(db_session, runner)
        body = {"order_id": str(order.id), "status": "failed", "exit_code": 1}
        await client.post(f"{API}/orders/report", headers=runner_headers, json=body)

        response = await client.post(f"{API}/orders/report", headers=runner_headers, json=body)
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_report_for_foreign_order(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        offline_runner: Runner,
        runner_headers: dict,
    ):
        order = await _order_for(db_session, offline_runner)
        response = await client.post(
            f"{API}/orders/report",
            headers=runner_headers,
            json={"order_id": str(order.id), "status": "running"},
        )
        assert response.status_code == 404

    async def test_report_unknown_order(self, client: AsyncClient, runner_headers: dict):
        response = await client.post(
            f"{API}/orders/report",
            headers=runner_headers,
            json={"order_id": str(uuid4()), "status": "running"},
        )
        assert response.status_code == 404
