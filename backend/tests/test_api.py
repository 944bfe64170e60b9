"""
Runner Control Plane - Operator API Tests
=========================================

HTTP surface over infrastructure, orders, routes, gating, deployments
and the playbook catalog. Error bodies carry a stable machine code.
"""

from uuid import uuid4

from httpx import AsyncClient

from control_plane.core.models import Infrastructure, Runner

API = "/api/v1"


# ==========================================================================
# Health & Infrastructure
# ==========================================================================

class TestHealth:

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"


class TestInfrastructureAPI:

    async def test_create_and_get(self, client: AsyncClient):
        response = await client.post(
            f"{API}/infrastructures",
            json={"name": "vps-02", "capabilities": {"docker": "installed", "provider": "hetzner"}},
        )
        assert response.status_code == 201
        created = response.json()
        assert created["observed_capabilities"] == {}

        fetched = await client.get(f"{API}/infrastructures/{created['id']}")
        assert fetched.json()["capabilities"]["docker"] == "installed"

    async def test_invalid_declared_capability(self, client: AsyncClient):
        response = await client.post(
            f"{API}/infrastructures",
            json={"name": "vps-03", "capabilities": {"docker": "maybe"}},
        )
        assert response.status_code == 422

    async def test_unknown_infrastructure(self, client: AsyncClient):
        response = await client.get(f"{API}/infrastructures/{uuid4()}")
        assert response.status_code == 404

    async def test_delete_unbinds_runner(
        self,
        client: AsyncClient,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        response = await client.delete(f"{API}/infrastructures/{infrastructure.id}")
        assert response.status_code == 200

        fetched = (await client.get(f"{API}/runners/{runner.id}")).json()
        assert fetched["infrastructure_id"] is None

    async def test_delete_refused_while_route_claimed(self, client: AsyncClient, infrastructure: Infrastructure):
        created = await client.post(
            f"{API}/nginx-routes",
            json={"infrastructure_id": str(infrastructure.id), "domain": "app.example.com"},
        )
        route_id = created.json()[0]["id"]
        await client.post(f"{API}/nginx-routes/{route_id}/claim", json={"consumer": "supabase"})

        response = await client.delete(f"{API}/infrastructures/{infrastructure.id}")
        assert response.status_code == 409
        assert response.json()["code"] == "ROUTE_IN_USE"

        route = await client.get(f"{API}/nginx-routes/{route_id}")
        assert route.json()["consumed_by"] == "supabase"
        assert (await client.get(f"{API}/infrastructures/{infrastructure.id}")).status_code == 200


# ==========================================================================
# Orders
# ==========================================================================

class TestOrdersAPI:

    async def test_create_list_and_cancel(self, client: AsyncClient, runner: Runner):
        response = await client.post(
            f"{API}/orders",
            json={
                "runner_id": str(runner.id),
                "category": "maintenance",
                "name": "Check disk",
                "command": "df -h",
            },
        )
        assert response.status_code == 201
        order = response.json()
        assert order["status"] == "pending"
        assert order["infrastructure_id"] == str(runner.infrastructure_id)

        listed = (await client.get(f"{API}/orders", params={"runner_id": str(runner.id)})).json()
        assert [o["id"] for o in listed] == [order["id"]]

        cancelled = await client.post(f"{API}/orders/{order['id']}/cancel")
        assert cancelled.json()["status"] == "cancelled"

        again = await client.post(f"{API}/orders/{order['id']}/cancel")
        assert again.status_code == 409
        assert again.json()["code"] == "INVALID_TRANSITION"

    async def test_require_online_with_offline_runner(self, client: AsyncClient, offline_runner: Runner):
        response = await client.post(
            f"{API}/orders",
            json={
                "runner_id": str(offline_runner.id),
                "category": "detection",
                "name": "Detect Docker",
                "command": "docker --version",
                "require_online": True,
            },
        )
        assert response.status_code == 503
        assert response.json()["code"] == "NO_ACTIVE_RUNNER"

    async def test_unknown_order(self, client: AsyncClient):
        response = await client.get(f"{API}/orders/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


# ==========================================================================
# Routes
# ==========================================================================

class TestRoutesAPI:

    async def test_root_and_subdomain_creates_two_rows(self, client: AsyncClient, infrastructure: Infrastructure):
        response = await client.post(
            f"{API}/caddy-routes",
            json={
                "infrastructure_id": str(infrastructure.id),
                "domain": "Example.com",
                "subdomain": "app",
                "routing_type": "root_and_subdomain",
                "backend_port": 8080,
            },
        )
        assert response.status_code == 201
        routes = response.json()
        assert [r["full_domain"] for r in routes] == ["example.com", "app.example.com"]
        assert all(r["https_status"] == "pending" for r in routes)

        nginx = (await client.get(f"{API}/nginx-routes")).json()
        assert nginx == []

    async def test_duplicate_domain(self, client: AsyncClient, infrastructure: Infrastructure):
        body = {"infrastructure_id": str(infrastructure.id), "domain": "dup.example.com"}
        await client.post(f"{API}/caddy-routes", json=body)
        response = await client.post(f"{API}/caddy-routes", json=body)
        assert response.status_code == 422

    async def test_provision_without_runner(self, client: AsyncClient, infrastructure: Infrastructure):
        created = await client.post(
            f"{API}/caddy-routes",
            json={"infrastructure_id": str(infrastructure.id), "domain": "lonely.example.com"},
        )
        route_id = created.json()[0]["id"]

        response = await client.post(f"{API}/caddy-routes/{route_id}/provision")
        assert response.status_code == 503
        assert response.json()["code"] == "NO_ACTIVE_RUNNER"

    async def test_provision_dispatches_order(
        self,
        client: AsyncClient,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        created = await client.post(
            f"{API}/caddy-routes",
            json={"infrastructure_id": str(infrastructure.id), "domain": "shop.example.com"},
        )
        route_id = created.json()[0]["id"]

        response = await client.post(f"{API}/caddy-routes/{route_id}/provision")
        assert response.status_code == 200
        data = response.json()
        assert data["route"]["https_status"] == "provisioning"
        assert data["order"]["runner_id"] == str(runner.id)
        assert data["route"]["verification_order_id"] == data["order"]["id"]

    async def test_claimed_route_cannot_be_deleted(self, client: AsyncClient, infrastructure: Infrastructure):
        created = await client.post(
            f"{API}/caddy-routes",
            json={"infrastructure_id": str(infrastructure.id), "domain": "api.example.com"},
        )
        route_id = created.json()[0]["id"]

        claimed = await client.post(f"{API}/caddy-routes/{route_id}/claim", json={"consumer": "app:shop"})
        assert claimed.json()["consumed_by"] == "app:shop"

        response = await client.delete(f"{API}/caddy-routes/{route_id}")
        assert response.status_code == 409
        assert response.json()["code"] == "ROUTE_IN_USE"

        await client.post(f"{API}/caddy-routes/{route_id}/release")
        assert (await client.delete(f"{API}/caddy-routes/{route_id}")).status_code == 200


# ==========================================================================
# Platform Gating
# ==========================================================================

class TestPlatformAPI:

    async def test_gating_reports_first_unmet(
        self,
        client: AsyncClient,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        response = await client.get(f"{API}/platform/gating", params={"infrastructure_id": str(infrastructure.id)})
        assert response.status_code == 200
        data = response.json()
        assert data["runner_id"] == str(runner.id)
        assert data["all_met"] is False
        assert data["first_unmet"]["key"] == "docker_installed"
        assert data["can_install_prerequisites"] is True

    async def test_install_unknown_service(
        self,
        client: AsyncClient,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        response = await client.post(
            f"{API}/platform/infrastructures/{infrastructure.id}/services/no-such-service/install"
        )
        assert response.status_code == 404

    async def test_install_prerequisites(
        self,
        client: AsyncClient,
        infrastructure: Infrastructure,
        runner: Runner,
    ):
        response = await client.post(f"{API}/platform/infrastructures/{infrastructure.id}/prerequisites")
        assert response.status_code == 202
        assert len(response.json()["orders"]) == 3


# ==========================================================================
# Deployments
# ==========================================================================

class TestDeploymentsAPI:

    def _body(self, runner: Runner) -> dict:
        return {
            "app_name": "shop",
            "repo_url": "https://github.com/acme/shop.git",
            "deploy_type": "docker_compose",
            "runner_id": str(runner.id),
            "port": 8080,
        }

    async def test_preview_matches_created_plan(self, client: AsyncClient, runner: Runner):
        preview = await client.post(f"{API}/deployments/preview", json=self._body(runner))
        assert preview.status_code == 200

        created = await client.post(f"{API}/deployments", json=self._body(runner))
        assert created.status_code == 201
        deployment = created.json()
        assert deployment["status"] == "ready"
        assert [s["command"] for s in deployment["steps"]] == [s["command"] for s in preview.json()]

    async def test_start(self, client: AsyncClient, runner: Runner):
        created = (await client.post(f"{API}/deployments", json=self._body(runner))).json()

        response = await client.post(f"{API}/deployments/{created['id']}/start")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["steps"][0]["status"] == "running"
        assert data["steps"][0]["order_id"] is not None

        again = await client.post(f"{API}/deployments/{created['id']}/start")
        assert again.status_code == 409

    async def test_invalid_app_name(self, client: AsyncClient, runner: Runner):
        body = self._body(runner)
        body["app_name"] = "../etc"
        response = await client.post(f"{API}/deployments", json=body)
        assert response.status_code == 422


# ==========================================================================
# Playbooks & Capabilities
# ==========================================================================

class TestPlaybooksAPI:

    async def test_list_by_group(self, client: AsyncClient):
        response = await client.get(f"{API}/playbooks", params={"group": "docker"})
        assert response.status_code == 200
        keys = {p["key"] for p in response.json()}
        assert "docker.install_engine" in keys
        assert all(k.startswith("docker.") for k in keys)

    async def test_unknown_playbook(self, client: AsyncClient):
        response = await client.get(f"{API}/playbooks/nothing.here")
        assert response.status_code == 404


class TestCapabilitiesAPI:

    async def test_declared_view(self, client: AsyncClient, infrastructure: Infrastructure):
        response = await client.get(f"{API}/capabilities/infrastructures/{infrastructure.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["target_type"] == "infrastructure"

    async def test_unknown_infrastructure(self, client: AsyncClient):
        response = await client.get(f"{API}/capabilities/infrastructures/{uuid4()}")
        assert response.status_code == 404
