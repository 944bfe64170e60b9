"""
Runner Control Plane - Deployment Planner Tests
===============================================
"""

from types import SimpleNamespace

import pytest

from control_plane.core.exceptions import ValidationError
from control_plane.core.fleet.planner import (
    DeploymentInput,
    can_start_step,
    generate_steps,
    render_env_file,
    rollback_steps,
)
from control_plane.core.models import (
    DeploymentStepStatus,
    DeploymentStepType,
    DeploymentType,
    HealthcheckType,
)


def _input(**overrides) -> DeploymentInput:
    values = dict(
        app_name="blog",
        repo_url="https://github.com/acme/blog.git",
        deploy_type=DeploymentType.NODEJS,
        apps_root="/opt/apps",
    )
    values.update(overrides)
    return DeploymentInput(**values)


def _types(steps) -> list[DeploymentStepType]:
    return [s.step_type for s in steps]


class TestGenerateSteps:

    def test_nodejs_sequence(self):
        steps = generate_steps(_input())
        assert _types(steps) == [
            DeploymentStepType.CLONE_REPO,
            DeploymentStepType.CHECKOUT,
            DeploymentStepType.INSTALL_DEPS,
            DeploymentStepType.BUILD,
            DeploymentStepType.START,
            DeploymentStepType.HEALTHCHECK,
            DeploymentStepType.FINALIZE,
        ]
        assert [s.step_order for s in steps] == list(range(len(steps)))

    def test_docker_compose_sequence(self):
        steps = generate_steps(_input(deploy_type=DeploymentType.DOCKER_COMPOSE))
        assert _types(steps)[2:4] == [DeploymentStepType.INSTALL_DEPS, DeploymentStepType.START]
        assert "docker compose up -d" in steps[3].command

    def test_env_and_expose_steps(self):
        steps = generate_steps(_input(
            env_vars={"NODE_ENV": "production", "API_URL": "https://api.example.com"},
            expose_via_caddy=True,
            domain="Blog.Example.com",
        ))
        types = _types(steps)
        assert types[2] == DeploymentStepType.ENV_WRITE
        assert types[-2] == DeploymentStepType.EXPOSE
        assert types[-1] == DeploymentStepType.FINALIZE
        assert "blog.example.com" in steps[-2].command
        assert steps[2].command.index("API_URL") < steps[2].command.index("NODE_ENV")

    def test_plan_is_deterministic(self):
        request = dict(env_vars={"B": "2", "A": "1"}, expose_via_caddy=True, domain="blog.example.com")
        first = generate_steps(_input(**request))
        second = generate_steps(_input(**request))
        assert first == second

    def test_commands_quote_input(self):
        steps = generate_steps(_input(branch="feature; rm -rf /"))
        assert "'feature; rm -rf /'" in steps[0].command

    def test_working_dir(self):
        steps = generate_steps(_input())
        assert "/opt/apps/blog" in steps[0].command

    def test_tcp_healthcheck(self):
        steps = generate_steps(_input(healthcheck_type=HealthcheckType.TCP, port=8080))
        health = next(s for s in steps if s.step_type == DeploymentStepType.HEALTHCHECK)
        assert "nc -z localhost 8080" in health.command

    def test_http_healthcheck_path(self):
        steps = generate_steps(_input(healthcheck_value="healthz"))
        health = next(s for s in steps if s.step_type == DeploymentStepType.HEALTHCHECK)
        assert "http://localhost:3000/healthz" in health.command


class TestValidation:

    @pytest.mark.parametrize("overrides", [
        {"app_name": "../etc"},
        {"repo_url": "  "},
        {"branch": ""},
        {"port": 0},
        {"deploy_type": DeploymentType.CUSTOM},
        {"expose_via_caddy": True},
        {"env_vars": {"1BAD": "x"}},
        {"env_vars": {"K": "v\nENVEOF\ntouch /tmp/x"}},
        {"env_vars": {"K": "line\r"}},
    ])
    def test_rejected(self, overrides: dict):
        with pytest.raises(ValidationError):
            generate_steps(_input(**overrides))

    def test_custom_with_start_command(self):
        steps = generate_steps(_input(deploy_type=DeploymentType.CUSTOM, start_command="./run.sh"))
        assert DeploymentStepType.START in _types(steps)


class TestHelpers:

    def test_render_env_file_escapes(self):
        assert render_env_file({"B": 'say "hi"', "A": "1"}) == 'A="1"\nB="say \\"hi\\""'

    def test_rollback_steps(self):
        steps = rollback_steps(_input(deploy_type=DeploymentType.DOCKER_COMPOSE))
        assert _types(steps) == [DeploymentStepType.STOP, DeploymentStepType.ROLLBACK]
        assert "docker compose down" in steps[0].command

    def test_can_start_step(self):
        steps = [
            SimpleNamespace(step_order=0, status=DeploymentStepStatus.APPLIED),
            SimpleNamespace(step_order=1, status=DeploymentStepStatus.PENDING),
            SimpleNamespace(step_order=2, status=DeploymentStepStatus.PENDING),
        ]
        assert can_start_step(steps, 1) is True
        assert can_start_step(steps, 2) is False
        assert can_start_step(steps, 0) is False
        assert can_start_step(steps, 5) is False
