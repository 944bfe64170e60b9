"""
Deployment Step Planner
=======================

Pure expansion of a deployment request into ordered, typed steps:

    clone_repo, checkout, [env_write], <type-specific>, healthcheck,
    [expose], finalize

The same input always yields the same steps, byte for byte, which is what
deployment preview relies on.
"""

import json
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from control_plane.core.config import settings
from control_plane.core.exceptions import ValidationError
from control_plane.core.models import (
    DeploymentStepStatus,
    DeploymentStepType,
    DeploymentType,
    HealthcheckType,
)

APP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DONE_STEP_STATUSES = frozenset({DeploymentStepStatus.APPLIED, DeploymentStepStatus.SKIPPED})

DEFAULT_NODE_START = "npm start"
GUARDED_NPM_BUILD = "if [ -f package.json ] && grep -q '\"build\"' package.json; then npm run build; else echo \"No build script\"; fi"


@dataclass
class DeploymentInput:
    app_name: str
    repo_url: str
    deploy_type: DeploymentType
    branch: str = "main"
    port: int = 3000
    start_command: Optional[str] = None
    build_command: Optional[str] = None
    healthcheck_type: HealthcheckType = HealthcheckType.HTTP
    healthcheck_value: Optional[str] = None
    env_vars: dict[str, str] = field(default_factory=dict)
    expose_via_caddy: bool = False
    domain: Optional[str] = None
    apps_root: Optional[str] = None

    @property
    def working_dir(self) -> str:
        root = (self.apps_root or settings.APPS_ROOT).rstrip("/")
        return f"{root}/{self.app_name}"


@dataclass(frozen=True)
class StepDraft:
    step_order: int
    step_type: DeploymentStepType
    step_name: str
    command: str


def validate_input(plan_input: DeploymentInput) -> None:
    if not APP_NAME_PATTERN.match(plan_input.app_name or ""):
        raise ValidationError(f"Invalid app name '{plan_input.app_name}'")
    if not (plan_input.repo_url or "").strip():
        raise ValidationError("Repository URL must not be empty")
    if not (plan_input.branch or "").strip():
        raise ValidationError("Branch must not be empty")
    if not 1 <= plan_input.port <= 65535:
        raise ValidationError(f"Port must be between 1 and 65535, got {plan_input.port}")
    if plan_input.deploy_type == DeploymentType.CUSTOM and not (plan_input.start_command or "").strip():
        raise ValidationError("Custom deployments require a start command")
    if plan_input.expose_via_caddy and not (plan_input.domain or "").strip():
        raise ValidationError("Exposing via Caddy requires a domain")
    for key, value in plan_input.env_vars.items():
        if not ENV_KEY_PATTERN.match(key):
            raise ValidationError(f"Invalid environment variable name '{key}'")
        # The env file is written through a heredoc; one line per variable
        if "\n" in str(value) or "\r" in str(value):
            raise ValidationError(f"Environment variable '{key}' must be a single line")


def render_env_file(env_vars: dict[str, str]) -> str:
    """KEY="value" lines, sorted by key."""
    lines = []
    for key in sorted(env_vars):
        value = str(env_vars[key]).replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'{key}="{value}"')
    return "\n".join(lines)


def healthcheck_command(plan_input: DeploymentInput) -> str:
    port = plan_input.port
    if plan_input.healthcheck_type == HealthcheckType.TCP:
        return f"sleep 5 && for i in 1 2 3 4 5; do nc -z localhost {port} && exit 0; sleep 3; done; exit 1"
    if plan_input.healthcheck_type == HealthcheckType.COMMAND:
        return plan_input.healthcheck_value or "exit 0"
    path = plan_input.healthcheck_value or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    url = shlex.quote(f"http://localhost:{port}{path}")
    return f"sleep 5 && for i in 1 2 3 4 5; do curl -sf {url} && exit 0; sleep 3; done; exit 1"


def _background(wd: str, plan_input: DeploymentInput, command: str) -> str:
    log = shlex.quote(f"/var/log/{plan_input.app_name}.log")
    return f"cd {wd} && PORT={plan_input.port} nohup {command} > {log} 2>&1 &"


def _type_steps(plan_input: DeploymentInput, wd: str) -> list[tuple[DeploymentStepType, str, str]]:
    if plan_input.deploy_type == DeploymentType.NODEJS:
        build = plan_input.build_command or GUARDED_NPM_BUILD
        return [
            (DeploymentStepType.INSTALL_DEPS, "Install Dependencies",
             f"cd {wd} && (npm ci || npm install)"),
            (DeploymentStepType.BUILD, "Build Application", f"cd {wd} && {build}"),
            (DeploymentStepType.START, "Start Application",
             _background(wd, plan_input, plan_input.start_command or DEFAULT_NODE_START)),
        ]

    if plan_input.deploy_type == DeploymentType.DOCKER_COMPOSE:
        return [
            (DeploymentStepType.INSTALL_DEPS, "Pull Images", f"cd {wd} && docker compose pull"),
            (DeploymentStepType.START, "Start Docker Compose", f"cd {wd} && docker compose up -d"),
        ]

    if plan_input.deploy_type == DeploymentType.STATIC_SITE:
        build = plan_input.build_command or GUARDED_NPM_BUILD
        target = shlex.quote(f"/var/www/{plan_input.app_name}")
        return [
            (DeploymentStepType.INSTALL_DEPS, "Install Dependencies",
             f"cd {wd} && if [ -f package.json ]; then npm ci || npm install; else echo \"No dependencies\"; fi"),
            (DeploymentStepType.BUILD, "Build Site", f"cd {wd} && {build}"),
            (DeploymentStepType.START, "Publish Static Files",
             f"cd {wd} && mkdir -p {target} && "
             f"if [ -d dist ]; then SRC=dist; elif [ -d build ]; then SRC=build; else SRC=.; fi && "
             f"cp -r \"$SRC\"/. {target}/"),
        ]

    return [
        (DeploymentStepType.START, "Start Application", _background(wd, plan_input, plan_input.start_command)),
    ]


def generate_steps(plan_input: DeploymentInput) -> list[StepDraft]:
    """Expand a deployment request into its ordered step plan."""
    validate_input(plan_input)
    wd = shlex.quote(plan_input.working_dir)
    branch = shlex.quote(plan_input.branch)
    repo = shlex.quote(plan_input.repo_url.strip())

    plan: list[tuple[DeploymentStepType, str, str]] = [
        (DeploymentStepType.CLONE_REPO, "Clone Repository",
         f"rm -rf {wd} && git clone --depth 1 --branch {branch} {repo} {wd}"),
        (DeploymentStepType.CHECKOUT, "Checkout Branch", f"cd {wd} && git checkout {branch}"),
    ]

    if plan_input.env_vars:
        plan.append((
            DeploymentStepType.ENV_WRITE,
            "Write Environment Variables",
            f"cat > {wd}/.env << 'ENVEOF'\n{render_env_file(plan_input.env_vars)}\nENVEOF",
        ))

    plan.extend(_type_steps(plan_input, wd))
    plan.append((DeploymentStepType.HEALTHCHECK, "Health Check", healthcheck_command(plan_input)))

    if plan_input.expose_via_caddy:
        domain = plan_input.domain.strip().lower()
        block = f"{domain} {{\n  reverse_proxy localhost:{plan_input.port}\n}}"
        plan.append((
            DeploymentStepType.EXPOSE,
            "Configure Reverse Proxy",
            f"printf '\\n%s\\n' {shlex.quote(block)} >> /etc/caddy/Caddyfile && "
            "caddy reload --config /etc/caddy/Caddyfile",
        ))

    summary = json.dumps(
        {"status": "deployed", "app": plan_input.app_name, "port": plan_input.port, "working_dir": plan_input.working_dir},
        sort_keys=True,
    )
    plan.append((DeploymentStepType.FINALIZE, "Finalize Deployment", f"echo {shlex.quote(summary)}"))

    return [
        StepDraft(step_order=index, step_type=step_type, step_name=name, command=command)
        for index, (step_type, name, command) in enumerate(plan)
    ]


def rollback_steps(plan_input: DeploymentInput) -> list[StepDraft]:
    """Stop the running app and restore the previous checkout."""
    validate_input(plan_input)
    wd = shlex.quote(plan_input.working_dir)

    if plan_input.deploy_type == DeploymentType.DOCKER_COMPOSE:
        stop = f"cd {wd} && docker compose down"
    elif plan_input.deploy_type == DeploymentType.STATIC_SITE:
        stop = f"rm -rf {shlex.quote(f'/var/www/{plan_input.app_name}')}"
    else:
        stop = f"fuser -k {plan_input.port}/tcp || true"

    plan = [
        (DeploymentStepType.STOP, "Stop Application", stop),
        (DeploymentStepType.ROLLBACK, "Restore Previous Revision",
         f"cd {wd} && git fetch --depth 2 origin {shlex.quote(plan_input.branch)} && git reset --hard HEAD~1"),
    ]
    return [
        StepDraft(step_order=index, step_type=step_type, step_name=name, command=command)
        for index, (step_type, name, command) in enumerate(plan)
    ]


def can_start_step(steps: Iterable[Any], step_order: int) -> bool:
    """
    A step may start only when every lower-order step is applied or skipped
    and the step itself is still pending.
    """
    target = None
    for step in steps:
        if step.step_order == step_order:
            target = step
        elif step.step_order < step_order and step.status not in DONE_STEP_STATUSES:
            return False
    return target is not None and target.status == DeploymentStepStatus.PENDING
