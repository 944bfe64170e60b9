"""
Runner Fleet Control Plane
==========================

Order lifecycle and status reconciliation for a fleet of runner agents.

Components:
- OrderService: Order state machine (pending -> running -> terminal)
- CapabilityEngine: Declared/observed capability reconciliation
- RouteRegistry: Caddy/Nginx routes, HTTPS provisioning, claims
- PlatformGating: Prerequisite gates and platform service installs
- DeploymentExecutor: Step plans run as sequential orders
- RunnerRegistry: Runner agent contract (register, heartbeat, poll, report)
- OrderDelivery: Push-first order delivery with poll reconciliation
"""

from control_plane.core.fleet.capabilities import CapabilityEngine, capability_engine
from control_plane.core.fleet.delivery import OrderDelivery
from control_plane.core.fleet.deployments import DeploymentExecutor
from control_plane.core.fleet.events import EventChannel, OrderMirror, event_channel
from control_plane.core.fleet.gating import PlatformGating
from control_plane.core.fleet.liveness import derive_liveness
from control_plane.core.fleet.orders import OrderService
from control_plane.core.fleet.planner import DeploymentInput, generate_steps
from control_plane.core.fleet.routing import RouteRegistry
from control_plane.core.fleet.runners import RunnerRegistry

__all__ = [
    "CapabilityEngine",
    "capability_engine",
    "OrderDelivery",
    "DeploymentExecutor",
    "EventChannel",
    "OrderMirror",
    "event_channel",
    "PlatformGating",
    "derive_liveness",
    "OrderService",
    "DeploymentInput",
    "generate_steps",
    "RouteRegistry",
    "RunnerRegistry",
]
