"""Domain exceptions for the control plane.

None of these are raised after a partial write: callers can surface them to
the operator and retry from the stored state.
"""

from typing import Optional


class ControlPlaneError(Exception):
    """Base class for recoverable control-plane errors."""

    code = "CONTROL_PLANE_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidTransition(ControlPlaneError):
    """Raised when a state change violates an Order/Route/Step state machine."""

    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id: object, current: str, requested: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"{entity} {entity_id}: cannot transition from '{current}' to '{requested}'"
        )


class NoActiveRunner(ControlPlaneError):
    """Raised when an operation needs an online runner and none is available."""

    code = "NO_ACTIVE_RUNNER"

    def __init__(self, infrastructure_id: Optional[object] = None, runner_id: Optional[object] = None) -> None:
        self.infrastructure_id = infrastructure_id
        self.runner_id = runner_id
        if runner_id is not None:
            message = f"Runner {runner_id} is offline"
        elif infrastructure_id is not None:
            message = f"No online runner for infrastructure {infrastructure_id}"
        else:
            message = "Runner offline"
        super().__init__(message)


class RouteInUse(ControlPlaneError):
    """Raised when a claimed route is deleted or claimed by another consumer."""

    code = "ROUTE_IN_USE"

    def __init__(self, full_domain: str, consumed_by: str) -> None:
        self.full_domain = full_domain
        self.consumed_by = consumed_by
        super().__init__(f"Route {full_domain} is in use by {consumed_by}")


class ParseFailure(ControlPlaneError):
    """Raised when order output carries no parseable structured data."""

    code = "PARSE_FAILURE"

    def __init__(self, message: str, raw_output: Optional[str] = None) -> None:
        self.raw_output = raw_output
        super().__init__(message)


class ValidationError(ControlPlaneError):
    """Raised for malformed input, before any write."""

    code = "VALIDATION_ERROR"


class NotFoundError(ControlPlaneError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class RunnerAuthError(ControlPlaneError):
    """Raised when a runner token is missing or unknown."""

    code = "RUNNER_AUTH_FAILED"


class PlaybookCatalogError(ControlPlaneError):
    """Raised when the playbook catalog cannot be read."""

    code = "PLAYBOOK_CATALOG_ERROR"
