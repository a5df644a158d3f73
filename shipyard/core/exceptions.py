"""
Error taxonomy for the orchestration engine.

Manifest-level errors are fatal and raised before any build starts.
Service-level errors are recorded on the failing service and only affect
its subtree of dependents.
"""
from typing import List, Optional


class ShipyardError(Exception):
    """Base class for all engine errors"""


class ManifestError(ShipyardError):
    """Invalid manifest; the run must not proceed for any service"""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        super().__init__("Invalid manifest: " + "; ".join(self.issues))


class CycleError(ManifestError):
    """Reference cycle between services"""

    def __init__(self, participants: List[str]):
        self.participants = sorted(participants)
        super().__init__(
            [f"Reference cycle between services: {', '.join(self.participants)}"]
        )


class ServiceError(ShipyardError):
    """Error scoped to a single service"""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class BuildError(ServiceError):
    """A build step exited unsuccessfully"""

    def __init__(
        self,
        service: str,
        message: str,
        exit_code: Optional[int] = None,
        output: str = "",
        transient: bool = False,
    ):
        self.exit_code = exit_code
        self.output = output
        self.transient = transient
        super().__init__(service, message)


class UnresolvedReferenceError(ServiceError):
    """A referenced address never materialized"""

    def __init__(self, service: str, target: str, root_cause: Optional[str] = None):
        self.target = target
        self.root_cause = root_cause
        message = f"reference to '{target}' could not be resolved"
        if root_cause:
            message += f" ({root_cause})"
        super().__init__(service, message)


class DeployError(ServiceError):
    """Post-build activation failed"""


class DeploymentTimeoutError(ShipyardError, TimeoutError):
    """A run, build or lock budget was exceeded"""

    def __init__(self, message: str, scope: str = "run", service: Optional[str] = None):
        self.scope = scope
        self.service = service
        super().__init__(message)


class InvalidTransitionError(ShipyardError):
    """A service run state change outside the state machine"""
