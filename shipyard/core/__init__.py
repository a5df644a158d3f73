"""
Core manifest model, run-state enums and error taxonomy.
"""

from .enums import (
    ServiceKind,
    EnvProperty,
    DatabaseProperty,
    RouteKind,
    ServiceRunState,
    BuildDecision,
    RunOutcome,
)
from .exceptions import (
    ShipyardError,
    ManifestError,
    CycleError,
    ServiceError,
    BuildError,
    UnresolvedReferenceError,
    DeployError,
    DeploymentTimeoutError,
    InvalidTransitionError,
)
from .models import (
    Manifest,
    Service,
    Database,
    EnvironmentEntry,
    ServiceReference,
    DatabaseReference,
    RouteRule,
    BuildFilterRule,
    ServiceAddress,
    ServiceRecord,
    ServiceRun,
    RunResult,
)
