from enum import Enum


class ServiceKind(str, Enum):
    STATIC = "static"
    PROCESS = "process"


class EnvProperty(str, Enum):
    URL = "url"
    HOST = "host"
    PORT = "port"


class DatabaseProperty(str, Enum):
    CONNECTION_STRING = "connectionString"
    HOST = "host"
    PORT = "port"
    USER = "user"
    DATABASE = "database"


class RouteKind(str, Enum):
    REWRITE = "rewrite"
    REDIRECT = "redirect"


class ServiceRunState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    BUILDING = "building"
    BUILD_FAILED = "build_failed"
    DEPLOYING = "deploying"
    LIVE = "live"
    ROLLED_BACK = "rolled_back"


class BuildDecision(str, Enum):
    """Why a service enters (or skips) the build set"""
    NEW = "new"
    FORCED = "forced"
    DEFINITION_CHANGED = "definition_changed"
    PATHS_CHANGED = "paths_changed"
    DEPENDENCY_CHANGED = "dependency_changed"
    NOT_RUNNING = "not_running"
    UNCHANGED = "unchanged"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


# Transitions allowed by the build scheduler and release coordinator
ALLOWED_TRANSITIONS = {
    ServiceRunState.PENDING: {ServiceRunState.BLOCKED},
    ServiceRunState.BLOCKED: {
        ServiceRunState.BUILDING,
        ServiceRunState.LIVE,
        ServiceRunState.BUILD_FAILED,
        ServiceRunState.ROLLED_BACK,
    },
    ServiceRunState.BUILDING: {ServiceRunState.DEPLOYING, ServiceRunState.BUILD_FAILED},
    ServiceRunState.DEPLOYING: {ServiceRunState.LIVE, ServiceRunState.BUILD_FAILED},
    ServiceRunState.LIVE: {ServiceRunState.ROLLED_BACK},
    ServiceRunState.BUILD_FAILED: set(),
    ServiceRunState.ROLLED_BACK: set(),
}

TERMINAL_STATES = {
    ServiceRunState.BUILD_FAILED,
    ServiceRunState.LIVE,
    ServiceRunState.ROLLED_BACK,
}
