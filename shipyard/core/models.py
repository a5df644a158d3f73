from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Tuple

from .enums import (
    ServiceKind, EnvProperty, DatabaseProperty, RouteKind, ServiceRunState,
    BuildDecision, ALLOWED_TRANSITIONS,
)
from .exceptions import InvalidTransitionError


CATCH_ALL_SOURCES = ("/*", "/**", "*")


@dataclass(frozen=True)
class ServiceReference:
    """Reference to another service's live address (``fromService``)"""
    target: str
    property: EnvProperty = EnvProperty.URL
    target_type: Optional[str] = None


@dataclass(frozen=True)
class DatabaseReference:
    """Reference to a database property (``fromDatabase``)"""
    target: str
    property: DatabaseProperty = DatabaseProperty.CONNECTION_STRING


@dataclass(frozen=True)
class EnvironmentEntry:
    """Environment variable: a literal value or a reference"""
    key: str
    value: Optional[str] = None
    from_service: Optional[ServiceReference] = None
    from_database: Optional[DatabaseReference] = None

    @property
    def is_reference(self) -> bool:
        return self.from_service is not None or self.from_database is not None


@dataclass(frozen=True)
class RouteRule:
    """Routing rule; ``upstream`` names a service the route proxies to"""
    source: str
    destination: str
    kind: RouteKind = RouteKind.REWRITE
    upstream: Optional[str] = None

    @property
    def is_catch_all(self) -> bool:
        return self.source in CATCH_ALL_SOURCES


@dataclass(frozen=True)
class BuildFilterRule:
    """Include/ignore glob rule set"""
    paths: Tuple[str, ...] = ()
    ignored_paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Service:
    name: str
    kind: ServiceKind
    build_command: Tuple[str, ...] = ()
    start_command: Optional[str] = None
    env_vars: Tuple[EnvironmentEntry, ...] = ()
    routes: Tuple[RouteRule, ...] = ()
    build_filter: Optional[BuildFilterRule] = None
    runtime: Optional[str] = None
    type: str = "web"
    root_dir: Optional[str] = None
    static_publish_path: Optional[str] = None
    health_check_path: Optional[str] = None

    def service_references(self) -> List[ServiceReference]:
        """Build-time references to other services, in manifest order"""
        return [entry.from_service for entry in self.env_vars if entry.from_service]

    def database_references(self) -> List[DatabaseReference]:
        return [entry.from_database for entry in self.env_vars if entry.from_database]

    def route_upstreams(self) -> List[str]:
        return [route.upstream for route in self.routes if route.upstream]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)


@dataclass(frozen=True)
class Database:
    name: str
    database_name: Optional[str] = None
    user: Optional[str] = None
    plan: Optional[str] = None


@dataclass(frozen=True)
class Manifest:
    """Immutable, parsed deployment manifest"""
    services: Tuple[Service, ...] = ()
    databases: Tuple[Database, ...] = ()

    @property
    def service_names(self) -> List[str]:
        return [service.name for service in self.services]

    def get_service(self, name: str) -> Optional[Service]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def get_database(self, name: str) -> Optional[Database]:
        for database in self.databases:
            if database.name == name:
                return database
        return None

    def validate(self) -> List[str]:
        """
        Check manifest invariants.

        Returns:
            List of issues, empty when the manifest is valid
        """
        issues = []
        seen = set()
        for service in self.services:
            if service.name in seen:
                issues.append(f"Duplicate service name: {service.name}")
            seen.add(service.name)

        database_names = set()
        for database in self.databases:
            if database.name in database_names:
                issues.append(f"Duplicate database name: {database.name}")
            database_names.add(database.name)

        for service in self.services:
            if service.kind == ServiceKind.PROCESS and not service.start_command:
                issues.append(f"Service '{service.name}' is a long-running process but has no start command")
            if service.kind == ServiceKind.STATIC and service.start_command:
                issues.append(f"Static service '{service.name}' must not declare a start command")

            for ref in service.service_references():
                if ref.target not in seen:
                    issues.append(f"Service '{service.name}' references unknown service '{ref.target}'")
            for ref in service.database_references():
                if ref.target not in database_names:
                    issues.append(f"Service '{service.name}' references unknown database '{ref.target}'")
            for upstream in service.route_upstreams():
                if upstream not in seen:
                    issues.append(f"Service '{service.name}' routes to unknown service '{upstream}'")

            if service.kind == ServiceKind.STATIC:
                catch_all = [
                    r for r in service.routes
                    if r.kind == RouteKind.REWRITE and r.is_catch_all
                ]
                if len(catch_all) > 1:
                    issues.append(
                        f"Static service '{service.name}' declares {len(catch_all)} catch-all rewrite rules"
                    )

        return issues


@dataclass(frozen=True)
class ServiceAddress:
    host: str
    port: int
    scheme: str = "https"

    @property
    def url(self) -> str:
        default_port = {"http": 80, "https": 443}.get(self.scheme)
        if self.port == default_port:
            return f"{self.scheme}://{self.host}"
        return f"{self.scheme}://{self.host}:{self.port}"

    def get(self, prop: EnvProperty) -> str:
        if prop == EnvProperty.URL:
            return self.url
        if prop == EnvProperty.HOST:
            return self.host
        return str(self.port)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceAddress':
        return cls(**data)


@dataclass
class ServiceRecord:
    """Persisted result of the last successful release of a service"""
    name: str
    address: ServiceAddress
    definition_hash: str
    env_hash: str
    deployed_at: str
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['address'] = self.address.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceRecord':
        data = dict(data)
        data['address'] = ServiceAddress.from_dict(data['address'])
        return cls(**data)


@dataclass
class ServiceRun:
    """Runtime state of one service within one orchestration run"""
    service: Service
    decision: BuildDecision = BuildDecision.NEW
    state: ServiceRunState = ServiceRunState.PENDING
    address: Optional[ServiceAddress] = None
    env: Dict[str, str] = field(default_factory=dict)
    env_hash: Optional[str] = None
    error: Optional[Exception] = None
    root_cause: Optional[str] = None
    attempts: int = 0
    built: bool = False
    reused: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.service.name

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def transition(self, new_state: ServiceRunState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.name}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state


@dataclass
class RunResult:
    """Outcome of the build scheduler, handed to the release coordinator"""
    run_id: str
    runs: Dict[str, ServiceRun]
    timed_out: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
