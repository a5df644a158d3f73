import yaml
from typing import Dict, Any, List, Optional, Tuple

from ..core.enums import ServiceKind, EnvProperty, DatabaseProperty, RouteKind
from ..core.exceptions import ManifestError
from ..core.models import (
    Manifest, Service, Database, EnvironmentEntry, ServiceReference,
    DatabaseReference, RouteRule, BuildFilterRule,
)


STATIC_TYPES = ("static", "static_site")


class ManifestLoader:
    """Load and validate render-style deployment manifests"""

    @staticmethod
    def load_from_yaml(file_path: str) -> Manifest:
        """Load manifest from YAML file"""
        with open(file_path, 'r') as file:
            try:
                manifest_dict = yaml.safe_load(file)
            except yaml.YAMLError as e:
                raise ManifestError([f"Invalid YAML in {file_path}: {e}"]) from e

        if manifest_dict is None:
            raise ManifestError([f"Empty or invalid YAML file: {file_path}"])

        return ManifestLoader.load_from_dict(manifest_dict)

    @staticmethod
    def load_from_dict(manifest_dict: Dict[str, Any]) -> Manifest:
        """
        Build a validated Manifest from a parsed document.

        Raises:
            ManifestError: If the document is malformed or violates invariants
        """
        if not isinstance(manifest_dict, dict):
            raise ManifestError(["Manifest root must be a mapping"])

        issues: List[str] = []
        services = []
        for index, service_dict in enumerate(manifest_dict.get('services') or []):
            try:
                services.append(ManifestLoader._process_service(service_dict))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                issues.append(f"services[{index}]: {ManifestLoader._describe(e)}")

        databases = []
        for index, db_dict in enumerate(manifest_dict.get('databases') or []):
            try:
                databases.append(Database(
                    name=db_dict['name'],
                    database_name=db_dict.get('databaseName'),
                    user=db_dict.get('user'),
                    plan=db_dict.get('plan'),
                ))
            except (KeyError, TypeError, AttributeError) as e:
                issues.append(f"databases[{index}]: {ManifestLoader._describe(e)}")

        if issues:
            raise ManifestError(issues)

        manifest = Manifest(services=tuple(services), databases=tuple(databases))
        issues = manifest.validate()
        if issues:
            raise ManifestError(issues)
        return manifest

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, KeyError):
            return f"missing required key {error}"
        return str(error)

    @staticmethod
    def _process_service(service_dict: Dict[str, Any]) -> Service:
        name = service_dict['name']
        service_type = service_dict.get('type', 'web')
        runtime = service_dict.get('runtime') or service_dict.get('env')

        if runtime in STATIC_TYPES or service_type in STATIC_TYPES:
            kind = ServiceKind.STATIC
        else:
            kind = ServiceKind.PROCESS

        env_vars = tuple(
            ManifestLoader._process_env_entry(name, entry)
            for entry in (service_dict.get('envVars') or [])
        )
        routes = tuple(
            ManifestLoader._process_route(name, route)
            for route in (service_dict.get('routes') or [])
        )

        return Service(
            name=name,
            kind=kind,
            build_command=ManifestLoader.split_command(service_dict.get('buildCommand')),
            start_command=(service_dict.get('startCommand') or '').strip() or None,
            env_vars=env_vars,
            routes=routes,
            build_filter=ManifestLoader._process_build_filter(service_dict.get('buildFilter')),
            runtime=runtime,
            type=service_type,
            root_dir=service_dict.get('rootDir'),
            static_publish_path=service_dict.get('staticPublishPath'),
            health_check_path=service_dict.get('healthCheckPath'),
        )

    @staticmethod
    def split_command(command: Optional[str]) -> Tuple[str, ...]:
        """Split a multi-line build command into one step per line"""
        if not command:
            return ()
        steps = []
        for line in str(command).splitlines():
            line = line.strip()
            if line and not line.startswith('#'):
                steps.append(line)
        return tuple(steps)

    @staticmethod
    def _process_env_entry(service_name: str, entry: Dict[str, Any]) -> EnvironmentEntry:
        key = entry['key']

        if 'fromService' in entry:
            ref = entry['fromService']
            try:
                prop = EnvProperty(ref.get('property', 'url'))
            except ValueError:
                raise ValueError(
                    f"env var '{key}' of '{service_name}' uses unsupported property "
                    f"'{ref.get('property')}' (expected url, host or port)"
                )
            return EnvironmentEntry(
                key=key,
                from_service=ServiceReference(
                    target=ref['name'],
                    property=prop,
                    target_type=ref.get('type'),
                ),
            )

        if 'fromDatabase' in entry:
            ref = entry['fromDatabase']
            try:
                prop = DatabaseProperty(ref.get('property', 'connectionString'))
            except ValueError:
                raise ValueError(
                    f"env var '{key}' of '{service_name}' uses unsupported database "
                    f"property '{ref.get('property')}'"
                )
            return EnvironmentEntry(
                key=key,
                from_database=DatabaseReference(target=ref['name'], property=prop),
            )

        value = entry.get('value')
        if value is None:
            raise ValueError(f"env var '{key}' of '{service_name}' has no value or reference")
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        return EnvironmentEntry(key=key, value=str(value))

    @staticmethod
    def _process_route(service_name: str, route: Dict[str, Any]) -> RouteRule:
        try:
            kind = RouteKind(route.get('type', 'rewrite'))
        except ValueError:
            raise ValueError(f"route of '{service_name}' has unknown type '{route.get('type')}'")
        return RouteRule(
            source=route['source'],
            destination=route['destination'],
            kind=kind,
            upstream=route.get('upstream'),
        )

    @staticmethod
    def _process_build_filter(filter_dict: Optional[Dict[str, Any]]) -> Optional[BuildFilterRule]:
        if filter_dict is None:
            return None
        return BuildFilterRule(
            paths=tuple(filter_dict.get('paths') or ()),
            ignored_paths=tuple(filter_dict.get('ignoredPaths') or ()),
        )
