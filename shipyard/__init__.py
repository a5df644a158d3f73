"""
Shipyard - dependency-aware build and release orchestration for multi-service manifests

Main modules:
- core: Manifest model, run-state enums and error taxonomy
- config: Manifest and global configuration loading
- build: Dependency resolution, change filtering and build scheduling
- deployment: Environment resolution, release coordination and deployment state
- execution: Process execution and deployment platform collaborators
"""

from .core.models import Manifest, Service, ServiceAddress
from .core.enums import ServiceRunState, RunOutcome
from .config.manifest_loader import ManifestLoader
from .config.global_config_loader import GlobalConfig, load_global_config
from .build.dependency_resolver import resolve
from .build.change_filter import affected
from .deployment.env_resolver import resolve_env
from .deployment.models import ReleaseReport
from .engine import OrchestrationEngine

__version__ = "1.0.0"
__all__ = [
    'Manifest',
    'Service',
    'ServiceAddress',
    'ServiceRunState',
    'RunOutcome',
    'ManifestLoader',
    'GlobalConfig',
    'load_global_config',
    'resolve',
    'affected',
    'resolve_env',
    'ReleaseReport',
    'OrchestrationEngine',
]
