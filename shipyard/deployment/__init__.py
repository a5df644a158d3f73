"""
Release side of a run: environment resolution, activation, rollback and
persisted deployment state.
"""

from .env_resolver import LiveAddressBook, resolve_env
from .models import ReleaseReport, ServiceReport
from .state_store import DeploymentStateStore
from .lock import RunLockManager
from .coordinator import ReleaseCoordinator

__all__ = [
    'LiveAddressBook',
    'resolve_env',
    'ReleaseReport',
    'ServiceReport',
    'DeploymentStateStore',
    'RunLockManager',
    'ReleaseCoordinator',
]
