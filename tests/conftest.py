"""Pytest configuration and fixtures for Shipyard tests."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from shipyard.config.global_config_loader import GlobalConfig
from shipyard.config.manifest_loader import ManifestLoader
from shipyard.core.exceptions import DeployError
from shipyard.core.models import Database, Service, ServiceAddress, ServiceRecord
from shipyard.deployment.state_store import DeploymentStateStore
from shipyard.execution.executor import ExecutionResult, ProcessExecutor
from shipyard.execution.platform import DeploymentPlatform

# Configure logging
logging.basicConfig(level=logging.INFO)


class FakeExecutor(ProcessExecutor):
    """
    Scripted executor.

    ``script`` maps a command to the exit codes (or ExecutionResults) it
    returns on successive calls; unscripted commands succeed.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, delay: float = 0.0):
        self.script = {command: list(results) for command, results in (script or {}).items()}
        self.delay = delay
        self.calls: List[Dict] = []
        self.active = 0
        self.max_active = 0

    async def run(self, command, cwd, env=None, timeout=None):
        self.calls.append({'command': command, 'cwd': cwd, 'env': dict(env or {}), 'timeout': timeout})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            results = self.script.get(command)
            outcome = results.pop(0) if results else 0
            if isinstance(outcome, ExecutionResult):
                return outcome
            return ExecutionResult(command=command, exit_code=outcome)
        finally:
            self.active -= 1

    def commands(self) -> List[str]:
        return [call['command'] for call in self.calls]


class FakePlatform(DeploymentPlatform):
    """Records deployments and rollbacks; every service gets a predictable address"""

    def __init__(self, failing: Optional[set] = None, databases: Optional[Dict[str, Dict[str, str]]] = None,
                 inactive: Optional[set] = None):
        self.failing = failing or set()
        self.inactive = inactive or set()
        self.databases = databases or {}
        self.deployed: List[str] = []
        self.rolled_back: List[str] = []
        self.envs: Dict[str, Dict[str, str]] = {}

    async def deploy(self, service: Service, env, workdir) -> ServiceAddress:
        if service.name in self.failing:
            raise DeployError(service.name, "start command exited with code 1")
        self.deployed.append(service.name)
        self.envs[service.name] = dict(env)
        return ServiceAddress(host=f"{service.name}.example.com", port=443)

    async def rollback(self, service: Service, previous: Optional[ServiceRecord]) -> None:
        self.rolled_back.append(service.name)

    async def is_active(self, service: Service, record: ServiceRecord) -> bool:
        return service.name not in self.inactive

    async def describe_database(self, database: Database) -> Dict[str, str]:
        if database.name not in self.databases:
            raise DeployError(database.name, "database is not provisioned")
        return self.databases[database.name]


def make_manifest(*services, databases=None):
    """Manifest from render-style service dicts"""
    return ManifestLoader.load_from_dict({
        'services': list(services),
        'databases': list(databases or []),
    })


def process_service(name, references=(), build="npm run build", **extra):
    service = {
        'type': 'web',
        'name': name,
        'runtime': 'node',
        'buildCommand': build,
        'startCommand': 'npm start',
        'envVars': [
            {'key': f"{target.upper().replace('-', '_')}_URL", 'fromService': {'name': target, 'property': 'url'}}
            for target in references
        ],
    }
    service.update(extra)
    return service


@pytest.fixture
def global_config(tmp_path):
    """Default config with fast retries and state under tmp_path"""
    config = GlobalConfig.default()
    config.engine.retry_base_delay = 0.0
    config.engine.workdir = str(tmp_path / "work")
    config.storage.state_dir = str(tmp_path / "state")
    config.lock.timeout = 1
    return config


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def state_store(global_config):
    return DeploymentStateStore(global_config.storage.state_dir)


@pytest.fixture
def render_manifest():
    """Frontend (static) referencing the backend's url, backend with no references"""
    return make_manifest(
        {
            'type': 'web',
            'name': 'frontend',
            'runtime': 'static',
            'buildCommand': "npm install --include=dev\nnpm run build:client",
            'staticPublishPath': './client/dist',
            'routes': [{'type': 'rewrite', 'source': '/*', 'destination': '/index.html'}],
            'envVars': [
                {'key': 'VITE_API_URL', 'fromService': {'name': 'backend', 'type': 'web', 'property': 'url'}},
                {'key': 'NODE_ENV', 'value': 'production'},
            ],
            'buildFilter': {
                'paths': ['client/**/*', 'package.json'],
                'ignoredPaths': ['**/*.test.js'],
            },
        },
        {
            'type': 'web',
            'name': 'backend',
            'runtime': 'node',
            'buildCommand': "npm install --include=dev\nnpm run build:server:nocheck",
            'startCommand': 'npm start',
            'envVars': [
                {'key': 'NODE_ENV', 'value': 'production'},
                {'key': 'PORT', 'value': 10000},
            ],
            'buildFilter': {'paths': ['server/**/*', 'package.json']},
        },
    )
