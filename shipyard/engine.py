import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .build.change_filter import ChangeFilter
from .build.dependency_resolver import DependencyGraph, build_graph
from .build.hasher import ServiceHasher
from .build.scheduler import BuildScheduler
from .config.global_config_loader import GlobalConfig
from .core.exceptions import ShipyardError
from .core.models import Manifest, RunResult, ServiceRecord
from .deployment.coordinator import ReleaseCoordinator
from .deployment.env_resolver import LiveAddressBook
from .deployment.lock import RunLockManager
from .deployment.models import ReleaseReport
from .deployment.state_store import DeploymentStateStore
from .execution.executor import ProcessExecutor, SubprocessExecutor
from .execution.platform import DeploymentPlatform, LocalPlatform


class OrchestrationEngine:
    """
    Drives one manifest through resolution, change detection, building and release.

    Manifest errors (including reference cycles) are raised before any
    service is touched. Everything after that is reported through the
    returned ReleaseReport.
    """

    def __init__(
        self,
        config: Optional[GlobalConfig] = None,
        executor: Optional[ProcessExecutor] = None,
        platform: Optional[DeploymentPlatform] = None,
        state_store: Optional[DeploymentStateStore] = None,
        use_lock: bool = True
    ):
        self.config = config or GlobalConfig.default()
        self.executor = executor or SubprocessExecutor()
        self.platform = platform or LocalPlatform(self.config.platform)
        self.state_store = state_store or DeploymentStateStore(self.config.storage.state_dir)
        self.use_lock = use_lock
        self.hasher = ServiceHasher()
        self.change_filter = ChangeFilter(self.hasher)
        self.logger = logging.getLogger(f"{__name__}.OrchestrationEngine")

    def prepare(self, manifest: Manifest) -> DependencyGraph:
        """
        Validate a manifest and build its dependency graph.

        Raises:
            ManifestError: If the manifest is invalid
            CycleError: If services reference each other in a cycle
        """
        return build_graph(manifest)

    def plan(
        self,
        manifest: Manifest,
        changed_paths: Optional[List[str]] = None,
        force: bool = False
    ) -> Dict[str, Any]:
        """Build order, per-service build decisions and dependencies, without building"""
        graph = self.prepare(manifest)
        changes = self.change_filter.detect(
            manifest, changed_paths, self.state_store.load_records(), force=force
        )
        return {
            'order': list(graph.order),
            'decisions': changes.to_dict(),
            'dependencies': {
                name: graph.dependencies(name, hard_only=False) for name in graph.order
            },
        }

    async def run(
        self,
        manifest: Manifest,
        changed_paths: Optional[List[str]] = None,
        force: bool = False,
        run_id: Optional[str] = None
    ) -> ReleaseReport:
        """
        Execute a full orchestration run.

        Args:
            manifest: Parsed manifest
            changed_paths: Commit diff; None rebuilds every service
            force: Rebuild every service regardless of prior releases
            run_id: Identifier of this run (generated if not provided)

        Returns:
            ReleaseReport with the final state of every service
        """
        graph = self.prepare(manifest)
        run_id = run_id or uuid.uuid4().hex[:12]

        if not self.use_lock:
            return await self._run_locked(manifest, graph, changed_paths, force, run_id)

        async with RunLockManager(self.config.storage.state_dir, self.config.lock.timeout):
            return await self._run_locked(manifest, graph, changed_paths, force, run_id)

    async def _run_locked(
        self,
        manifest: Manifest,
        graph: DependencyGraph,
        changed_paths: Optional[List[str]],
        force: bool,
        run_id: str
    ) -> ReleaseReport:
        started = time.monotonic()
        records = self.state_store.load_records()
        changes = self.change_filter.detect(manifest, changed_paths, records, force=force)
        database_properties, database_errors = await self._describe_databases(manifest)
        self.platform.prepare(manifest)

        coordinator = ReleaseCoordinator(
            self.platform,
            LiveAddressBook(),
            workdir=self.config.engine.workdir,
            records=records
        )
        scheduler = BuildScheduler(self.config.engine, self.executor, coordinator, self.hasher)

        result = await scheduler.run(
            manifest,
            graph,
            changes,
            records=records,
            database_properties=database_properties,
            database_errors=database_errors,
            run_id=run_id
        )
        report = await coordinator.finalize(result, graph)
        report.duration = time.monotonic() - started

        self._save_records(manifest, coordinator, result, records, run_id)
        return report

    async def _describe_databases(
        self, manifest: Manifest
    ) -> Tuple[Dict[str, Dict[str, str]], Dict[str, str]]:
        referenced = sorted({
            ref.target
            for service in manifest.services
            for ref in service.database_references()
        })
        properties: Dict[str, Dict[str, str]] = {}
        errors: Dict[str, str] = {}
        for name in referenced:
            try:
                properties[name] = await self.platform.describe_database(manifest.get_database(name))
            except ShipyardError as e:
                errors[name] = str(e)
                self.logger.warning(f"Database {name} unavailable: {e}")
        return properties, errors

    def _save_records(
        self,
        manifest: Manifest,
        coordinator: ReleaseCoordinator,
        result: RunResult,
        previous: Dict[str, ServiceRecord],
        run_id: str
    ) -> None:
        definition_hashes = {
            service.name: self.hasher.compute_service_hash(service)
            for service in manifest.services
        }
        records = coordinator.build_records(result, definition_hashes)
        for name in sorted(set(previous) - set(definition_hashes)):
            self.logger.info(f"Dropping release record of removed service {name}")
        self.state_store.save_records(records, run_id=run_id)

    async def close(self):
        await self.platform.close()
