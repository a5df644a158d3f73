"""
Dependency-ordered, concurrency-bounded build scheduling.

Every service gets one asyncio task. A task waits for the completion events
of its hard dependencies, resolves its environment once they are live,
builds inside the worker pool and hands the result to the release
coordinator for activation.
"""
import asyncio
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Dict, Mapping, Optional, TYPE_CHECKING

from ..config.global_config_loader import EngineConfig
from ..core.decorators import async_retry
from ..core.enums import BuildDecision, ServiceRunState
from ..core.exceptions import (
    BuildError, DeploymentTimeoutError, ShipyardError, UnresolvedReferenceError,
)
from ..core.models import Manifest, RunResult, ServiceRecord, ServiceRun
from ..deployment.env_resolver import resolve_env
from ..execution.executor import ExecutionResult, ProcessExecutor
from .change_filter import ServiceChanges
from .dependency_resolver import DependencyGraph
from .hasher import ServiceHasher

if TYPE_CHECKING:
    from ..deployment.coordinator import ReleaseCoordinator


# Output fragments of network failures while fetching dependencies
NETWORK_FAILURE_PATTERNS = [
    r"ECONNRESET",
    r"ECONNREFUSED",
    r"ETIMEDOUT",
    r"EAI_AGAIN",
    r"ENOTFOUND",
    r"fetch failed",
    r"socket hang up",
    r"network (?:error|timeout)",
    r"Could not resolve host",
    r"Temporary failure in name resolution",
    r"Connection reset by peer",
]
_NETWORK_FAILURE_RE = re.compile("|".join(NETWORK_FAILURE_PATTERNS), re.IGNORECASE)

OUTPUT_TAIL_CHARS = 2000


class BuildScheduler:
    """Builds services in dependency order within a fixed concurrency budget"""

    def __init__(
        self,
        config: EngineConfig,
        executor: ProcessExecutor,
        coordinator: 'ReleaseCoordinator',
        hasher: Optional[ServiceHasher] = None
    ):
        self.config = config
        self.executor = executor
        self.coordinator = coordinator
        self.hasher = hasher or ServiceHasher()
        self.logger = logging.getLogger(f"{__name__}.BuildScheduler")

    def is_transient(self, result: ExecutionResult) -> bool:
        """Whether a failed step is worth retrying"""
        if result.exit_code in self.config.retryable_exit_codes:
            return True
        return bool(_NETWORK_FAILURE_RE.search(result.output))

    async def run(
        self,
        manifest: Manifest,
        graph: DependencyGraph,
        changes: ServiceChanges,
        records: Optional[Dict[str, ServiceRecord]] = None,
        database_properties: Optional[Mapping[str, Mapping[str, str]]] = None,
        database_errors: Optional[Mapping[str, str]] = None,
        run_id: Optional[str] = None
    ) -> RunResult:
        """
        Build and activate every service of the manifest.

        Args:
            manifest: Validated manifest
            graph: Dependency graph of the manifest
            changes: Build decisions from the change filter
            records: Prior release records keyed by service name
            database_properties: Connection properties per database
            database_errors: Failure descriptions of databases that could not be described
            run_id: Identifier of this run (generated if not provided)

        Returns:
            RunResult holding the run state of every service
        """
        records = records or {}
        run_id = run_id or uuid.uuid4().hex[:12]
        runs = {
            service.name: ServiceRun(
                service=service,
                decision=changes.decisions.get(service.name, BuildDecision.NEW)
            )
            for service in manifest.services
        }
        done = {name: asyncio.Event() for name in runs}
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))
        context = _RunContext(
            runs=runs,
            done=done,
            semaphore=semaphore,
            records=records,
            database_properties=database_properties or {},
            database_errors=database_errors or {},
        )

        result = RunResult(run_id=run_id, runs=runs, started_at=time.monotonic())
        self.logger.info(
            f"Starting run {run_id}: {len(runs)} services, "
            f"{len(changes.to_build)} to build, concurrency {self.config.concurrency}"
        )

        tasks = [
            asyncio.create_task(self._run_service(name, graph, context), name=f"build:{name}")
            for name in graph.order
        ]
        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=self.config.run_timeout
            )
        except asyncio.TimeoutError:
            result.timed_out = True
            self.logger.error(f"Run {run_id} timed out after {self.config.run_timeout}s")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for run in runs.values():
                if run.state not in (ServiceRunState.LIVE, ServiceRunState.BUILD_FAILED):
                    run.error = run.error or DeploymentTimeoutError(
                        f"run timed out after {self.config.run_timeout}s while {run.state.value}",
                        scope="run",
                        service=run.name
                    )

        result.finished_at = time.monotonic()
        return result

    async def _run_service(self, name: str, graph: DependencyGraph, context: '_RunContext') -> None:
        run = context.runs[name]
        run.transition(ServiceRunState.BLOCKED)
        try:
            # Route upstreams only order the build; env references must be live
            for dep in graph.dependencies(name, hard_only=False):
                await context.done[dep].wait()

            deps = graph.dependencies(name, hard_only=True)
            failed = [dep for dep in deps if context.runs[dep].state != ServiceRunState.LIVE]
            if failed:
                # Never attempted: stays blocked until the coordinator rolls it back
                upstream = context.runs[failed[0]]
                run.root_cause = upstream.root_cause or upstream.name
                run.error = UnresolvedReferenceError(
                    name, upstream.name, root_cause=context.describe(run.root_cause)
                )
                self.logger.warning(f"{name} blocked: dependency '{upstream.name}' is {upstream.state.value}")
                return

            run.started_at = time.monotonic()
            run.env = resolve_env(
                run.service,
                self.coordinator.address_book.snapshot(),
                context.database_properties,
                root_causes=context.database_errors
            )
            run.env_hash = self.hasher.compute_env_hash(run.env)

            record = context.records.get(name)
            if run.decision == BuildDecision.UNCHANGED:
                if record is None or record.env_hash != run.env_hash:
                    run.decision = BuildDecision.DEPENDENCY_CHANGED
                    self.logger.info(f"{name} unchanged but its resolved environment moved, rebuilding")
                elif not await self.coordinator.platform.is_active(run.service, record):
                    run.decision = BuildDecision.NOT_RUNNING
                    self.logger.info(f"{name} unchanged but its release at {record.address.url} is gone, rebuilding")
                else:
                    self.coordinator.reuse(run, record)
                    return

            async with context.semaphore:
                await self._build(run)

            await self.coordinator.promote(run)

        except ShipyardError as e:
            self._fail(run, e)
        except Exception as e:
            self.logger.error(f"Unexpected error while processing {name}: {e}", exc_info=True)
            self._fail(run, e)
        finally:
            run.finished_at = time.monotonic()
            context.done[name].set()

    def _fail(self, run: ServiceRun, error: Exception) -> None:
        run.error = error
        run.root_cause = run.name
        if run.state in (ServiceRunState.BLOCKED, ServiceRunState.BUILDING, ServiceRunState.DEPLOYING):
            run.transition(ServiceRunState.BUILD_FAILED)
        self.logger.error(f"{run.name} failed: {error}")

    async def _build(self, run: ServiceRun) -> None:
        run.transition(ServiceRunState.BUILDING)
        cwd = str(Path(self.config.workdir) / (run.service.root_dir or ""))

        def log_retry(attempt: int, error: Exception) -> None:
            self.logger.warning(
                f"{run.name}: transient build failure (attempt {attempt}/"
                f"{self.config.max_build_retries + 1}), retrying: {error}"
            )

        retrying = async_retry(
            max_retries=self.config.max_build_retries + 1,
            delay=self.config.retry_base_delay,
            retry_on=lambda e: isinstance(e, BuildError) and e.transient,
            on_retry=log_retry,
        )(self._build_attempt)

        await retrying(run, cwd)
        run.built = True
        self.logger.info(f"Built {run.name} in {run.attempts} attempt(s)")

    async def _build_attempt(self, run: ServiceRun, cwd: str) -> None:
        run.attempts += 1
        deadline = time.monotonic() + self.config.build_timeout
        try:
            await asyncio.wait_for(self._run_steps(run, cwd, deadline), timeout=self.config.build_timeout)
        except asyncio.TimeoutError:
            raise DeploymentTimeoutError(
                f"{run.name}: build exceeded {self.config.build_timeout}s",
                scope="service",
                service=run.name
            )

    async def _run_steps(self, run: ServiceRun, cwd: str, deadline: float) -> None:
        for step in run.service.build_command:
            self.logger.info(f"{run.name}: {step}")
            result = await self.executor.run(
                step, cwd=cwd, env=run.env, timeout=max(0.0, deadline - time.monotonic())
            )
            if not result.ok:
                raise BuildError(
                    run.name,
                    f"step '{step}' exited with code {result.exit_code}",
                    exit_code=result.exit_code,
                    output=result.output[-OUTPUT_TAIL_CHARS:],
                    transient=self.is_transient(result),
                )


class _RunContext:
    """Per-run shared scheduling state"""

    def __init__(
        self,
        runs: Dict[str, ServiceRun],
        done: Dict[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
        records: Dict[str, ServiceRecord],
        database_properties: Mapping[str, Mapping[str, str]],
        database_errors: Mapping[str, str]
    ):
        self.runs = runs
        self.done = done
        self.semaphore = semaphore
        self.records = records
        self.database_properties = database_properties
        self.database_errors = database_errors

    def describe(self, name: str) -> str:
        run = self.runs.get(name)
        if run is None or run.error is None:
            return name
        return str(run.error)
