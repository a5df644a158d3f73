"""
Release coordination: activation of built services and end-of-run rollback.
"""
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from ..build.dependency_resolver import DependencyGraph
from ..core.enums import RunOutcome, ServiceRunState
from ..core.exceptions import DeployError, ShipyardError
from ..core.models import RunResult, ServiceRecord, ServiceRun
from ..execution.platform import DeploymentPlatform
from .env_resolver import LiveAddressBook
from .models import ReleaseReport, ServiceReport


class ReleaseCoordinator:
    """
    Promotes built services to live and rolls back the dependents of failures.

    The coordinator is the only writer of the live address book: an address is
    published exactly once, when its service transitions to ``live``.
    """

    def __init__(
        self,
        platform: DeploymentPlatform,
        address_book: Optional[LiveAddressBook] = None,
        workdir: str = ".",
        records: Optional[Dict[str, ServiceRecord]] = None
    ):
        self.platform = platform
        self.address_book = address_book or LiveAddressBook()
        self.workdir = workdir
        self.records = records or {}
        self.logger = logging.getLogger(__name__)

    async def promote(self, run: ServiceRun) -> None:
        """
        Run the deploy step of a built service and move it to live.

        Raises:
            DeployError: If the platform could not activate the service
        """
        run.transition(ServiceRunState.DEPLOYING)
        cwd = str(Path(self.workdir) / (run.service.root_dir or ""))
        try:
            address = await self.platform.deploy(run.service, run.env, cwd)
        except DeployError:
            raise
        except (OSError, ShipyardError) as e:
            raise DeployError(run.name, f"deploy step failed: {e}") from e

        self._go_live(run, address)
        self.logger.info(f"{run.name} is live at {address.url}")

    def reuse(self, run: ServiceRun, record: ServiceRecord) -> None:
        """Mark an unchanged service live with its previously deployed artifact"""
        run.reused = True
        self._go_live(run, record.address)
        self.logger.info(f"{run.name} unchanged, reusing release from run {record.run_id}")

    def _go_live(self, run: ServiceRun, address) -> None:
        run.address = address
        self.address_book.publish(run.name, address)
        run.transition(ServiceRunState.LIVE)

    async def finalize(self, result: RunResult, graph: DependencyGraph) -> ReleaseReport:
        """
        Roll back the dependents of failed services and build the report.

        Args:
            result: Scheduler result holding every service run
            graph: Dependency graph of the manifest

        Returns:
            ReleaseReport with the final state of every service
        """
        runs = result.runs
        failed = [name for name in graph.order if runs[name].state == ServiceRunState.BUILD_FAILED]

        for name in failed:
            for dependent in graph.dependents(name, hard_only=False):
                await self._roll_back(runs[dependent], runs[name])

        if result.timed_out:
            outcome = RunOutcome.TIMEOUT
        elif any(run.state != ServiceRunState.LIVE for run in runs.values()):
            outcome = RunOutcome.FAILED
        else:
            outcome = RunOutcome.SUCCESS

        report = ReleaseReport(run_id=result.run_id, outcome=outcome, order=list(graph.order))
        for name in graph.order:
            run = runs[name]
            report.services[name] = self._service_report(run, runs)
            if run.state != ServiceRunState.LIVE:
                report.failures.append({
                    'service': name,
                    'state': run.state.value,
                    'error': self._root_error(run, runs),
                    'root_cause': run.root_cause or name,
                })

        if result.started_at is not None and result.finished_at is not None:
            report.duration = result.finished_at - result.started_at

        log = self.logger.info if report.succeeded else self.logger.error
        log(f"Run {result.run_id} finished: {outcome.value} ({len(report.failures)} services not live)")
        return report

    async def _roll_back(self, run: ServiceRun, failed: ServiceRun) -> None:
        if run.reused or run.state == ServiceRunState.ROLLED_BACK:
            return

        cause = failed.root_cause or failed.name
        if run.state == ServiceRunState.PENDING:
            run.transition(ServiceRunState.BLOCKED)

        if run.state == ServiceRunState.BLOCKED:
            run.transition(ServiceRunState.ROLLED_BACK)
        elif run.state == ServiceRunState.LIVE:
            self.logger.warning(f"Rolling back {run.name}: upstream '{failed.name}' failed")
            try:
                await self.platform.rollback(run.service, self.records.get(run.name))
            except (OSError, ShipyardError) as e:
                self.logger.error(f"Platform rollback of {run.name} failed: {e}")
            run.transition(ServiceRunState.ROLLED_BACK)
        else:
            return

        if run.root_cause is None:
            run.root_cause = cause
        if run.finished_at is None:
            run.finished_at = time.monotonic()

    @staticmethod
    def _root_error(run: ServiceRun, runs: Dict[str, ServiceRun]) -> str:
        root = runs.get(run.root_cause) if run.root_cause else None
        if root is not None and root.error is not None:
            return str(root.error)
        if run.error is not None:
            return str(run.error)
        return f"{run.name} did not go live ({run.state.value})"

    def _service_report(self, run: ServiceRun, runs: Dict[str, ServiceRun]) -> ServiceReport:
        live = run.state == ServiceRunState.LIVE
        return ServiceReport(
            name=run.name,
            state=run.state.value,
            decision=run.decision.value,
            url=run.address.url if run.address and live else None,
            env=dict(run.env),
            built=run.built,
            reused=run.reused,
            attempts=run.attempts,
            duration=run.duration,
            error=None if live else self._root_error(run, runs),
            root_cause=None if live else (run.root_cause or run.name),
        )

    def build_records(self, result: RunResult, definition_hashes: Dict[str, str]) -> Dict[str, ServiceRecord]:
        """
        Release records after a run.

        Services that went live with a fresh build get a new record; every
        other service keeps the record of its last successful release.
        """
        deployed_at = datetime.now(timezone.utc).isoformat()
        records: Dict[str, ServiceRecord] = {}
        for name, run in result.runs.items():
            if run.state == ServiceRunState.LIVE and not run.reused and run.address is not None:
                records[name] = ServiceRecord(
                    name=name,
                    address=run.address,
                    definition_hash=definition_hashes[name],
                    env_hash=run.env_hash or "",
                    deployed_at=deployed_at,
                    run_id=result.run_id,
                )
            elif name in self.records:
                records[name] = self.records[name]
        return records
