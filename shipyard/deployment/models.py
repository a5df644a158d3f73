"""
Models for the release domain.
"""
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any

from ..core.enums import RunOutcome, ServiceRunState


@dataclass
class ServiceReport:
    """Final state of one service after a run"""
    name: str
    state: str  # ServiceRunState value
    decision: str  # BuildDecision value
    url: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    built: bool = False
    reused: bool = False
    attempts: int = 0
    duration: Optional[float] = None
    error: Optional[str] = None
    root_cause: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)


@dataclass
class ReleaseReport:
    """Aggregated report of an orchestration run"""
    run_id: str
    outcome: RunOutcome
    order: List[str] = field(default_factory=list)
    services: Dict[str, ServiceReport] = field(default_factory=dict)
    failures: List[Dict[str, str]] = field(default_factory=list)
    duration: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS

    @property
    def builds(self) -> int:
        """Number of services built in this run"""
        return sum(1 for report in self.services.values() if report.built)

    def services_in(self, state: ServiceRunState) -> List[str]:
        return [name for name, report in self.services.items() if report.state == state.value]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = asdict(self)
        result['outcome'] = self.outcome.value
        return result

    def print_summary(self):
        """Print human-readable summary"""
        print(f"\n{'='*80}")
        print(f"RELEASE REPORT ({self.run_id})")
        print(f"{'='*80}")
        print(f"Outcome: {self.outcome.value}")

        for name in self.order:
            report = self.services[name]
            line = f"   - {name}: {report.state}"
            if report.url:
                line += f" @ {report.url}"
            if report.reused:
                line += " (reused)"
            print(line)

        if self.failures:
            print(f"\n❌ Failures: {len(self.failures)}")
            for failure in self.failures:
                print(f"   - {failure['service']}: {failure['error']}")

        if self.duration is not None:
            print(f"\n⏱️  Duration: {self.duration:.1f}s, builds: {self.builds}")
        print(f"{'='*80}\n")
