"""
Decides which services a changeset affects.
"""
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Pattern, Any

from ..core.enums import BuildDecision
from ..core.models import Manifest, Service, ServiceRecord
from .hasher import ServiceHasher


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> Pattern:
    """
    Translate a build-filter glob into a regular expression.

    ``**/`` matches zero or more directories, ``**`` anything, ``*`` anything
    but ``/``, ``?`` one character but ``/``, ``[...]`` a character class.
    """
    pattern = normalize_path(pattern)
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith('**/', i):
            parts.append('(?:.*/)?')
            i += 3
        elif pattern.startswith('**', i):
            parts.append('.*')
            i += 2
        elif char == '*':
            parts.append('[^/]*')
            i += 1
        elif char == '?':
            parts.append('[^/]')
            i += 1
        elif char == '[':
            end = pattern.find(']', i + 1)
            if end == -1:
                parts.append(re.escape(char))
                i += 1
            else:
                body = pattern[i + 1:end]
                if body.startswith('!'):
                    body = '^' + body[1:]
                parts.append(f'[{body}]')
                i = end + 1
        else:
            parts.append(re.escape(char))
            i += 1
    return re.compile(''.join(parts) + r'\Z')


def normalize_path(path: str) -> str:
    path = path.replace('\\', '/')
    while path.startswith('./'):
        path = path[2:]
    return path.lstrip('/')


def matches(path: str, pattern: str) -> bool:
    return compile_glob(pattern).match(normalize_path(path)) is not None


def affected(service: Service, changed_paths: Iterable[str]) -> bool:
    """
    Decide whether a changeset requires rebuilding a service.

    Include globs are evaluated first; a path surviving them is dropped if
    any ignore glob matches it. A service without a build filter is always
    affected. An empty include list includes every path.
    """
    rule = service.build_filter
    if rule is None:
        return True

    for path in changed_paths:
        if rule.paths and not any(matches(path, glob) for glob in rule.paths):
            continue
        if any(matches(path, glob) for glob in rule.ignored_paths):
            continue
        return True
    return False


@dataclass
class ServiceChanges:
    """Per-service build decisions for one run"""
    decisions: Dict[str, BuildDecision] = field(default_factory=dict)

    @property
    def to_build(self) -> List[str]:
        return sorted(
            name for name, decision in self.decisions.items()
            if decision != BuildDecision.UNCHANGED
        )

    @property
    def unchanged(self) -> List[str]:
        return sorted(
            name for name, decision in self.decisions.items()
            if decision == BuildDecision.UNCHANGED
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {name: decision.value for name, decision in sorted(self.decisions.items())}


class ChangeFilter:
    """Combines build filters with prior release records into build decisions"""

    def __init__(self, hasher: Optional[ServiceHasher] = None):
        self.hasher = hasher or ServiceHasher()
        self.logger = logging.getLogger(__name__)

    def detect(
        self,
        manifest: Manifest,
        changed_paths: Optional[List[str]],
        records: Optional[Dict[str, ServiceRecord]] = None,
        force: bool = False
    ) -> ServiceChanges:
        """
        Decide, per service, whether it enters the build set.

        Args:
            manifest: Validated manifest
            changed_paths: Commit diff, or None when the diff is unknown
            records: Prior release records keyed by service name
            force: Rebuild every service

        Returns:
            ServiceChanges with one decision per service
        """
        records = records or {}
        changes = ServiceChanges()

        for service in manifest.services:
            record = records.get(service.name)
            if force:
                decision = BuildDecision.FORCED
            elif record is None:
                decision = BuildDecision.NEW
            elif record.definition_hash != self.hasher.compute_service_hash(service):
                decision = BuildDecision.DEFINITION_CHANGED
            elif changed_paths is None or affected(service, changed_paths):
                decision = BuildDecision.PATHS_CHANGED
            else:
                decision = BuildDecision.UNCHANGED

            changes.decisions[service.name] = decision
            self.logger.debug(f"Build decision for {service.name}: {decision.value}")

        self.logger.info(
            f"Change detection complete: build={len(changes.to_build)}, "
            f"unchanged={len(changes.unchanged)}"
        )
        return changes
