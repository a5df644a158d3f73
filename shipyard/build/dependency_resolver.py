"""
Dependency graph construction and deterministic build ordering.

Nodes are indexed by sorted service name and edges are stored as index
sets, so cycle detection and ordering never chase object references.
"""
import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set

from ..core.exceptions import CycleError, ManifestError
from ..core.models import Manifest


logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    """Adjacency structure over manifest services.

    ``hard[i]`` holds the indices service ``i`` needs live before it can
    build (``fromService`` references). ``soft[i]`` holds route upstreams,
    which constrain ordering but never block a build.
    """
    names: List[str]
    index: Dict[str, int]
    hard: List[Set[int]]
    soft: List[Set[int]]
    order: List[str] = field(default_factory=list)

    def dependencies(self, name: str, hard_only: bool = True) -> List[str]:
        """Direct dependencies of a service, sorted by name"""
        i = self.index[name]
        deps = set(self.hard[i]) if hard_only else self.hard[i] | self.soft[i]
        return sorted(self.names[j] for j in deps)

    def dependents(self, name: str, hard_only: bool = True) -> List[str]:
        """Transitive dependents of a service, sorted by name"""
        reverse: List[Set[int]] = [set() for _ in self.names]
        for i in range(len(self.names)):
            edges = self.hard[i] if hard_only else self.hard[i] | self.soft[i]
            for j in edges:
                reverse[j].add(i)

        seen: Set[int] = set()
        stack = [self.index[name]]
        while stack:
            current = stack.pop()
            for dependent in reverse[current]:
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        return sorted(self.names[i] for i in seen)


def build_graph(manifest: Manifest) -> DependencyGraph:
    """
    Build the dependency graph and its topological order.

    Raises:
        ManifestError: If the manifest is invalid
        CycleError: If services reference each other in a cycle
    """
    issues = manifest.validate()
    if issues:
        raise ManifestError(issues)

    names = sorted(manifest.service_names)
    index = {name: i for i, name in enumerate(names)}
    hard: List[Set[int]] = [set() for _ in names]
    soft: List[Set[int]] = [set() for _ in names]

    for service in manifest.services:
        i = index[service.name]
        for ref in service.service_references():
            hard[i].add(index[ref.target])
        for upstream in service.route_upstreams():
            soft[i].add(index[upstream])

    graph = DependencyGraph(names=names, index=index, hard=hard, soft=soft)
    graph.order = _topological_order(graph)
    logger.debug(f"Resolved build order: {graph.order}")
    return graph


def resolve(manifest: Manifest) -> List[str]:
    """Return service names so that every service follows what it references"""
    return build_graph(manifest).order


def _topological_order(graph: DependencyGraph) -> List[str]:
    count = len(graph.names)
    edges = [graph.hard[i] | graph.soft[i] for i in range(count)]
    in_degree = [len(edges[i]) for i in range(count)]
    children: List[List[int]] = [[] for _ in range(count)]
    for i in range(count):
        for dep in edges[i]:
            children[dep].append(i)

    # Indices follow sorted names, so the heap breaks ties by name
    heap = [i for i in range(count) if in_degree[i] == 0]
    heapq.heapify(heap)

    order: List[int] = []
    while heap:
        current = heapq.heappop(heap)
        order.append(current)
        for child in children[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(heap, child)

    if len(order) != count:
        remaining = set(range(count)) - set(order)
        participants = _cycle_participants(edges, remaining)
        logger.error(f"Reference cycle detected: {[graph.names[i] for i in participants]}")
        raise CycleError([graph.names[i] for i in participants])

    return [graph.names[i] for i in order]


def _cycle_participants(edges: List[Set[int]], nodes: Set[int]) -> List[int]:
    """Nodes lying on a cycle: Tarjan SCCs of size > 1 plus self-loops"""
    counter = 0
    indices: Dict[int, int] = {}
    lowlink: Dict[int, int] = {}
    on_stack: Set[int] = set()
    stack: List[int] = []
    participants: List[int] = []

    for root in sorted(nodes):
        if root in indices:
            continue
        # Iterative Tarjan: frames are (node, iterator over its successors)
        indices[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(sorted(edges[root] & nodes)))]
        while work:
            node, successors = work[-1]
            advanced = False
            for succ in successors:
                if succ not in indices:
                    indices[succ] = lowlink[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(sorted(edges[succ] & nodes))))
                    advanced = True
                    break
                if succ in on_stack:
                    lowlink[node] = min(lowlink[node], indices[succ])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == indices[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in edges[node]:
                    participants.extend(component)

    return sorted(participants)
