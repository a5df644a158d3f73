"""
Build planning and scheduling: dependency ordering, change detection and
the concurrency-bounded build scheduler.
"""

from .dependency_resolver import DependencyGraph, build_graph, resolve
from .hasher import ServiceHasher
from .change_filter import ChangeFilter, ServiceChanges, affected
from .scheduler import BuildScheduler

__all__ = [
    'DependencyGraph',
    'build_graph',
    'resolve',
    'ServiceHasher',
    'ChangeFilter',
    'ServiceChanges',
    'affected',
    'BuildScheduler',
]
