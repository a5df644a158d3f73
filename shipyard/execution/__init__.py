"""
External collaborators: process execution and the deployment platform.
"""

from .executor import ExecutionResult, ProcessExecutor, SubprocessExecutor
from .platform import DeploymentPlatform, LocalPlatform

__all__ = [
    'ExecutionResult',
    'ProcessExecutor',
    'SubprocessExecutor',
    'DeploymentPlatform',
    'LocalPlatform',
]
