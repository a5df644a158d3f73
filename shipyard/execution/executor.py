"""
Process execution collaborator used for build steps.
"""
import asyncio
import logging
import os
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Any

from ..core.exceptions import DeploymentTimeoutError


def signal_group(process: asyncio.subprocess.Process, sig: int = signal.SIGKILL) -> bool:
    """
    Send ``sig`` to the process group led by ``process``.

    Children are started with ``start_new_session=True``, so the group holds
    the shell and everything it spawned.

    Returns:
        False if the group no longer exists
    """
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return False
    return True


@dataclass
class ExecutionResult:
    """Exit code and captured output of one command"""
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)


class ProcessExecutor(ABC):
    """Runs a shell command in a working directory"""

    @abstractmethod
    async def run(
        self,
        command: str,
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> ExecutionResult:
        """
        Execute a command.

        Args:
            command: Shell command string
            cwd: Working directory
            env: Variables added on top of the current environment
            timeout: Seconds before the command is killed

        Returns:
            ExecutionResult with exit code and captured output

        Raises:
            DeploymentTimeoutError: If the command exceeded ``timeout``
        """
        pass


class SubprocessExecutor(ProcessExecutor):
    """Executes commands with asyncio subprocesses"""

    def __init__(self, inherit_env: bool = True):
        self.inherit_env = inherit_env
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def run(
        self,
        command: str,
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> ExecutionResult:
        process_env = dict(os.environ) if self.inherit_env else {}
        process_env.update(env or {})

        self.logger.debug(f"Running in {cwd}: {command}")
        start = time.monotonic()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise DeploymentTimeoutError(
                f"Command timed out after {timeout}s: {command}",
                scope="service"
            )
        except asyncio.CancelledError:
            # Run-level cancellation: never leave the child running
            await self._kill(process)
            raise

        return ExecutionResult(
            command=command,
            exit_code=process.returncode,
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
            duration=time.monotonic() - start,
        )

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        # The shell may already be gone while its children still hold the pipes
        killed = signal_group(process)
        await process.wait()
        if killed:
            self.logger.warning(f"Killed process group {process.pid}")
