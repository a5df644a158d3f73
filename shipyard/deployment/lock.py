"""
Run lock preventing concurrent orchestration runs on the same state directory.
"""
import asyncio
import time
from pathlib import Path
import logging
import os
import fcntl

from ..core.exceptions import DeploymentTimeoutError


class RunLockManager:
    """
    Exclusive lock around one orchestration run.
    Uses file-based locking for simplicity.
    """

    def __init__(self, state_dir: Path, timeout: int = 30):
        """
        Initialize run lock manager.

        Args:
            state_dir: Directory holding deployment state
            timeout: Lock acquisition timeout in seconds
        """
        self.state_dir = Path(state_dir)
        self.timeout = timeout
        self.lock_file_path = self.state_dir / ".run.lock"
        self.lock_file = None
        self.logger = logging.getLogger(__name__)

        self.state_dir.mkdir(parents=True, exist_ok=True)

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False

    async def acquire(self):
        """
        Acquire run lock with timeout.

        Raises:
            DeploymentTimeoutError: If lock cannot be acquired within timeout
        """
        start_time = time.time()
        self.lock_file = open(self.lock_file_path, 'a+')

        while True:
            try:
                fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                self.lock_file.seek(0)
                self.lock_file.truncate()
                self.lock_file.write(f"{os.getpid()}\n")
                self.lock_file.flush()
                self.logger.info("Run lock acquired")
                return

            except BlockingIOError:
                elapsed = time.time() - start_time
                if elapsed >= self.timeout:
                    self.lock_file.close()
                    self.lock_file = None
                    self.logger.error(f"Failed to acquire run lock after {self.timeout}s timeout")
                    raise DeploymentTimeoutError(
                        f"Could not acquire run lock within {self.timeout}s. "
                        "Another deployment may be in progress.",
                        scope="lock"
                    )

                self.logger.debug(
                    f"Run lock held by another process, retrying... "
                    f"({elapsed:.1f}s / {self.timeout}s)"
                )
                await asyncio.sleep(0.5)

    async def release(self):
        """Release run lock"""
        if not self.lock_file:
            return

        try:
            fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_UN)
            self.logger.info("Run lock released")
        except OSError as e:
            self.logger.error(f"Failed to release run lock: {e}")
        finally:
            self.lock_file.close()
            self.lock_file = None

    def is_locked(self) -> bool:
        """Non-blocking check whether another holder owns the lock"""
        if not self.lock_file_path.exists():
            return False

        with open(self.lock_file_path, 'a+') as test_file:
            try:
                fcntl.flock(test_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(test_file.fileno(), fcntl.LOCK_UN)
            return False
