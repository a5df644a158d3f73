"""
Deployment platform collaborator: activates built services and rolls them back.
"""
import asyncio
import logging
import os
import shutil
import signal
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set
from urllib.parse import urlparse

import aiohttp

from ..config.global_config_loader import PlatformConfig
from ..core.enums import ServiceKind, DatabaseProperty
from ..core.exceptions import DeployError
from ..core.models import Service, Database, Manifest, ServiceAddress, ServiceRecord
from .executor import signal_group


LOG_TAIL_BYTES = 2000


class DeploymentPlatform(ABC):
    """Narrow interface to the hosting platform"""

    def prepare(self, manifest: Manifest) -> None:
        """Called once per run, before any service is deployed"""
        pass

    @abstractmethod
    async def deploy(self, service: Service, env: Dict[str, str], workdir: str) -> ServiceAddress:
        """
        Activate a built service.

        Returns:
            Address at which the service is reachable

        Raises:
            DeployError: If activation failed
        """
        pass

    @abstractmethod
    async def rollback(self, service: Service, previous: Optional[ServiceRecord]) -> None:
        """Deactivate the release made in this run, restoring ``previous`` if any"""
        pass

    async def is_active(self, service: Service, record: ServiceRecord) -> bool:
        """Whether the release described by ``record`` is still being served"""
        return True

    async def describe_database(self, database: Database) -> Dict[str, str]:
        """Connection properties of a provisioned database, keyed by property name"""
        raise DeployError(database.name, "database provisioning is not supported by this platform")

    async def close(self) -> None:
        """Release platform resources"""
        pass


def literal_port(service: Service) -> Optional[int]:
    """Value of a literal ``PORT`` entry in the service's environment"""
    for entry in service.env_vars:
        if entry.key == "PORT" and not entry.is_reference and entry.value is not None:
            try:
                return int(entry.value)
            except ValueError:
                return None
    return None


class LocalPlatform(DeploymentPlatform):
    """
    Runs process services on local ports and publishes static services to disk.

    Process services without a literal ``PORT`` get one from ``base_port``
    upwards, assigned in service-name order and skipping literal ports. They
    must answer an HTTP request on their health check path within
    ``health_check_timeout``. Output goes to ``log_dir/<name>.log``.
    Static services are copied to ``publish_dir/<name>``.
    """

    def __init__(self, config: PlatformConfig, database_urls: Optional[Dict[str, str]] = None):
        self.config = config
        self.database_urls = database_urls or dict(config.database_urls)
        self.publish_dir = Path(config.publish_dir)
        self.log_dir = Path(config.log_dir)
        self._ports: Dict[str, int] = {}
        self._reserved: Set[int] = set()
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def prepare(self, manifest: Manifest) -> None:
        processes = sorted(
            (s for s in manifest.services if s.kind == ServiceKind.PROCESS),
            key=lambda s: s.name
        )
        self._ports = {}
        self._reserved = set()
        for service in processes:
            port = literal_port(service)
            if port is not None:
                self._ports[service.name] = port
                self._reserved.add(port)
        for service in processes:
            self.port_for(service.name)
        self.logger.debug(f"Port assignments: {self._ports}")

    def port_for(self, name: str) -> int:
        """Port of a process service, allocating the next free one if unassigned"""
        if name not in self._ports:
            taken = self._reserved | set(self._ports.values())
            port = self.config.base_port
            while port in taken:
                port += 1
            self._ports[name] = port
        return self._ports[name]

    def log_path(self, name: str) -> Path:
        return self.log_dir / f"{name}.log"

    async def deploy(self, service: Service, env: Dict[str, str], workdir: str) -> ServiceAddress:
        if service.kind == ServiceKind.STATIC:
            return self._publish_static(service, workdir)
        return await self._start_process(service, env, workdir)

    def _publish_static(self, service: Service, workdir: str) -> ServiceAddress:
        source = Path(workdir) / (service.static_publish_path or ".")
        if not source.is_dir():
            raise DeployError(service.name, f"publish path does not exist: {source}")

        target = self.publish_dir / service.name
        previous = self.publish_dir / f"{service.name}.previous"
        if previous.exists():
            shutil.rmtree(previous)
        if target.exists():
            target.rename(previous)
        shutil.copytree(source, target)
        self.logger.info(f"Published {service.name} to {target}")
        return ServiceAddress(host=f"{service.name}.{self.config.static_domain}", port=443)

    async def _start_process(self, service: Service, env: Dict[str, str], workdir: str) -> ServiceAddress:
        if "PORT" in env:
            port = int(env["PORT"])
        else:
            port = self.port_for(service.name)
        process_env = dict(os.environ)
        process_env.update(env)
        process_env["PORT"] = str(port)

        await self._stop_process(service.name)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_path(service.name)
        with open(log_path, 'wb') as log_file:
            process = await asyncio.create_subprocess_shell(
                service.start_command,
                cwd=workdir,
                env=process_env,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        self._processes[service.name] = process

        await asyncio.sleep(self.config.startup_grace)
        if process.returncode is not None:
            self._processes.pop(service.name, None)
            # Reap whatever the shell left in its group
            signal_group(process)
            raise DeployError(
                service.name,
                f"start command exited with code {process.returncode}: {self._log_tail(log_path)}"
            )

        address = ServiceAddress(host=self.config.host, port=port, scheme="http")
        await self._wait_healthy(service, address)
        self.logger.info(f"Started {service.name} (pid {process.pid}) at {address.url}")
        return address

    @staticmethod
    def _log_tail(path: Path) -> str:
        try:
            with open(path, 'rb') as f:
                f.seek(0, os.SEEK_END)
                f.seek(max(0, f.tell() - LOG_TAIL_BYTES))
                return f.read().decode('utf-8', errors='replace').strip()
        except OSError:
            return ""

    async def _probe(self, url: str) -> bool:
        try:
            timeout = aiohttp.ClientTimeout(total=5.0)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status < 500:
                        return True
                    self.logger.debug(f"Health check {url} returned {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Health check {url} failed: {e}")
        return False

    async def _wait_healthy(self, service: Service, address: ServiceAddress) -> None:
        url = address.url + (service.health_check_path or "/")
        deadline = time.monotonic() + self.config.health_check_timeout
        attempt = 0
        while True:
            attempt += 1
            if await self._probe(url):
                return

            if time.monotonic() >= deadline:
                await self._stop_process(service.name)
                raise DeployError(
                    service.name,
                    f"health check {url} did not pass within {self.config.health_check_timeout}s"
                )
            await asyncio.sleep(min(0.5 * attempt, 2.0))

    async def is_active(self, service: Service, record: ServiceRecord) -> bool:
        if service.kind == ServiceKind.STATIC:
            return (self.publish_dir / service.name).is_dir()
        process = self._processes.get(service.name)
        if process is not None and process.returncode is not None:
            return False
        return await self._probe(record.address.url + (service.health_check_path or "/"))

    async def _stop_process(self, name: str) -> None:
        process = self._processes.pop(name, None)
        if process is None:
            return
        if not signal_group(process, signal.SIGTERM):
            await process.wait()
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=10)
        except asyncio.TimeoutError:
            signal_group(process, signal.SIGKILL)
            await process.wait()
        # Members that ignored SIGTERM after the shell exited
        signal_group(process, signal.SIGKILL)
        self.logger.info(f"Stopped {name} (pid {process.pid})")

    async def rollback(self, service: Service, previous: Optional[ServiceRecord]) -> None:
        if service.kind == ServiceKind.STATIC:
            target = self.publish_dir / service.name
            kept = self.publish_dir / f"{service.name}.previous"
            if target.exists():
                shutil.rmtree(target)
            if previous is not None and kept.exists():
                kept.rename(target)
            self.logger.info(f"Rolled back static service {service.name}")
            return
        await self._stop_process(service.name)
        self.logger.info(f"Rolled back {service.name}")

    async def describe_database(self, database: Database) -> Dict[str, str]:
        url = self.database_urls.get(database.name)
        if not url:
            raise DeployError(database.name, "no connection string configured for database")
        parsed = urlparse(url)
        return {
            DatabaseProperty.CONNECTION_STRING.value: url,
            DatabaseProperty.HOST.value: parsed.hostname or "",
            DatabaseProperty.PORT.value: str(parsed.port or ""),
            DatabaseProperty.USER.value: parsed.username or database.user or "",
            DatabaseProperty.DATABASE.value: parsed.path.lstrip("/") or database.database_name or "",
        }

    async def close(self) -> None:
        for name in list(self._processes):
            await self._stop_process(name)
