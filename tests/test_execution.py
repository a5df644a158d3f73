"""
Tests for the subprocess executor and the local platform against real processes.
"""

import asyncio
import os
import socket
import sys
import time

import pytest

from shipyard.config.global_config_loader import PlatformConfig
from shipyard.core.enums import RunOutcome
from shipyard.core.exceptions import DeployError, DeploymentTimeoutError
from shipyard.core.models import ServiceRecord
from shipyard.engine import OrchestrationEngine
from shipyard.execution.executor import SubprocessExecutor
from shipyard.execution.platform import LocalPlatform
from conftest import FakePlatform, make_manifest, process_service


pytestmark = pytest.mark.skipif(not os.path.isdir('/proc'), reason="requires /proc")

# Background child records its pid, then the shell waits on it
SLEEPER = "sleep 30 & echo $! > child.pid; wait"


def alive(pid):
    """Running (not zombie) process with this pid"""
    try:
        with open(f"/proc/{pid}/stat") as f:
            stat = f.read()
    except FileNotFoundError:
        return False
    return stat.rsplit(')', 1)[1].split()[0] != 'Z'


async def wait_gone(pid, timeout=3.0):
    deadline = time.monotonic() + timeout
    while alive(pid) and time.monotonic() < deadline:
        await asyncio.sleep(0.05)
    return not alive(pid)


async def read_pid(path, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text().strip():
            return int(path.read_text().strip())
        await asyncio.sleep(0.05)
    raise AssertionError(f"{path} was never written")


def free_port():
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


class TestSubprocessExecutor:

    @pytest.mark.asyncio
    async def test_captures_output(self, tmp_path):
        result = await SubprocessExecutor().run("echo out; echo err >&2; exit 4", cwd=str(tmp_path))
        assert result.exit_code == 4
        assert result.stdout.strip() == 'out'
        assert result.stderr.strip() == 'err'

    @pytest.mark.asyncio
    async def test_env_is_added(self, tmp_path):
        result = await SubprocessExecutor().run('echo "$API_URL"', cwd=str(tmp_path), env={'API_URL': 'http://api'})
        assert result.stdout.strip() == 'http://api'

    @pytest.mark.asyncio
    async def test_timeout_kills_compound_command(self, tmp_path):
        started = time.monotonic()
        with pytest.raises(DeploymentTimeoutError) as exc_info:
            await SubprocessExecutor().run("cd . && sleep 30 && echo done", cwd=str(tmp_path), timeout=0.3)
        assert time.monotonic() - started < 5
        assert exc_info.value.scope == "service"

    @pytest.mark.asyncio
    async def test_timeout_leaves_no_background_child(self, tmp_path):
        with pytest.raises(DeploymentTimeoutError):
            await SubprocessExecutor().run(SLEEPER, cwd=str(tmp_path), timeout=0.5)
        pid = await read_pid(tmp_path / "child.pid")
        assert await wait_gone(pid)

    @pytest.mark.asyncio
    async def test_cancellation_kills_process_group(self, tmp_path):
        task = asyncio.create_task(SubprocessExecutor().run(SLEEPER, cwd=str(tmp_path)))
        pid = await read_pid(tmp_path / "child.pid")

        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert time.monotonic() - started < 5
        assert await wait_gone(pid)


class TestRunTimeoutWithRealBuilds:

    @pytest.mark.asyncio
    async def test_run_timeout_is_bounded(self, global_config, state_store):
        os.makedirs(global_config.engine.workdir)
        global_config.engine.run_timeout = 0.5
        engine = OrchestrationEngine(global_config, SubprocessExecutor(), FakePlatform(), state_store)
        manifest = make_manifest(process_service('api', build="cd . && sleep 6 && echo built"))

        started = time.monotonic()
        report = await engine.run(manifest)

        assert report.outcome == RunOutcome.TIMEOUT
        assert time.monotonic() - started < 4


@pytest.fixture
def platform_config(tmp_path):
    return PlatformConfig(
        publish_dir=str(tmp_path / "published"),
        log_dir=str(tmp_path / "logs"),
        host="127.0.0.1",
        base_port=free_port(),
        startup_grace=0.2,
        health_check_timeout=10.0,
    )


def server_service(name, **extra):
    command = f"{sys.executable} -m http.server $PORT --bind 127.0.0.1 & echo $! > {name}.pid; wait"
    return process_service(name, startCommand=command, **extra)


def record_for(name, address):
    return ServiceRecord(name=name, address=address, definition_hash='d', env_hash='e',
                         deployed_at='2026-01-01T00:00:00+00:00')


class TestLocalPlatformPorts:

    def _manifest(self, base_port):
        return make_manifest(
            process_service('worker'),
            process_service('backend', envVars=[{'key': 'PORT', 'value': base_port}]),
            process_service('api'),
            {'name': 'site', 'runtime': 'static'},
        )

    def test_literal_port_is_reserved(self, platform_config):
        base = platform_config.base_port
        platform = LocalPlatform(platform_config)
        platform.prepare(self._manifest(base))

        assert platform.port_for('backend') == base
        assert platform.port_for('api') == base + 1
        assert platform.port_for('worker') == base + 2

    def test_assignment_ignores_deploy_order(self, platform_config):
        base = platform_config.base_port
        first = LocalPlatform(platform_config)
        first.prepare(self._manifest(base))
        second = LocalPlatform(platform_config)
        second.prepare(self._manifest(base))

        # Querying in opposite orders must not change the assignment
        forward = [first.port_for(name) for name in ('api', 'backend', 'worker')]
        backward = [second.port_for(name) for name in ('worker', 'backend', 'api')][::-1]
        assert forward == backward

    def test_unprepared_service_skips_taken_ports(self, platform_config):
        base = platform_config.base_port
        platform = LocalPlatform(platform_config)
        platform.prepare(self._manifest(base))
        assert platform.port_for('late') == base + 3


class TestLocalPlatformProcesses:

    @pytest.mark.asyncio
    async def test_rollback_stops_the_whole_process_group(self, platform_config, tmp_path):
        manifest = make_manifest(server_service('api'))
        service = manifest.get_service('api')
        platform = LocalPlatform(platform_config)
        platform.prepare(manifest)

        address = await platform.deploy(service, {}, str(tmp_path))
        pid = await read_pid(tmp_path / "api.pid")
        assert alive(pid)
        assert await platform.is_active(service, record_for('api', address))

        started = time.monotonic()
        await platform.rollback(service, None)

        assert time.monotonic() - started < 12
        assert await wait_gone(pid)
        assert not await platform.is_active(service, record_for('api', address))

    @pytest.mark.asyncio
    async def test_close_stops_servers(self, platform_config, tmp_path):
        manifest = make_manifest(server_service('api'), server_service('web'))
        platform = LocalPlatform(platform_config)
        platform.prepare(manifest)
        for name in ('api', 'web'):
            await platform.deploy(manifest.get_service(name), {}, str(tmp_path))
        pids = [await read_pid(tmp_path / f"{name}.pid") for name in ('api', 'web')]

        await platform.close()

        for pid in pids:
            assert await wait_gone(pid)

    @pytest.mark.asyncio
    async def test_server_output_goes_to_log_file(self, platform_config, tmp_path):
        manifest = make_manifest(server_service('api'))
        platform = LocalPlatform(platform_config)
        platform.prepare(manifest)
        try:
            await platform.deploy(manifest.get_service('api'), {}, str(tmp_path))
            # http.server logs every request on stderr
            deadline = time.monotonic() + 3
            log = platform.log_path('api')
            while 'GET /' not in log.read_text() and time.monotonic() < deadline:
                await asyncio.sleep(0.05)
            assert 'GET /' in log.read_text()
        finally:
            await platform.close()

    @pytest.mark.asyncio
    async def test_start_command_exit_reports_output(self, platform_config, tmp_path):
        manifest = make_manifest(process_service('api', startCommand='echo "port in use" >&2; exit 3'))
        platform = LocalPlatform(platform_config)
        platform.prepare(manifest)

        with pytest.raises(DeployError) as exc_info:
            await platform.deploy(manifest.get_service('api'), {}, str(tmp_path))

        assert 'exited with code 3' in str(exc_info.value)
        assert 'port in use' in str(exc_info.value)


class TestLocalPlatformStatic:

    @pytest.mark.asyncio
    async def test_static_release_is_active_until_rolled_back(self, platform_config, tmp_path):
        site = tmp_path / "site"
        site.mkdir()
        (site / "index.html").write_text("hello")
        manifest = make_manifest({'name': 'docs', 'runtime': 'static', 'staticPublishPath': 'site'})
        service = manifest.get_service('docs')
        platform = LocalPlatform(platform_config)

        address = await platform.deploy(service, {}, str(tmp_path))
        assert await platform.is_active(service, record_for('docs', address))

        await platform.rollback(service, None)
        assert not await platform.is_active(service, record_for('docs', address))
