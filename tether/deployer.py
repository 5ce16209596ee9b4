# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Bootstrap the session agent on a remote host over a live Connection.

ensure_agent_running() walks four steps and stops at the first one that
leaves a healthy agent behind:

1. Health check against the agent port on the remote loopback.
2. Runtime check: python3 at or above the minimum version (fatal if not).
3. Installed but stopped: start the launcher, poll health a bounded number of times.
4. Fresh install: upload the package over SFTP, build a venv, write the
   launcher, start it detached and poll health.

Concurrent callers for the same Connection share one in-flight deployment.
"""

import asyncio
import json
import logging
import os
import posixpath
import re
import shlex
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import asyncssh

from tether.connection import CommandResult, Connection, ConnectionEvent, ConnectionState
from tether.errors import ConnectionStateError, InstallError, RemoteRuntimeError
from tether.host_config import get_config
from tether.models.config import AgentConfig
from tether.paths import AgentDefaults, HostPaths, RemotePaths
from tether.utils.logging import tail

logger = logging.getLogger(__name__)

RUNTIME_CHECK = "python3 -c 'import sys; print(\"%d.%d.%d\" % sys.version_info[:3])'"
HEALTH_FAILED_MARKER = "FAILED"

LAUNCHER_SCRIPT = """#!/bin/sh
DIR="$(cd "$(dirname "$0")/.." && pwd)"
PYTHONPATH="$DIR/lib${PYTHONPATH:+:$PYTHONPATH}" exec "$DIR/venv/bin/python" -m tether.agent "$@"
"""


@dataclass
class RemoteAgentRecord:
    """Cached facts about the agent on one Connection's host."""

    installed: bool = False
    runtime_version: Optional[str] = None
    last_health_check: Optional[float] = None
    healthy: bool = False
    agent_version: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def parse_version(version: str) -> Tuple[int, ...]:
    parts = []
    for piece in version.strip().split("."):
        match = re.match(r"\d+", piece)
        if not match:
            break
        parts.append(int(match.group()))
    return tuple(parts)


def health_command(port: int, timeout: int = 3) -> str:
    url = f"http://127.0.0.1:{port}/health"
    py_fetch = (
        "import sys, urllib.request; "
        f"sys.stdout.write(urllib.request.urlopen('{url}', timeout={timeout}).read().decode())"
    )
    return (
        f"curl -fsS --max-time {timeout} {url} 2>/dev/null"
        f" || wget -qO- -T {timeout} {url} 2>/dev/null"
        f" || python3 -c {shlex.quote(py_fetch)} 2>/dev/null"
        f" || echo {HEALTH_FAILED_MARKER}"
    )


class AgentDeployer:
    """Ensures the tether agent is installed and running on remote hosts."""

    def __init__(self, agent_config: Optional[AgentConfig] = None, package_dir: Optional[Path] = None):
        self.config = agent_config or get_config().agent
        self.package_dir = package_dir or HostPaths.package_dir()
        self._records: Dict[str, RemoteAgentRecord] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._watched: Dict[str, Connection] = {}

    def record(self, connection_id: str) -> Optional[RemoteAgentRecord]:
        return self._records.get(connection_id)

    # Public API

    async def ensure_agent_running(self, connection: Connection) -> RemoteAgentRecord:
        """Make sure a healthy agent is listening on the remote host.

        Raises RemoteRuntimeError or InstallError when deployment cannot
        succeed; callers retry by calling again.
        """
        if connection.state != ConnectionState.CONNECTED:
            raise ConnectionStateError(
                f"{connection.id}: cannot deploy while {connection.state.value}"
            )
        self._watch(connection)

        task = self._inflight.get(connection.id)
        if task is None or task.done():
            task = asyncio.ensure_future(self._deploy(connection))
            self._inflight[connection.id] = task
            task.add_done_callback(lambda t, cid=connection.id: self._clear_inflight(cid, t))
        else:
            logger.debug(f"{connection.id}: joining in-flight deployment")
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise ConnectionStateError(f"{connection.id}: deployment cancelled") from None
            raise

    def cancel(self, connection_id: str) -> bool:
        """Cancel an in-flight deployment. Returns True if one was running."""
        task = self._inflight.get(connection_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"{connection_id}: deployment cancelled")
        return True

    async def stop_agent(self, connection: Connection) -> bool:
        """Stop a running agent. Returns True if a process was signalled."""
        self.cancel(connection.id)
        result = await self._exec(
            connection, "stop", "pkill -f 'bin/python -m tether[.]agent'", self.config.command_timeout
        )
        self._records.pop(connection.id, None)
        return result.exit_status == 0

    # Connection tracking

    def _clear_inflight(self, connection_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(connection_id) is task:
            del self._inflight[connection_id]

    def _watch(self, connection: Connection) -> None:
        if connection.id in self._watched:
            return
        self._watched[connection.id] = connection
        connection.add_listener(self._on_connection_event)

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event.kind != "state_changed" or event.old_state != ConnectionState.CONNECTED:
            return
        if self._records.pop(event.connection_id, None) is not None:
            logger.debug(f"{event.connection_id}: agent record invalidated ({event.state.value})")
        self.cancel(event.connection_id)

    # Steps

    async def _deploy(self, connection: Connection) -> RemoteAgentRecord:
        record = self._records.setdefault(connection.id, RemoteAgentRecord())

        # Step 1: already running?
        if await self._check_health(connection, record):
            logger.info(f"{connection.id}: agent already healthy")
            return record

        # Step 2: interpreter
        record.runtime_version = await self._check_runtime(connection)

        install_dir = await self._resolve_install_dir(connection)

        # Step 3: installed but stopped
        if await self._is_installed(connection, install_dir):
            record.installed = True
            logger.info(f"{connection.id}: agent installed but not running, starting")
            await self._start_agent(connection, install_dir)
            if await self._wait_healthy(connection, record, install_dir):
                return record
            logger.warning(f"{connection.id}: installed agent did not become healthy, reinstalling")

        # Step 4: fresh install
        logger.info(f"{connection.id}: installing agent into {install_dir}")
        await self._install(connection, install_dir)
        record.installed = True
        await self._start_agent(connection, install_dir)
        if not await self._wait_healthy(connection, record, install_dir):
            raise InstallError(
                "health",
                f"agent did not become healthy; see {RemotePaths.log_file(install_dir)}",
            )
        logger.info(f"{connection.id}: agent deployed and healthy")
        return record

    async def _exec(
        self, connection: Connection, step: str, command: str, timeout: Optional[float] = None
    ) -> CommandResult:
        started = time.monotonic()
        result = await connection.run(command, timeout=timeout)
        elapsed = time.monotonic() - started
        logger.debug(
            f"{connection.id}: step={step} exit={result.exit_status} ({elapsed:.2f}s)\n"
            f"  stdout: {tail(result.stdout, 5)}\n  stderr: {tail(result.stderr, 5)}"
        )
        return result

    async def _step(
        self, connection: Connection, step: str, command: str, timeout: Optional[float] = None
    ) -> CommandResult:
        """Run an install step, raising InstallError with output tails on failure."""
        result = await self._exec(connection, step, command, timeout)
        if not result.ok:
            detail = tail(result.stderr) or tail(result.stdout) or "no output"
            logger.error(
                f"{connection.id}: install step '{step}' failed (exit {result.exit_status}): {detail}"
            )
            raise InstallError(step, f"exit {result.exit_status}: {detail}")
        return result

    async def _check_health(self, connection: Connection, record: RemoteAgentRecord) -> bool:
        result = await self._exec(
            connection, "health", health_command(self.config.port), self.config.command_timeout
        )
        record.last_health_check = time.time()
        output = result.stdout.strip()
        healthy = False
        if output and output != HEALTH_FAILED_MARKER:
            try:
                data = json.loads(output)
                healthy = isinstance(data, dict) and data.get("status") == "ok"
                if healthy:
                    record.agent_version = data.get("version")
            except ValueError:
                logger.debug(f"{connection.id}: unparseable health output: {tail(output, 3)}")
        record.healthy = healthy
        return healthy

    async def _check_runtime(self, connection: Connection) -> str:
        result = await self._exec(connection, "runtime", RUNTIME_CHECK, self.config.command_timeout)
        version = result.stdout.strip()
        if not result.ok or not version:
            raise RemoteRuntimeError(
                f"python3 not available on remote host: {tail(result.stderr, 3) or 'not found'}"
            )
        if parse_version(version) < parse_version(self.config.min_python):
            raise RemoteRuntimeError(
                f"python3 {version} is older than required {self.config.min_python}"
            )
        logger.info(f"{connection.id}: remote python3 {version}")
        return version

    async def _resolve_install_dir(self, connection: Connection) -> str:
        install_dir = self.config.install_dir or AgentDefaults.INSTALL_DIR
        if not install_dir.startswith("~"):
            return install_dir
        result = await self._exec(connection, "home", 'printf %s "$HOME"', self.config.command_timeout)
        home = result.stdout.strip()
        if not result.ok or not home:
            raise InstallError("home", "could not resolve remote $HOME")
        return posixpath.join(home, install_dir[1:].lstrip("/"))

    async def _is_installed(self, connection: Connection, install_dir: str) -> bool:
        command = (
            f"test -f {shlex.quote(RemotePaths.launcher(install_dir))}"
            f" && test -x {shlex.quote(RemotePaths.venv_python(install_dir))}"
        )
        result = await self._exec(connection, "installed", command, self.config.command_timeout)
        return result.ok

    async def _start_agent(self, connection: Connection, install_dir: str) -> None:
        cfg = self.config
        env = {
            "TETHER_AGENT_PORT": str(cfg.port),
            "TETHER_AGENT_IDLE_TIMEOUT": str(cfg.idle_timeout_minutes),
            "TETHER_AGENT_SHUTDOWN_ON_IDLE": "true" if cfg.shutdown_on_idle else "false",
            "TETHER_AGENT_DATA_DIR": posixpath.join(install_dir, "data"),
        }
        env_prefix = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
        command = (
            f"cd {shlex.quote(install_dir)} && {env_prefix} nohup "
            f"{shlex.quote(RemotePaths.launcher(install_dir))} "
            f"> {shlex.quote(RemotePaths.log_file(install_dir))} 2>&1 < /dev/null &"
        )
        await self._step(connection, "start", command, cfg.command_timeout)

    async def _wait_healthy(
        self, connection: Connection, record: RemoteAgentRecord, install_dir: str
    ) -> bool:
        for attempt in range(1, self.config.health_retries + 1):
            await asyncio.sleep(self.config.health_retry_delay)
            if await self._check_health(connection, record):
                logger.debug(f"{connection.id}: agent healthy after {attempt} checks")
                return True

        log_tail = await self._exec(
            connection,
            "agent-log",
            f"tail -n 20 {shlex.quote(RemotePaths.log_file(install_dir))} 2>/dev/null",
            self.config.command_timeout,
        )
        logger.warning(
            f"{connection.id}: agent not healthy after {self.config.health_retries} checks; "
            f"log tail:\n{tail(log_tail.stdout, 20)}"
        )
        return False

    async def _install(self, connection: Connection, install_dir: str) -> None:
        q_dir = shlex.quote(install_dir)
        await self._step(
            connection,
            "mkdir",
            f"mkdir -p {q_dir}/bin {q_dir}/lib {q_dir}/data && chmod 700 {q_dir}",
            self.config.command_timeout,
        )

        try:
            sftp = await connection.start_sftp()
        except (asyncssh.Error, OSError) as e:
            raise InstallError("upload", f"could not start sftp: {e}") from e
        try:
            count = await self._upload_package(sftp, posixpath.join(RemotePaths.lib_dir(install_dir), "tether"))
            logger.info(f"{connection.id}: uploaded {count} files")
            await self._write_remote(
                sftp,
                RemotePaths.requirements(install_dir),
                "\n".join(AgentDefaults.REQUIREMENTS) + "\n",
                "requirements",
            )
            await self._write_remote(sftp, RemotePaths.launcher(install_dir), LAUNCHER_SCRIPT, "launcher")
        finally:
            sftp.exit()

        await self._step(
            connection,
            "dependencies",
            f"cd {q_dir} && python3 -m venv {RemotePaths.VENV_DIR}"
            f" && {RemotePaths.VENV_DIR}/bin/pip install --quiet --disable-pip-version-check"
            f" -r {RemotePaths.REQUIREMENTS}",
        )
        await self._step(
            connection,
            "chmod",
            f"chmod +x {shlex.quote(RemotePaths.launcher(install_dir))}",
            self.config.command_timeout,
        )

    async def _upload_package(self, sftp, remote_root: str) -> int:
        """Copy the local package tree, skipping caches. Returns the file count."""
        count = 0
        local_root = str(self.package_dir)
        try:
            for dirpath, dirnames, filenames in os.walk(local_root):
                dirnames[:] = sorted(d for d in dirnames if d not in AgentDefaults.UPLOAD_EXCLUDES)
                rel = os.path.relpath(dirpath, local_root)
                remote_dir = remote_root if rel == "." else posixpath.join(remote_root, *rel.split(os.sep))
                await sftp.makedirs(remote_dir, exist_ok=True)
                for name in sorted(filenames):
                    if name.endswith(AgentDefaults.UPLOAD_EXCLUDE_SUFFIXES):
                        continue
                    await sftp.put(os.path.join(dirpath, name), posixpath.join(remote_dir, name))
                    count += 1
        except (asyncssh.Error, OSError) as e:
            raise InstallError("upload", str(e)) from e
        return count

    async def _write_remote(self, sftp, path: str, content: str, step: str) -> None:
        try:
            async with sftp.open(path, "w") as f:
                await f.write(content)
        except (asyncssh.Error, OSError) as e:
            raise InstallError(step, f"could not write {path}: {e}") from e
