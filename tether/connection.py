# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""One resilient SSH session to one remote host, built on AsyncSSH.

A Connection is created lazily in DISCONNECTED and moves through:

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED
                                     |               |
                                     v               v
                                DISCONNECTED       ERROR -> CONNECTING (explicit retry)

While CONNECTED a health probe runs a no-op command on a fixed interval.
A failed probe (or the transport dropping) starts the reconnect loop, which
retries after min(base * 2^attempt, cap) seconds. The probe is suspended
while a reconnect is in flight so the two timers never overlap.

Tunnels are local listeners owned by the Connection. They look up the
current SSH session on every accepted socket, so the listeners survive a
reconnect and only the forwarded streams are re-opened on the new session.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import asyncssh

from tether.errors import (
    AuthenticationError,
    ConnectionFailure,
    ConnectionStateError,
    ConnectTimeoutError,
    InvalidTransition,
    NetworkError,
)
from tether.models.config import ConnectionConfig, HealthConfig, ReconnectConfig

logger = logging.getLogger(__name__)

# Constants
SSH_KEEPALIVE_COUNT_MAX = 3  # missed keepalives before disconnect
HEALTH_PROBE_COMMAND = "true"
TUNNEL_BIND_HOST = "127.0.0.1"
SPLICE_CHUNK_SIZE = 64 * 1024
TUNNEL_CLOSE_TIMEOUT = 2.0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before reconnect attempt ``attempt`` (0-indexed)."""
    return min(base * (2**attempt), cap)


@dataclass
class CommandResult:
    """Outcome of a remote command."""

    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class ConnectionEvent:
    """Lifecycle event emitted by a Connection.

    kind is one of "state_changed", "reconnect_scheduled" or "error".
    """

    kind: str
    connection_id: str
    state: ConnectionState
    old_state: Optional[ConnectionState] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    attempt: int = 0
    delay: Optional[float] = None
    ts: float = field(default_factory=time.time)


class Tunnel:
    """Local listener whose accepted sockets are forwarded through a Connection.

    Identity is the (local_port, remote_host, remote_port) triple. Pass
    ``local_port=0`` to bind an ephemeral port; the bound port is available
    as ``local_port`` after ``start()``.
    """

    def __init__(
        self,
        connection: "Connection",
        local_port: int,
        remote_host: str,
        remote_port: int,
        bind_host: str = TUNNEL_BIND_HOST,
    ):
        self.connection = connection
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.bind_host = bind_host
        self._server: Optional[asyncio.AbstractServer] = None
        self._streams: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def key(self):
        return (self.local_port, self.remote_host, self.remote_port)

    @property
    def is_listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_client, self.bind_host, self.local_port
        )
        if self._server.sockets:
            self.local_port = self._server.sockets[0].getsockname()[1]
        logger.info(
            f"Tunnel {self.bind_host}:{self.local_port} -> "
            f"{self.remote_host}:{self.remote_port} via {self.connection.id}"
        )

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._streams.add(task)
        try:
            ssh = self.connection.ssh
            if self._closed or ssh is None or self.connection.state != ConnectionState.CONNECTED:
                logger.warning(
                    f"Tunnel {self.local_port}: rejecting client, connection is "
                    f"{self.connection.state.value}"
                )
                writer.close()
                return

            try:
                remote_reader, remote_writer = await ssh.open_connection(
                    self.remote_host, self.remote_port
                )
            except (asyncssh.Error, OSError) as e:
                logger.warning(
                    f"Tunnel {self.local_port}: failed to open "
                    f"{self.remote_host}:{self.remote_port}: {e}"
                )
                writer.close()
                return

            await self._splice(reader, writer, remote_reader, remote_writer)
        finally:
            if task is not None:
                self._streams.discard(task)

    async def _splice(self, local_reader, local_writer, remote_reader, remote_writer) -> None:
        """Copy bytes both ways until either side closes, then close both."""
        upstream = asyncio.ensure_future(_pipe(local_reader, remote_writer))
        downstream = asyncio.ensure_future(_pipe(remote_reader, local_writer))
        try:
            await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pipe_task in (upstream, downstream):
                pipe_task.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)
            _close_quietly(local_writer)
            _close_quietly(remote_writer)

    async def close(self) -> None:
        """Close the listener and every in-flight forwarded stream."""
        self._closed = True
        if self._server is not None:
            self._server.close()

        streams = list(self._streams)
        for task in streams:
            task.cancel()
        if streams:
            await asyncio.gather(*streams, return_exceptions=True)
        self._streams.clear()

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), TUNNEL_CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug(f"Tunnel {self.local_port}: timed out waiting for listener close")
            self._server = None
        logger.info(f"Tunnel {self.local_port} closed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
            "listening": self.is_listening,
            "active_streams": self.active_streams,
        }


async def _pipe(reader, writer) -> None:
    try:
        while True:
            data = await reader.read(SPLICE_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionError, OSError, asyncssh.Error) as e:
        logger.debug(f"Tunnel stream ended: {e}")


def _close_quietly(writer) -> None:
    try:
        writer.close()
    except (OSError, asyncssh.Error, RuntimeError) as e:
        logger.debug(f"Error closing stream: {e}")


class Connection:
    """One authenticated SSH session to one host, with health probe and reconnect."""

    def __init__(
        self,
        config: ConnectionConfig,
        connection_id: str,
        reconnect: Optional[ReconnectConfig] = None,
        health: Optional[HealthConfig] = None,
    ):
        self.id = connection_id
        self.config = config
        self.reconnect_policy = reconnect or ReconnectConfig()
        self.health_policy = health or HealthConfig()

        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.last_error_reason: Optional[str] = None
        self.attempt = 0
        self.last_health_check: Optional[float] = None
        self.is_healthy = False
        self.connected_at: Optional[float] = None

        self._ssh: Optional[asyncssh.SSHClientConnection] = None
        self._tunnels: List[Tunnel] = []
        self._listeners: List[Callable[[ConnectionEvent], Any]] = []

        self._connect_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._closing = False

    # Events

    def add_listener(self, listener: Callable[[ConnectionEvent], Any]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[ConnectionEvent], Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: ConnectionEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Connection event listener error: {e}")

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self.state
        if new_state == old_state:
            return
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransition(
                f"{self.id}: {old_state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        logger.debug(f"{self.id}: {old_state.value} -> {new_state.value}")
        self._emit(
            ConnectionEvent(
                kind="state_changed",
                connection_id=self.id,
                state=new_state,
                old_state=old_state,
                error=self.last_error if new_state == ConnectionState.ERROR else None,
                reason=self.last_error_reason if new_state == ConnectionState.ERROR else None,
                attempt=self.attempt,
            )
        )

    def _record_error(self, error: ConnectionFailure) -> None:
        self.last_error = str(error)
        self.last_error_reason = error.reason
        self._emit(
            ConnectionEvent(
                kind="error",
                connection_id=self.id,
                state=self.state,
                error=self.last_error,
                reason=error.reason,
                attempt=self.attempt,
            )
        )

    # Properties

    @property
    def ssh(self) -> Optional[asyncssh.SSHClientConnection]:
        """Current SSH session, or None while not connected."""
        return self._ssh

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._ssh is not None

    @property
    def tunnels(self) -> List[Tunnel]:
        return list(self._tunnels)

    # Session establishment

    def _client_key(self):
        passphrase = self.config.passphrase
        key = self.config.private_key
        try:
            if "PRIVATE KEY" in key:
                return asyncssh.import_private_key(key, passphrase)
            return asyncssh.read_private_key(os.path.expanduser(key), passphrase)
        except (ValueError, OSError) as e:
            raise AuthenticationError(f"Unable to load private key: {e}") from e

    def _connect_options(self) -> Dict[str, Any]:
        cfg = self.config
        options: Dict[str, Any] = {
            "host": cfg.host,
            "port": cfg.port,
            "username": cfg.username,
            "known_hosts": cfg.known_hosts,
            "keepalive_interval": cfg.keepalive_interval,
            "keepalive_count_max": SSH_KEEPALIVE_COUNT_MAX,
        }
        # Key wins when both credentials are supplied
        if cfg.private_key:
            options["client_keys"] = [self._client_key()]
            options["preferred_auth"] = "publickey"
        elif cfg.password:
            options["password"] = cfg.password
            options["preferred_auth"] = "password,keyboard-interactive"

        if cfg.algorithms.kex:
            options["kex_algs"] = cfg.algorithms.kex
        if cfg.algorithms.cipher:
            options["encryption_algs"] = cfg.algorithms.cipher
        if cfg.algorithms.mac:
            options["mac_algs"] = cfg.algorithms.mac
        return options

    async def _open_session(self) -> asyncssh.SSHClientConnection:
        """Open and authenticate a new SSH session, mapping failures to taxonomy errors."""
        target = self.config.describe()
        options = self._connect_options()
        try:
            return await asyncio.wait_for(
                asyncssh.connect(**options), timeout=self.config.connect_timeout
            )
        except asyncssh.PermissionDenied as e:
            raise AuthenticationError(f"Authentication failed for {target}: {e}") from e
        except asyncio.TimeoutError as e:
            raise ConnectTimeoutError(
                f"Timed out connecting to {target} after {self.config.connect_timeout}s"
            ) from e
        except (asyncssh.Error, OSError) as e:
            raise NetworkError(f"Failed to connect to {target}: {e}") from e

    async def connect(self) -> None:
        """Connect from DISCONNECTED or ERROR.

        Raises the taxonomy error (AuthenticationError, ConnectTimeoutError,
        NetworkError) after recording it and entering ERROR.
        """
        if self.state == ConnectionState.CONNECTED:
            return
        if self.state == ConnectionState.CONNECTING and self._connect_task is not None:
            await asyncio.shield(self._connect_task)
            return
        if self.state not in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            raise ConnectionStateError(f"{self.id}: cannot connect while {self.state.value}")

        self.last_error = None
        self.last_error_reason = None
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"{self.id}: connecting to {self.config.describe()}")

        self._connect_task = asyncio.ensure_future(self._open_session())
        try:
            ssh = await self._connect_task
        except asyncio.CancelledError:
            closed = self._closing or self.state != ConnectionState.CONNECTING
            if self.state == ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
            if closed:
                raise ConnectionStateError(f"{self.id}: closed while connecting") from None
            raise
        except ConnectionFailure as e:
            logger.warning(f"{self.id}: connect failed ({e.reason}): {e}")
            self._record_error(e)
            self._set_state(ConnectionState.ERROR)
            raise
        finally:
            self._connect_task = None

        self._established(ssh)
        logger.info(f"{self.id}: connected to {self.config.describe()}")

    def _established(self, ssh: asyncssh.SSHClientConnection) -> None:
        self._ssh = ssh
        self.attempt = 0
        self.connected_at = time.time()
        self.is_healthy = True
        self.last_health_check = time.time()
        self._set_state(ConnectionState.CONNECTED)
        self._health_task = asyncio.ensure_future(self._health_loop())
        self._watch_task = asyncio.ensure_future(self._watch_closed(ssh))

    # Health probe

    async def probe(self) -> bool:
        """Run the no-op health command once. Returns True on success."""
        ssh = self._ssh
        if ssh is None:
            return False
        try:
            await asyncio.wait_for(
                ssh.run(HEALTH_PROBE_COMMAND, check=False), timeout=self.health_policy.timeout
            )
            healthy = True
        except (asyncio.TimeoutError, asyncssh.Error, OSError) as e:
            logger.warning(f"{self.id}: health probe failed: {e or type(e).__name__}")
            healthy = False
        self.is_healthy = healthy
        self.last_health_check = time.time()
        return healthy

    async def _health_loop(self) -> None:
        while self.state == ConnectionState.CONNECTED:
            await asyncio.sleep(self.health_policy.interval)
            if self.state != ConnectionState.CONNECTED:
                return
            if not await self.probe():
                self._begin_reconnect("health probe failed")
                return

    async def _watch_closed(self, ssh: asyncssh.SSHClientConnection) -> None:
        await ssh.wait_closed()
        if self._ssh is ssh and self.state == ConnectionState.CONNECTED:
            self._begin_reconnect("transport closed")

    # Reconnection

    def _begin_reconnect(self, reason: str) -> None:
        if self.state != ConnectionState.CONNECTED:
            return
        logger.warning(f"{self.id}: connection lost ({reason}), reconnecting")
        self.is_healthy = False
        self._set_state(ConnectionState.RECONNECTING)

        current = asyncio.current_task()
        for attr in ("_health_task", "_watch_task"):
            task = getattr(self, attr)
            if task is not None and task is not current:
                task.cancel()
            setattr(self, attr, None)

        old_ssh, self._ssh = self._ssh, None
        if old_ssh is not None:
            old_ssh.close()

        self._reconnect_task = asyncio.ensure_future(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        policy = self.reconnect_policy
        while self.state == ConnectionState.RECONNECTING:
            delay = reconnect_delay(self.attempt, policy.base, policy.cap)
            logger.info(f"{self.id}: reconnect attempt {self.attempt + 1} in {delay:.1f}s")
            self._emit(
                ConnectionEvent(
                    kind="reconnect_scheduled",
                    connection_id=self.id,
                    state=self.state,
                    attempt=self.attempt,
                    delay=delay,
                )
            )
            await asyncio.sleep(delay)

            try:
                ssh = await self._open_session()
            except AuthenticationError as e:
                logger.error(f"{self.id}: reconnect rejected: {e}")
                self._record_error(e)
                self._reconnect_task = None
                self._set_state(ConnectionState.ERROR)
                return
            except ConnectionFailure as e:
                self.attempt += 1
                logger.warning(f"{self.id}: reconnect attempt {self.attempt} failed: {e}")
                self._record_error(e)
                if policy.max_attempts is not None and self.attempt >= policy.max_attempts:
                    logger.error(f"{self.id}: giving up after {self.attempt} attempts")
                    self._reconnect_task = None
                    self._set_state(ConnectionState.ERROR)
                    return
                continue

            self._reconnect_task = None
            self._established(ssh)
            logger.info(f"{self.id}: reconnected")
            return

    # Teardown

    async def disconnect(self) -> None:
        """Stop timers, close tunnels and the SSH session. Idempotent."""
        self._closing = True
        current = asyncio.current_task()
        tasks = []
        for attr in ("_connect_task", "_health_task", "_reconnect_task", "_watch_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        tunnels, self._tunnels = self._tunnels, []
        for tunnel in tunnels:
            await tunnel.close()

        ssh, self._ssh = self._ssh, None
        if ssh is not None:
            ssh.close()
            try:
                await ssh.wait_closed()
            except (asyncssh.Error, OSError) as e:
                logger.debug(f"{self.id}: error while closing session: {e}")

        self.attempt = 0
        self.is_healthy = False
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"{self.id}: disconnected")
        self._closing = False

    # Operations on a live session

    def _require_connected(self, action: str) -> asyncssh.SSHClientConnection:
        if self.state != ConnectionState.CONNECTED or self._ssh is None:
            raise ConnectionStateError(f"{self.id}: cannot {action} while {self.state.value}")
        return self._ssh

    async def create_tunnel(self, local_port: int, remote_host: str, remote_port: int) -> Tunnel:
        """Bind a local listener forwarding to remote_host:remote_port. Fails fast unless CONNECTED."""
        self._require_connected("create tunnel")
        for tunnel in self._tunnels:
            if local_port and tunnel.key == (local_port, remote_host, remote_port):
                return tunnel
        tunnel = Tunnel(self, local_port, remote_host, remote_port)
        await tunnel.start()
        self._tunnels.append(tunnel)
        return tunnel

    async def close_tunnel(self, tunnel: Tunnel) -> None:
        if tunnel in self._tunnels:
            self._tunnels.remove(tunnel)
        await tunnel.close()

    async def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a remote command and capture its output."""
        ssh = self._require_connected("run commands")
        try:
            result = await asyncio.wait_for(ssh.run(command, check=False), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConnectTimeoutError(f"Command timed out after {timeout}s: {command}") from e
        except (asyncssh.Error, OSError) as e:
            raise NetworkError(f"Command failed to run: {e}") from e

        exit_status = result.exit_status if result.exit_status is not None else -1
        return CommandResult(
            exit_status=exit_status,
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
        )

    async def open_shell(
        self,
        cols: int = 80,
        rows: int = 24,
        env: Optional[Dict[str, str]] = None,
        command: Optional[str] = None,
    ) -> asyncssh.SSHClientProcess:
        """Open an interactive PTY channel on the SSH session itself."""
        ssh = self._require_connected("open shell")
        return await ssh.create_process(
            command,
            term_type="xterm-256color",
            term_size=(cols, rows),
            env=env or {},
            encoding="utf-8",
            errors="replace",
            stderr=asyncssh.STDOUT,
        )

    async def start_sftp(self) -> asyncssh.SFTPClient:
        ssh = self._require_connected("start sftp")
        return await ssh.start_sftp_client()

    def info(self) -> Dict[str, Any]:
        """Snapshot of this connection for status displays."""
        return {
            "id": self.id,
            "host": self.config.host,
            "port": self.config.port,
            "username": self.config.username,
            "auth_method": self.config.auth_method,
            "state": self.state.value,
            "last_error": self.last_error,
            "last_error_reason": self.last_error_reason,
            "attempt": self.attempt,
            "is_healthy": self.is_healthy,
            "last_health_check": self.last_health_check,
            "connected_at": self.connected_at,
            "tunnels": [t.to_dict() for t in self._tunnels],
        }


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
