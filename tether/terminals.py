# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Client-side terminals: routing, buffering and per-mode backends.

Each terminal is routed once, at creation, and never re-routed:

    agent         a live agent binding exists for the workspace
    direct-shell  the workspace is SSH-backed but has no agent
    local         everything else

Output that arrives before the UI calls ``set_ready`` is held in arrival
order and flushed on ready.
"""

import asyncio
import json
import logging
import os
import shlex
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import asyncssh

from tether.agent.pty_process import PtyProcess
from tether.agent.sessions import build_environment, default_shell
from tether.agent_client import AgentClient
from tether.connection import ConnectionState, Tunnel
from tether.connection_manager import ConnectionManager, get_connection_manager
from tether.deployer import AgentDeployer
from tether.errors import AgentError, TetherError
from tether.proxy import TransportProxy

logger = logging.getLogger(__name__)

DIRECT_READ_SIZE = 4096


class RoutingMode(str, Enum):
    AGENT = "agent"
    DIRECT_SHELL = "direct-shell"
    LOCAL = "local"


@dataclass
class WorkspaceContext:
    """What the adapter needs to know about the workspace a terminal belongs to."""

    workspace_id: str
    path: str
    connection_id: Optional[str] = None  # set for SSH-backed workspaces
    name: Optional[str] = None


@dataclass
class AgentBinding:
    connection_id: str
    tunnel: Tunnel
    client: AgentClient
    remote_workspace_id: str


class ClientTerminalHandle:
    """UI-facing terminal. The routing mode is fixed at construction."""

    def __init__(self, terminal_id: str, mode: RoutingMode, workspace_id: str):
        self.id = terminal_id
        self._mode = mode
        self.workspace_id = workspace_id
        self.session_id: Optional[str] = None
        self.pid: Optional[int] = None
        self.backend = None
        self.ready = False
        self.closed = False
        self.exited = False
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[int] = None
        self._pending: List[Tuple[str, tuple]] = []
        self._on_data: Optional[Callable[[str], Any]] = None
        self._on_exit: Optional[Callable[[Optional[int], Optional[int]], Any]] = None

    @property
    def mode(self) -> RoutingMode:
        return self._mode

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # Events from the backend

    def deliver_output(self, data: str) -> None:
        if not self.ready:
            self._pending.append(("data", (data,)))
            return
        self._dispatch("data", (data,))

    def deliver_exit(self, exit_code: Optional[int], exit_signal: Optional[int]) -> None:
        if self.exited:
            return
        self.exited = True
        self.exit_code = exit_code
        self.exit_signal = exit_signal
        if not self.ready:
            self._pending.append(("exit", (exit_code, exit_signal)))
            return
        self._dispatch("exit", (exit_code, exit_signal))

    def _dispatch(self, kind: str, args: tuple) -> None:
        sink = self._on_data if kind == "data" else self._on_exit
        if sink is None:
            return
        try:
            sink(*args)
        except Exception as e:
            logger.error(f"Terminal {self.id}: {kind} sink error: {e}")

    def set_ready(
        self,
        on_data: Callable[[str], Any],
        on_exit: Optional[Callable[[Optional[int], Optional[int]], Any]] = None,
    ) -> None:
        """Install the UI sinks and flush everything buffered so far, in order."""
        self._on_data = on_data
        self._on_exit = on_exit
        pending, self._pending = self._pending, []
        for kind, args in pending:
            self._dispatch(kind, args)
        self.ready = True
        if pending:
            logger.debug(f"Terminal {self.id}: flushed {len(pending)} buffered events")

    # Calls from the UI

    async def write(self, data: str) -> bool:
        if self.closed or self.exited or self.backend is None:
            return False
        await self.backend.write(data)
        return True

    async def resize(self, cols: int, rows: int) -> bool:
        if self.closed or self.exited or self.backend is None:
            return False
        await self.backend.resize(cols, rows)
        return True

    async def close(self, kill: bool = False) -> None:
        """Detach from the underlying session. ``kill`` also ends it."""
        if self.closed:
            return
        self.closed = True
        if self.backend is not None:
            await self.backend.close(kill)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "workspace_id": self.workspace_id,
            "session_id": self.session_id,
            "pid": self.pid,
            "ready": self.ready,
            "exited": self.exited,
            "closed": self.closed,
        }


class AgentBackend:
    """Terminal streamed from an agent Session through the TransportProxy."""

    def __init__(self, handle: ClientTerminalHandle, proxy: TransportProxy, client: AgentClient):
        self.handle = handle
        self.proxy = proxy
        self.client = client
        self.key = handle.id
        self._closing = False

    async def start(self) -> None:
        url = self.client.stream_url(self.handle.session_id)
        if not await self.proxy.open(self.key, url, self._on_message, self._on_close):
            raise AgentError(f"Could not open stream for {self.handle.session_id}")

    def _on_message(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Terminal {self.handle.id}: non-JSON stream message")
            return
        msg_type = message.get("type")
        if msg_type == "data":
            self.handle.deliver_output(message.get("data", ""))
        elif msg_type == "exit":
            self.handle.deliver_exit(message.get("exitCode"), message.get("signal"))
        elif msg_type == "connected":
            self.handle.pid = message.get("pid")
        else:
            logger.debug(f"Terminal {self.handle.id}: ignoring stream message {msg_type!r}")

    def _on_close(self, code: Optional[int], reason: str) -> None:
        if self._closing or self.handle.exited:
            return
        logger.warning(f"Terminal {self.handle.id}: stream closed ({code} {reason})")
        self.handle.deliver_exit(None, None)

    async def write(self, data: str) -> None:
        await self.proxy.send(self.key, json.dumps({"type": "input", "data": data}))

    async def resize(self, cols: int, rows: int) -> None:
        await self.proxy.send(self.key, json.dumps({"type": "resize", "cols": cols, "rows": rows}))

    async def close(self, kill: bool) -> None:
        self._closing = True
        await self.proxy.close(self.key)
        if kill:
            try:
                await self.client.delete_terminal(self.handle.session_id)
            except AgentError as e:
                logger.warning(f"Terminal {self.handle.id}: delete failed: {e}")


class DirectShellBackend:
    """PTY channel opened directly on the SSH session."""

    def __init__(self, handle: ClientTerminalHandle, process):
        self.handle = handle
        self.process = process
        self._pump_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._pump_task = asyncio.ensure_future(self._pump())

    async def _pump(self) -> None:
        try:
            while True:
                data = await self.process.stdout.read(DIRECT_READ_SIZE)
                if not data:
                    break
                self.handle.deliver_output(data)
            await self.process.wait_closed()
        except (OSError, asyncssh.Error) as e:
            logger.warning(f"Terminal {self.handle.id}: direct shell error: {e}")
        finally:
            exit_signal = self.process.exit_signal
            self.handle.deliver_exit(
                self.process.exit_status, exit_signal[0] if exit_signal else None
            )

    async def write(self, data: str) -> None:
        self.process.stdin.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        self.process.change_terminal_size(cols, rows)

    async def close(self, kill: bool) -> None:
        # A direct channel has no server-side session to detach from
        self.process.close()
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)


class LocalBackend:
    """Plain local pseudo-terminal."""

    def __init__(self, handle: ClientTerminalHandle, process: PtyProcess):
        self.handle = handle
        self.process = process

    async def start(self) -> None:
        pass

    async def write(self, data: str) -> None:
        self.process.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        self.process.resize(cols, rows)

    async def close(self, kill: bool) -> None:
        await self.process.terminate()


class ClientSessionAdapter:
    """Creates terminals for workspaces and routes them agent, direct-shell or local."""

    def __init__(
        self,
        manager: Optional[ConnectionManager] = None,
        deployer: Optional[AgentDeployer] = None,
        proxy: Optional[TransportProxy] = None,
        agent_port: Optional[int] = None,
        client_factory: Callable[[str], AgentClient] = AgentClient,
        local_spawn: Callable = PtyProcess.spawn,
    ):
        self.manager = manager if manager is not None else get_connection_manager()
        self.deployer = deployer if deployer is not None else AgentDeployer()
        self.proxy = proxy if proxy is not None else TransportProxy()
        self.agent_port = agent_port or self.deployer.config.port
        self._client_factory = client_factory
        self._local_spawn = local_spawn
        self._agents: Dict[str, AgentBinding] = {}
        self._terminals: Dict[str, ClientTerminalHandle] = {}

    # Agent bindings

    async def connect_agent(self, workspace: WorkspaceContext) -> bool:
        """Deploy the agent, tunnel to it and register the workspace. False on failure."""
        if not workspace.connection_id:
            return False
        if self.agent_live(workspace.workspace_id):
            return True

        try:
            connection = self.manager.get(workspace.connection_id)
        except KeyError:
            logger.warning(
                f"Agent unavailable for workspace {workspace.workspace_id}: "
                f"unknown connection {workspace.connection_id}"
            )
            return False
        tunnel = None
        client = None
        try:
            await self.deployer.ensure_agent_running(connection)
            tunnel = await connection.create_tunnel(0, "127.0.0.1", self.agent_port)
            client = self._client_factory(f"http://127.0.0.1:{tunnel.local_port}")
            if not await client.connect():
                raise AgentError("agent did not answer through the tunnel")
            remote = await client.create_workspace(
                workspace.name or os.path.basename(workspace.path.rstrip("/")) or workspace.path,
                workspace.path,
                local_id=workspace.workspace_id,
            )
        except TetherError as e:
            logger.warning(
                f"Agent unavailable for workspace {workspace.workspace_id} ({e.reason}): {e}"
            )
            if client is not None:
                await client.close()
            if tunnel is not None:
                await connection.close_tunnel(tunnel)
            return False

        self._agents[workspace.workspace_id] = AgentBinding(
            connection_id=connection.id,
            tunnel=tunnel,
            client=client,
            remote_workspace_id=remote["id"],
        )
        logger.info(
            f"Workspace {workspace.workspace_id} bound to agent via "
            f"127.0.0.1:{tunnel.local_port} ({remote['id']})"
        )
        return True

    def agent_live(self, workspace_id: str) -> bool:
        binding = self._agents.get(workspace_id)
        if binding is None or not binding.client.connected:
            return False
        if binding.connection_id not in self.manager:
            return False
        return self.manager.get(binding.connection_id).state == ConnectionState.CONNECTED

    async def disconnect_agent(self, workspace_id: str) -> None:
        binding = self._agents.pop(workspace_id, None)
        if binding is None:
            return
        await binding.client.close()
        if binding.connection_id in self.manager:
            await self.manager.get(binding.connection_id).close_tunnel(binding.tunnel)

    # Terminals

    def routing_mode(self, workspace: WorkspaceContext) -> RoutingMode:
        if self.agent_live(workspace.workspace_id):
            return RoutingMode.AGENT
        if workspace.connection_id:
            return RoutingMode.DIRECT_SHELL
        return RoutingMode.LOCAL

    async def create_terminal(
        self,
        workspace: WorkspaceContext,
        cols: int = 80,
        rows: int = 24,
        shell: Optional[str] = None,
    ) -> ClientTerminalHandle:
        """Create a terminal. Routing is decided here, once."""
        mode = self.routing_mode(workspace)
        handle = ClientTerminalHandle(f"ct-{uuid.uuid4().hex[:8]}", mode, workspace.workspace_id)
        logger.info(f"Terminal {handle.id} for {workspace.workspace_id} routed {mode.value}")

        if mode == RoutingMode.AGENT:
            binding = self._agents[workspace.workspace_id]
            record = await binding.client.create_terminal(
                workspace.workspace_id, shell=shell, cols=cols, rows=rows
            )
            handle.session_id = record["id"]
            handle.pid = record.get("pid")
            handle.backend = AgentBackend(handle, self.proxy, binding.client)
        elif mode == RoutingMode.DIRECT_SHELL:
            connection = self.manager.get(workspace.connection_id)
            login = shlex.quote(shell) if shell else '"${SHELL:-/bin/sh}"'
            command = f"cd {shlex.quote(workspace.path)} 2>/dev/null; exec {login} -l"
            process = await connection.open_shell(cols, rows, command=command)
            handle.backend = DirectShellBackend(handle, process)
        else:
            process = await self._local_spawn(
                [shell or default_shell(), "-l"],
                workspace.path,
                build_environment(),
                cols,
                rows,
                handle.deliver_output,
                handle.deliver_exit,
            )
            handle.pid = process.pid
            handle.backend = LocalBackend(handle, process)

        await handle.backend.start()
        self._terminals[handle.id] = handle
        return handle

    def get_terminal(self, terminal_id: str) -> Optional[ClientTerminalHandle]:
        return self._terminals.get(terminal_id)

    def list_terminals(self) -> List[ClientTerminalHandle]:
        return list(self._terminals.values())

    async def close_terminal(self, terminal_id: str, kill: bool = False) -> bool:
        handle = self._terminals.pop(terminal_id, None)
        if handle is None:
            return False
        await handle.close(kill=kill)
        return True

    async def close(self) -> None:
        for terminal_id in list(self._terminals):
            await self.close_terminal(terminal_id)
        for workspace_id in list(self._agents):
            await self.disconnect_agent(workspace_id)
        await self.proxy.close_all()
