# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""PTY sessions with multi-viewer fan-out.

A Session owns one shell process and a set of attached viewers. Each viewer
is a pair of sinks (data, exit). Output is pushed to every viewer in the
order the process produced it; a sink that raises is logged and skipped for
that message only. Attaching never spawns, detaching never kills: a Session
lives until its process exits or it is deleted.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tether.agent.pty_process import PtyProcess

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24

# Always applied on top of any caller-supplied environment
TERMINAL_ENV = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "LANG": "en_US.UTF-8",
    "LC_ALL": "en_US.UTF-8",
    "LC_CTYPE": "en_US.UTF-8",
}

ProcessFactory = Callable[..., Awaitable[Any]]


def generate_session_id() -> str:
    return f"term_{uuid.uuid4().hex[:12]}"


def default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


def build_environment(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update({str(k): str(v) for k, v in extra.items()})
    env.update(TERMINAL_ENV)
    return env


@dataclass(eq=False)
class Viewer:
    """Opaque attachment point: output sink plus exit sink.

    Sinks are plain callables invoked on the event loop. They must not block;
    raising marks the message as undeliverable to this viewer only.
    """

    on_data: Callable[[str], Any]
    on_exit: Callable[[Optional[int], Optional[int]], Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class Session:
    """One shell process and the viewers currently watching it."""

    def __init__(
        self,
        session_id: str,
        workspace_id: Optional[str],
        cwd: str,
        shell: str,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ):
        self.id = session_id
        self.workspace_id = workspace_id
        self.cwd = cwd
        self.shell = shell
        self.cols = cols
        self.rows = rows
        self.created = time.time()
        self.last_activity = self.created
        self.process = None
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[int] = None
        self.exited = False
        # dict keeps attach order; values are the viewers themselves
        self._viewers: Dict[str, Viewer] = {}

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    # Viewers

    def attach(self, viewer: Viewer) -> Viewer:
        """Add a viewer to the broadcast set. Does not touch the process."""
        if self.exited:
            self._deliver_exit(viewer, self.exit_code, self.exit_signal)
            return viewer
        self._viewers[viewer.id] = viewer
        logger.debug(f"{self.id}: viewer {viewer.id} attached ({len(self._viewers)} total)")
        return viewer

    def detach(self, viewer: Viewer) -> bool:
        """Remove exactly this viewer. The process keeps running."""
        removed = self._viewers.pop(viewer.id, None) is not None
        if removed:
            logger.debug(f"{self.id}: viewer {viewer.id} detached ({len(self._viewers)} left)")
        return removed

    # Process events

    def handle_output(self, data: str) -> None:
        self.last_activity = time.time()
        for viewer in list(self._viewers.values()):
            try:
                viewer.on_data(data)
            except Exception as e:
                logger.warning(f"{self.id}: dropped output for viewer {viewer.id}: {e!r}")

    def handle_exit(self, exit_code: Optional[int], exit_signal: Optional[int]) -> None:
        if self.exited:
            return
        self.exited = True
        self.exit_code = exit_code
        self.exit_signal = exit_signal
        logger.info(f"{self.id}: process exited code={exit_code} signal={exit_signal}")
        viewers = list(self._viewers.values())
        self._viewers.clear()
        for viewer in viewers:
            self._deliver_exit(viewer, exit_code, exit_signal)

    def _deliver_exit(self, viewer: Viewer, exit_code, exit_signal) -> None:
        try:
            viewer.on_exit(exit_code, exit_signal)
        except Exception as e:
            logger.warning(f"{self.id}: exit notification failed for viewer {viewer.id}: {e!r}")

    # Input

    def write(self, data: str) -> bool:
        """Write input verbatim. Returns False once the process is gone."""
        if self.exited or self.process is None:
            return False
        self.last_activity = time.time()
        self.process.write(data)
        return True

    def resize(self, cols: int, rows: int) -> bool:
        if self.exited or self.process is None:
            return False
        if cols < 1 or rows < 1:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        self.cols = cols
        self.rows = rows
        self.process.resize(cols, rows)
        return True

    async def terminate(self) -> None:
        """Kill the process and close every viewer's sinks."""
        if self.process is not None and not self.exited:
            await self.process.terminate()
        # A process that died without reporting still closes its viewers
        self.handle_exit(self.exit_code, self.exit_signal)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "workspaceId": self.workspace_id,
            "cwd": self.cwd,
            "shell": self.shell,
            "cols": self.cols,
            "rows": self.rows,
            "created": self.created,
            "lastActivity": self.last_activity,
            "viewers": self.viewer_count,
            "exited": self.exited,
        }


class SessionManager:
    """Owns every Session on the agent, keyed by session id."""

    def __init__(self, process_factory: Optional[ProcessFactory] = None):
        self._process_factory = process_factory or PtyProcess.spawn
        self._sessions: Dict[str, Session] = {}

    async def create_session(
        self,
        cwd: str,
        workspace_id: Optional[str] = None,
        shell: Optional[str] = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        env: Optional[Dict[str, str]] = None,
    ) -> Session:
        """Spawn ``shell -l`` in ``cwd`` on a new pty."""
        if not os.path.isdir(cwd):
            raise ValueError(f"Working directory does not exist: {cwd}")
        if cols < 1 or rows < 1:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")

        shell = shell or default_shell()
        session = Session(generate_session_id(), workspace_id, cwd, shell, cols, rows)

        def on_exit(exit_code, exit_signal):
            session.handle_exit(exit_code, exit_signal)
            if self._sessions.get(session.id) is session:
                del self._sessions[session.id]

        session.process = await self._process_factory(
            [shell, "-l"],
            cwd,
            build_environment(env),
            cols,
            rows,
            session.handle_output,
            on_exit,
        )
        # The process may already have exited inside the factory
        if not session.exited:
            self._sessions[session.id] = session
        logger.info(f"Created session {session.id} pid={session.pid} shell={shell} cwd={cwd}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list(self, workspace_id: Optional[str] = None) -> List[Session]:
        sessions = list(self._sessions.values())
        if workspace_id is not None:
            sessions = [s for s in sessions if s.workspace_id == workspace_id]
        return sessions

    def count(self) -> int:
        return len(self._sessions)

    async def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.terminate()
        logger.info(f"Deleted session {session_id}")
        return True

    async def delete_workspace_sessions(self, workspace_id: str) -> int:
        sessions = self.list(workspace_id)
        for session in sessions:
            await self.delete(session.id)
        return len(sessions)

    async def shutdown_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        if sessions:
            logger.info(f"Terminating {len(sessions)} sessions")
            await asyncio.gather(*(s.terminate() for s in sessions), return_exceptions=True)
