# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""FastAPI control surface and terminal streams for the tether agent.

Routes:
    GET    /health
    POST   /workspaces                     {name, path}
    GET    /workspaces
    GET    /workspaces/{id}
    DELETE /workspaces/{id}
    POST   /workspaces/{id}/terminals      {shell, cols, rows}
    GET    /terminals?workspaceId=
    GET    /terminals/{id}
    DELETE /terminals/{id}
    POST   /terminals/{id}/input           {data}
    POST   /terminals/{id}/resize          {cols, rows}
    WS     /terminals/{id}/stream

Stream messages are JSON objects tagged by "type". Server to client:
connected, data, exit (the server closes the socket after exit). Client to
server: input, resize.
"""

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from tether import __version__
from tether.agent.idle import IdleMonitor
from tether.agent.sessions import DEFAULT_COLS, DEFAULT_ROWS, SessionManager, Viewer
from tether.agent.settings import AgentSettings
from tether.agent.workspaces import WorkspaceStore

logger = logging.getLogger(__name__)

STREAM_QUEUE_SIZE = 1024  # messages buffered per viewer before output is dropped
CLOSE_NOT_FOUND = 1008
CLOSE_NORMAL = 1000


# Request models
class CreateWorkspaceRequest(BaseModel):
    name: Optional[str] = None
    path: Optional[str] = None


class CreateTerminalRequest(BaseModel):
    shell: Optional[str] = None
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None


class InputRequest(BaseModel):
    data: str


class ResizeRequest(BaseModel):
    cols: int
    rows: int


class ViewerQueue:
    """Bounded outbound queue for one stream connection.

    ``push`` raises asyncio.QueueFull when the viewer has fallen behind, which
    the Session logs and treats as a skipped message for this viewer only.
    The exit message always gets through.
    """

    def __init__(self, maxsize: int = STREAM_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def push(self, message: Dict[str, Any]) -> None:
        self._queue.put_nowait(message)

    def push_final(self, message: Dict[str, Any]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(message)

    async def get(self) -> Dict[str, Any]:
        return await self._queue.get()


def create_app(
    settings: Optional[AgentSettings] = None,
    sessions: Optional[SessionManager] = None,
    workspaces: Optional[WorkspaceStore] = None,
    on_idle: Optional[Callable[[], Any]] = None,
) -> FastAPI:
    settings = settings or AgentSettings.from_env()
    sessions = sessions or SessionManager()
    workspaces = workspaces if workspaces is not None else WorkspaceStore(settings.data_dir)
    started_at = time.time()

    def default_on_idle():
        logger.info("Idle timeout reached with no shutdown hook installed")

    monitor = IdleMonitor(
        timeout_seconds=settings.idle_timeout_seconds,
        on_idle=on_idle or default_on_idle,
        check_interval=settings.idle_check_interval,
        enabled=settings.shutdown_on_idle,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        monitor.start()
        logger.info(f"tether agent {__version__} ready on {settings.host}:{settings.port}")
        yield
        await monitor.stop()
        await sessions.shutdown_all()
        logger.info("tether agent stopped")

    app = FastAPI(title="tether agent", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.workspaces = workspaces
    app.state.idle_monitor = monitor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def track_activity(request: Request, call_next):
        monitor.record_activity()
        return await call_next(request)

    def require_session(terminal_id: str):
        session = sessions.get(terminal_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Terminal not found")
        return session

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "uptime": round(time.time() - started_at, 3),
            "terminals": sessions.count(),
        }

    # Workspaces

    @app.post("/workspaces", status_code=201)
    async def create_workspace(request: CreateWorkspaceRequest):
        if not request.name or not request.path:
            raise HTTPException(status_code=400, detail="name and path are required")
        try:
            workspace = workspaces.create(request.name, request.path)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return workspace.to_dict()

    @app.get("/workspaces")
    async def list_workspaces():
        return {"workspaces": [w.to_dict() for w in workspaces.list()]}

    @app.get("/workspaces/{workspace_id}")
    async def get_workspace(workspace_id: str):
        workspace = workspaces.get(workspace_id, touch=True)
        if workspace is None:
            raise HTTPException(status_code=404, detail="Workspace not found")
        return workspace.to_dict()

    @app.delete("/workspaces/{workspace_id}")
    async def delete_workspace(workspace_id: str):
        if workspaces.get(workspace_id) is None:
            raise HTTPException(status_code=404, detail="Workspace not found")
        closed = await sessions.delete_workspace_sessions(workspace_id)
        workspaces.delete(workspace_id)
        return {"success": True, "terminalsClosed": closed}

    @app.post("/workspaces/{workspace_id}/terminals", status_code=201)
    async def create_terminal(workspace_id: str, request: CreateTerminalRequest):
        workspace = workspaces.get(workspace_id, touch=True)
        if workspace is None:
            raise HTTPException(status_code=404, detail="Workspace not found")
        try:
            session = await sessions.create_session(
                cwd=request.cwd or workspace.path,
                workspace_id=workspace_id,
                shell=request.shell,
                cols=request.cols,
                rows=request.rows,
                env=request.env,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except OSError as e:
            logger.error(f"Failed to spawn terminal in {workspace_id}: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to spawn shell: {e}")
        return session.to_dict()

    # Terminals

    @app.get("/terminals")
    async def list_terminals(workspaceId: Optional[str] = None):
        return {"terminals": [s.to_dict() for s in sessions.list(workspaceId)]}

    @app.get("/terminals/{terminal_id}")
    async def get_terminal(terminal_id: str):
        return require_session(terminal_id).to_dict()

    @app.delete("/terminals/{terminal_id}")
    async def delete_terminal(terminal_id: str):
        if not await sessions.delete(terminal_id):
            raise HTTPException(status_code=404, detail="Terminal not found")
        return {"success": True}

    @app.post("/terminals/{terminal_id}/input")
    async def terminal_input(terminal_id: str, request: InputRequest):
        session = require_session(terminal_id)
        return {"success": session.write(request.data)}

    @app.post("/terminals/{terminal_id}/resize")
    async def terminal_resize(terminal_id: str, request: ResizeRequest):
        session = require_session(terminal_id)
        try:
            resized = session.resize(request.cols, request.rows)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": resized, "cols": session.cols, "rows": session.rows}

    @app.websocket("/terminals/{terminal_id}/stream")
    async def terminal_stream(websocket: WebSocket, terminal_id: str):
        """Duplex stream for one terminal. Any number of viewers may attach."""
        client_id = uuid.uuid4().hex[:8]

        await websocket.accept()
        session = sessions.get(terminal_id)
        if session is None:
            logger.warning(f"Stream [{client_id}] for unknown terminal {terminal_id}")
            await websocket.close(code=CLOSE_NOT_FOUND, reason="Terminal not found")
            return

        logger.info(f"Stream connected [{client_id}]: {terminal_id}")
        monitor.connection_opened()
        outbound = ViewerQueue()
        outbound.push({"type": "connected", "terminalId": session.id, "pid": session.pid})

        viewer = session.attach(
            Viewer(
                on_data=lambda data: outbound.push({"type": "data", "data": data}),
                on_exit=lambda code, sig: outbound.push_final(
                    {"type": "exit", "exitCode": code, "signal": sig}
                ),
                id=client_id,
            )
        )

        async def send_loop():
            while True:
                message = await outbound.get()
                await websocket.send_text(json.dumps(message))
                monitor.record_activity()
                if message["type"] == "exit":
                    await websocket.close(code=CLOSE_NORMAL, reason="Terminal exited")
                    return

        async def receive_loop():
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect:
                    return
                monitor.record_activity()
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"Stream [{client_id}]: ignoring non-JSON message")
                    continue
                if not isinstance(message, dict):
                    continue

                msg_type = message.get("type")
                if msg_type == "input":
                    session.write(str(message.get("data", "")))
                elif msg_type == "resize":
                    try:
                        session.resize(int(message["cols"]), int(message["rows"]))
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning(f"Stream [{client_id}]: bad resize {message}: {e}")
                else:
                    logger.warning(f"Stream [{client_id}]: unknown message type {msg_type!r}")

        sender = asyncio.ensure_future(send_loop())
        receiver = asyncio.ensure_future(receive_loop())
        try:
            done, pending = await asyncio.wait(
                {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.debug(f"Stream [{client_id}] ended: {task.exception()!r}")
        finally:
            # Detach before any await, cancellation may land on the wait below
            session.detach(viewer)
            monitor.connection_closed()
            logger.info(f"Stream disconnected [{client_id}]: {terminal_id}")
            for task in (sender, receiver):
                task.cancel()
            # wait, not gather: a cancellation raised here must be our own
            await asyncio.wait((sender, receiver))

    return app


async def serve(settings: Optional[AgentSettings] = None) -> None:
    """Run the agent until a signal or the idle timeout stops it."""
    settings = settings or AgentSettings.from_env()
    server: Optional[uvicorn.Server] = None

    def on_idle():
        if server is not None:
            server.should_exit = True

    app = create_app(settings, on_idle=on_idle)
    server_config = uvicorn.Config(
        app, host=settings.host, port=settings.port, log_level="info", lifespan="on"
    )
    server = uvicorn.Server(server_config)
    await server.serve()
