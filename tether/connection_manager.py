# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Registry of SSH Connections keyed by id.

The registry is the only process-wide mutable state of the control plane.
All mutation goes through create/remove, which hold the registry lock, so
concurrent callers always see a consistent set of connections.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from tether.connection import CommandResult, Connection, ConnectionEvent, ConnectionState
from tether.errors import ConnectionStateError, TetherError
from tether.host_config import get_config
from tether.models.config import ConnectionConfig, HealthConfig, ReconnectConfig

logger = logging.getLogger(__name__)


def generate_connection_id() -> str:
    return f"ssh-{uuid.uuid4().hex[:12]}"


class ConnectionManager:
    """Routes lifecycle commands to Connections and fans out their events."""

    def __init__(
        self,
        reconnect: Optional[ReconnectConfig] = None,
        health: Optional[HealthConfig] = None,
    ):
        if reconnect is None or health is None:
            config = get_config()
            reconnect = reconnect or config.reconnect
            health = health or config.health
        self.reconnect_policy = reconnect
        self.health_policy = health
        self._connections: Dict[str, Connection] = {}
        self._subscribers: List[Callable[[ConnectionEvent], Any]] = []
        self._lock = asyncio.Lock()

    # Events

    def subscribe(self, callback: Callable[[ConnectionEvent], Any]) -> None:
        """Receive lifecycle events from every managed connection."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[ConnectionEvent], Any]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _dispatch(self, event: ConnectionEvent) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Connection subscriber error: {e}")

    # Registry

    async def create(
        self,
        config: Union[ConnectionConfig, Dict[str, Any]],
        connection_id: Optional[str] = None,
    ) -> str:
        """Register a connection without opening a socket. Returns its id."""
        if not isinstance(config, ConnectionConfig):
            try:
                config = ConnectionConfig.model_validate(config)
            except ValidationError as e:
                raise TetherError(f"Invalid connection config: {e}", reason="invalid_config") from e

        async with self._lock:
            conn_id = connection_id or generate_connection_id()
            if conn_id in self._connections:
                raise TetherError(f"Connection already exists: {conn_id}", reason="duplicate")
            connection = Connection(
                config,
                conn_id,
                reconnect=self.reconnect_policy,
                health=self.health_policy,
            )
            connection.add_listener(self._dispatch)
            self._connections[conn_id] = connection

        logger.info(f"Registered connection {conn_id} ({config.describe()})")
        return conn_id

    async def remove(self, connection_id: str) -> bool:
        """Disconnect and unregister. Returns False if the id is unknown."""
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        await connection.disconnect()
        connection.remove_listener(self._dispatch)
        logger.info(f"Removed connection {connection_id}")
        return True

    def get(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise KeyError(f"Unknown connection: {connection_id}")
        return connection

    def list(self) -> List[Dict[str, Any]]:
        return [c.info() for c in list(self._connections.values())]

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    # Lifecycle commands

    async def connect(self, connection_id: str) -> Connection:
        connection = self.get(connection_id)
        await connection.connect()
        return connection

    async def disconnect(self, connection_id: str) -> None:
        await self.get(connection_id).disconnect()

    async def exec(
        self, connection_id: str, command: str, timeout: Optional[float] = None
    ) -> CommandResult:
        connection = self.get(connection_id)
        if connection.state != ConnectionState.CONNECTED:
            raise ConnectionStateError(
                f"{connection_id}: cannot exec while {connection.state.value}"
            )
        return await connection.run(command, timeout=timeout)

    async def disconnect_all(self) -> None:
        connections = list(self._connections.values())
        if connections:
            await asyncio.gather(*(c.disconnect() for c in connections), return_exceptions=True)

    async def shutdown(self) -> None:
        """Disconnect and unregister everything."""
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.remove_listener(self._dispatch)
        if connections:
            results = await asyncio.gather(
                *(c.disconnect() for c in connections), return_exceptions=True
            )
            for connection, result in zip(connections, results):
                if isinstance(result, Exception):
                    logger.error(f"Error disconnecting {connection.id}: {result}")
        self._subscribers.clear()
        logger.info("Connection manager shut down")

    def health_status(self) -> Dict[str, Any]:
        """Summary counts by state plus per-connection health."""
        summary: Dict[str, Any] = {state.value: 0 for state in ConnectionState}
        connections = []
        for connection in list(self._connections.values()):
            summary[connection.state.value] += 1
            connections.append(
                {
                    "id": connection.id,
                    "state": connection.state.value,
                    "is_healthy": connection.is_healthy,
                    "last_health_check": connection.last_health_check,
                    "last_error": connection.last_error,
                }
            )
        return {"total": len(connections), "by_state": summary, "connections": connections}


# Singleton instance
_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global connection manager."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
