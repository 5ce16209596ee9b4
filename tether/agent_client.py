# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""HTTP client for the agent control surface, reached through a Tunnel."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from tether.errors import AgentError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class AgentClient:
    """Talks to one agent at ``base_url`` (normally http://127.0.0.1:<tunnel port>).

    Keeps a map from local workspace ids to the agent's workspace ids so
    callers can keep using their own identifiers.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._workspace_map: Dict[str, str] = {}
        self.connected = False
        self.agent_version: Optional[str] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise AgentError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise AgentError(f"{method} {path}: {detail}", status_code=response.status_code)
        return response.json()

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")

    async def connect(self) -> bool:
        """Check the agent is reachable and healthy."""
        try:
            data = await self.health()
        except AgentError as e:
            logger.warning(f"Agent at {self.base_url} not reachable: {e}")
            self.connected = False
            return False
        self.connected = data.get("status") == "ok"
        self.agent_version = data.get("version")
        if self.connected:
            logger.info(f"Connected to agent {self.agent_version} at {self.base_url}")
        return self.connected

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.connected = False

    # Workspaces

    async def create_workspace(
        self, name: str, path: str, local_id: Optional[str] = None
    ) -> Dict[str, Any]:
        workspace = await self._request("POST", "/workspaces", json={"name": name, "path": path})
        if local_id is not None:
            self._workspace_map[local_id] = workspace["id"]
        return workspace

    async def list_workspaces(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/workspaces")
        return data.get("workspaces", [])

    async def get_workspace(self, workspace_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/workspaces/{workspace_id}")

    async def delete_workspace(self, workspace_id: str) -> None:
        await self._request("DELETE", f"/workspaces/{workspace_id}")
        for local_id, remote_id in list(self._workspace_map.items()):
            if remote_id == workspace_id:
                del self._workspace_map[local_id]

    def remote_workspace_id(self, local_id: str) -> Optional[str]:
        return self._workspace_map.get(local_id)

    def map_workspace(self, local_id: str, remote_id: str) -> None:
        self._workspace_map[local_id] = remote_id

    # Terminals

    async def create_terminal(
        self,
        workspace_id: str,
        shell: Optional[str] = None,
        cols: int = 80,
        rows: int = 24,
        cwd: Optional[str] = None,
    ) -> Dict[str, Any]:
        remote_id = self._workspace_map.get(workspace_id, workspace_id)
        body: Dict[str, Any] = {"cols": cols, "rows": rows}
        if shell:
            body["shell"] = shell
        if cwd:
            body["cwd"] = cwd
        return await self._request("POST", f"/workspaces/{remote_id}/terminals", json=body)

    async def list_terminals(self, workspace_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {}
        if workspace_id is not None:
            params["workspaceId"] = self._workspace_map.get(workspace_id, workspace_id)
        data = await self._request("GET", "/terminals", params=params)
        return data.get("terminals", [])

    async def get_terminal(self, terminal_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/terminals/{terminal_id}")

    async def delete_terminal(self, terminal_id: str) -> None:
        await self._request("DELETE", f"/terminals/{terminal_id}")

    async def send_input(self, terminal_id: str, data: str) -> None:
        await self._request("POST", f"/terminals/{terminal_id}/input", json={"data": data})

    async def resize_terminal(self, terminal_id: str, cols: int, rows: int) -> None:
        await self._request(
            "POST", f"/terminals/{terminal_id}/resize", json={"cols": cols, "rows": rows}
        )

    def stream_url(self, terminal_id: str) -> str:
        """WebSocket URL for a terminal's duplex stream."""
        if self.base_url.startswith("https://"):
            ws_base = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            ws_base = "ws://" + self.base_url[len("http://"):]
        else:
            ws_base = self.base_url
        return f"{ws_base}/terminals/{terminal_id}/stream"
