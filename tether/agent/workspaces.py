"""Persistent workspace registry for the agent (workspaces.json in the data dir)."""

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

STORE_FILENAME = "workspaces.json"


def generate_workspace_id() -> str:
    return f"ws_{uuid.uuid4().hex[:12]}"


class Workspace(BaseModel):
    """A named directory on the remote host that terminals start in."""

    id: str
    name: str
    path: str
    created_at: float = Field(default_factory=time.time, alias="createdAt")
    last_accessed: float = Field(default_factory=time.time, alias="lastAccessed")

    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class WorkspaceStore:
    """Workspaces keyed by id, written through to a JSON file on every change."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self._workspaces: Dict[str, Workspace] = {}
        self._load()

    @property
    def store_path(self) -> Optional[Path]:
        if self.data_dir is None:
            return None
        return self.data_dir / STORE_FILENAME

    def _load(self) -> None:
        path = self.store_path
        if path is None or not path.exists():
            return
        try:
            with open(path) as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load workspaces from {path}: {e}")
            return

        for item in raw.get("workspaces", []):
            try:
                workspace = Workspace.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid workspace record: {e}")
                continue
            self._workspaces[workspace.id] = workspace
        logger.info(f"Loaded {len(self._workspaces)} workspaces from {path}")

    def _save(self) -> None:
        path = self.store_path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            with open(tmp_path, "w") as f:
                json.dump({"workspaces": [w.to_dict() for w in self._workspaces.values()]}, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to save workspaces to {path}: {e}")

    def create(self, name: str, path: str) -> Workspace:
        """Register a workspace. The path must be an existing directory."""
        if not name or not path:
            raise ValueError("name and path are required")
        resolved = os.path.abspath(os.path.expanduser(path))
        if not os.path.isdir(resolved):
            raise ValueError(f"Path does not exist: {path}")

        workspace = Workspace(id=generate_workspace_id(), name=name, path=resolved)
        self._workspaces[workspace.id] = workspace
        self._save()
        logger.info(f"Created workspace {workspace.id} ({name}) at {resolved}")
        return workspace

    def get(self, workspace_id: str, touch: bool = False) -> Optional[Workspace]:
        workspace = self._workspaces.get(workspace_id)
        if workspace is not None and touch:
            workspace.last_accessed = time.time()
            self._save()
        return workspace

    def list(self) -> List[Workspace]:
        return sorted(self._workspaces.values(), key=lambda w: w.last_accessed, reverse=True)

    def delete(self, workspace_id: str) -> bool:
        if self._workspaces.pop(workspace_id, None) is None:
            return False
        self._save()
        logger.info(f"Deleted workspace {workspace_id}")
        return True
