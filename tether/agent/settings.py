"""Agent settings read from TETHER_AGENT_* environment variables."""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from tether.paths import AgentDefaults

logger = logging.getLogger(__name__)

FALSE_VALUES = ("false", "0", "no", "off")


class AgentSettings(BaseModel):
    host: str = AgentDefaults.HOST
    port: int = AgentDefaults.PORT
    idle_timeout_minutes: float = AgentDefaults.IDLE_TIMEOUT_MINUTES
    shutdown_on_idle: bool = True
    idle_check_interval: float = AgentDefaults.IDLE_CHECK_INTERVAL
    data_dir: Path = Field(default_factory=AgentDefaults.data_dir)

    @property
    def idle_timeout_seconds(self) -> float:
        return self.idle_timeout_minutes * 60

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AgentSettings":
        env = os.environ if environ is None else environ
        values = {}

        port = _parse_number(env, "TETHER_AGENT_PORT", int)
        if port is not None:
            values["port"] = port
        idle = _parse_number(env, "TETHER_AGENT_IDLE_TIMEOUT", float)
        if idle is not None:
            values["idle_timeout_minutes"] = idle

        shutdown = env.get("TETHER_AGENT_SHUTDOWN_ON_IDLE")
        if shutdown is not None:
            values["shutdown_on_idle"] = shutdown.strip().lower() not in FALSE_VALUES

        if env.get("TETHER_AGENT_HOST"):
            values["host"] = env["TETHER_AGENT_HOST"]
        if env.get("TETHER_AGENT_DATA_DIR"):
            values["data_dir"] = Path(env["TETHER_AGENT_DATA_DIR"]).expanduser()

        return cls(**values)


def _parse_number(env: Mapping[str, str], name: str, kind):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return kind(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}")
        return None
