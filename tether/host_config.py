"""Centralized host-side configuration for tether."""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from tether.models.config import AgentConfig, HealthConfig, ReconnectConfig, TetherConfigModel
from tether.paths import HostPaths

logger = logging.getLogger(__name__)


class HostConfig:
    """Manages host-side configuration from ~/.config/tether/config.yml."""

    def __init__(self, config_path=None):
        self.config_path = Path(config_path) if config_path else HostPaths.config_file()
        self._model: Optional[TetherConfigModel] = None
        self._config = self._load()

    def _load(self) -> dict:
        """Load configuration from file."""
        if not self.config_path.exists():
            self._model = TetherConfigModel()
            return self._model.model_dump()

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}

            try:
                self._model = TetherConfigModel.model_validate(raw_config)
                return self._model.model_dump()
            except ValidationError as e:
                logger.warning(f"Config validation errors: {e}")
                # Fall back to defaults merged with raw config
                self._model = None
                defaults = TetherConfigModel().model_dump()
                return self._deep_merge(defaults, raw_config)

        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {self.config_path}: {e}")
            self._model = TetherConfigModel()
            return self._model.model_dump()

    def _deep_merge(self, base: dict, override: dict) -> dict:
        """Deep merge override into base."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _section(self, name: str, model_cls):
        if self._model:
            return getattr(self._model, name)
        # Invalid file: keep the fields that still validate on their own
        try:
            return model_cls.model_validate(self._config.get(name, {}))
        except ValidationError:
            return model_cls()

    @property
    def reconnect(self) -> ReconnectConfig:
        return self._section("reconnect", ReconnectConfig)

    @property
    def health(self) -> HealthConfig:
        return self._section("health", HealthConfig)

    @property
    def agent(self) -> AgentConfig:
        return self._section("agent", AgentConfig)

    def get(self, *keys, default=None) -> Any:
        """Get nested config value.

        Example: config.get("reconnect", "cap")
        """
        if self._model:
            value = self._model
            for key in keys:
                if hasattr(value, key):
                    value = getattr(value, key)
                elif isinstance(value, dict) and key in value:
                    value = value[key]
                else:
                    return default
            if hasattr(value, "model_dump"):
                return value.model_dump()
            return value

        value = self._config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


# Singleton instance
_config: Optional[HostConfig] = None


def get_config() -> HostConfig:
    """Get the global host configuration."""
    global _config
    if _config is None:
        _config = HostConfig()
    return _config
