# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT

"""Pydantic models for connection and host configuration (~/.config/tether/config.yml)."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AlgorithmPreferences(BaseModel):
    """SSH algorithm preference lists. Empty means the asyncssh defaults."""

    kex: List[str] = Field(default_factory=list)
    cipher: List[str] = Field(default_factory=list)
    mac: List[str] = Field(default_factory=list)


class ConnectionConfig(BaseModel):
    """Everything needed to open one SSH session to one host.

    Credentials are opaque: ``private_key`` is the key text (or a path to it),
    ``password`` is used only when no key is supplied.
    """

    host: str
    port: int = 22
    username: str
    private_key: Optional[str] = None
    passphrase: Optional[str] = None
    password: Optional[str] = None
    connect_timeout: float = 20.0
    known_hosts: Optional[str] = None  # None disables host key checking
    algorithms: AlgorithmPreferences = Field(default_factory=AlgorithmPreferences)
    keepalive_interval: int = 15

    @field_validator("host", "username", mode="after")
    @classmethod
    def validate_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("port", mode="after")
    @classmethod
    def validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"Invalid port: {value}")
        return value

    @property
    def auth_method(self) -> str:
        """Which credential kind will be used: 'key', 'password' or 'agent'."""
        if self.private_key:
            return "key"
        if self.password:
            return "password"
        return "agent"

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


class ReconnectConfig(BaseModel):
    """Exponential reconnect policy: delay = min(base * 2^attempt, cap)."""

    base: float = 1.0
    cap: float = 30.0
    max_attempts: Optional[int] = None  # None retries forever


class HealthConfig(BaseModel):
    """SSH health probe settings."""

    interval: float = 30.0
    timeout: float = 5.0


class AgentConfig(BaseModel):
    """Remote agent deployment settings."""

    port: int = 7777
    install_dir: str = "~/.tether-agent"
    min_python: str = "3.9"
    health_retries: int = 10
    health_retry_delay: float = 1.0
    command_timeout: float = 5.0
    idle_timeout_minutes: int = 30
    shutdown_on_idle: bool = True


class TetherConfigModel(BaseModel):
    """Main host configuration model for ~/.config/tether/config.yml."""

    version: str = "1.0"

    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    model_config = ConfigDict(extra="allow")  # Allow extra fields for forward compatibility
