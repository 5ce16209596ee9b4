# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Centralized path definitions for tether.

This module provides a single source of truth for all paths used throughout
the tether codebase. Paths are organized by context:

- HostPaths: Paths on the local machine (where the client and CLI run)
- RemotePaths: Paths on the remote host where the agent is installed
- AgentDefaults: Defaults shared by the deployer and the agent itself

Usage:
    from tether.paths import HostPaths, RemotePaths, AgentDefaults

    config_file = HostPaths.config_file()
    launcher = RemotePaths.launcher(install_dir)
    port = AgentDefaults.PORT
"""

import os
from pathlib import Path


class HostPaths:
    """Paths on the local machine where the tether client runs."""

    @staticmethod
    def config_dir() -> Path:
        """~/.config/tether/"""
        return Path.home() / ".config" / "tether"

    @staticmethod
    def config_file() -> Path:
        """~/.config/tether/config.yml (TETHER_CONFIG overrides)"""
        env_path = os.getenv("TETHER_CONFIG")
        if env_path:
            return Path(env_path)
        return HostPaths.config_dir() / "config.yml"

    @staticmethod
    def data_dir() -> Path:
        """~/.local/share/tether/"""
        return Path.home() / ".local" / "share" / "tether"

    @staticmethod
    def log_dir() -> Path:
        """~/.local/share/tether/logs/"""
        return HostPaths.data_dir() / "logs"

    @staticmethod
    def package_dir() -> Path:
        """Directory of the installed tether package (uploaded to remote hosts)."""
        return Path(__file__).resolve().parent


class RemotePaths:
    """Paths inside the agent install directory on the remote host.

    All helpers take the install directory as a POSIX string because they are
    interpolated into remote shell commands, never resolved locally.
    """

    LAUNCHER = "bin/tether-agent"
    LIB_DIR = "lib"
    VENV_DIR = "venv"
    REQUIREMENTS = "requirements.txt"
    LOG_FILE = "agent.log"

    @staticmethod
    def launcher(install_dir: str) -> str:
        return f"{install_dir}/{RemotePaths.LAUNCHER}"

    @staticmethod
    def lib_dir(install_dir: str) -> str:
        return f"{install_dir}/{RemotePaths.LIB_DIR}"

    @staticmethod
    def venv_python(install_dir: str) -> str:
        return f"{install_dir}/{RemotePaths.VENV_DIR}/bin/python"

    @staticmethod
    def requirements(install_dir: str) -> str:
        return f"{install_dir}/{RemotePaths.REQUIREMENTS}"

    @staticmethod
    def log_file(install_dir: str) -> str:
        return f"{install_dir}/{RemotePaths.LOG_FILE}"


class AgentDefaults:
    """Defaults shared by the deployer (local) and the agent (remote)."""

    PORT = 7777
    HOST = "127.0.0.1"
    IDLE_TIMEOUT_MINUTES = 30
    IDLE_CHECK_INTERVAL = 60.0  # seconds
    INSTALL_DIR = "~/.tether-agent"
    MIN_PYTHON = "3.9"

    # Distributions the agent needs on the remote host. uvicorn only accepts
    # WebSocket upgrades with websockets installed. asyncssh, httpx and click
    # are only imported client-side.
    REQUIREMENTS = (
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "websockets>=13.0",
        "pydantic>=2.0",
        "rich>=13.0",
        "pyyaml>=6.0",
    )

    # Directory names never uploaded with the package
    UPLOAD_EXCLUDES = frozenset({"__pycache__", ".git", ".pytest_cache", "venv", ".venv"})
    UPLOAD_EXCLUDE_SUFFIXES = (".pyc", ".pyo")

    @staticmethod
    def data_dir() -> Path:
        """Agent state directory on the remote host (TETHER_AGENT_DATA_DIR overrides)."""
        env_dir = os.getenv("TETHER_AGENT_DATA_DIR")
        if env_dir:
            return Path(env_dir)
        return Path.home() / ".tether-agent" / "data"
