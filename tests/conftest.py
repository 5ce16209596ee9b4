# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Pytest fixtures for tether unit tests.

Nothing here opens a real SSH session: asyncssh.connect is patched and
pty processes are replaced by FakePty unless a test opts in explicitly.
"""

import pytest

import tether.host_config as host_config
from fakes import PtyFactory


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point host config and logs at a temp dir and reset the config singleton."""
    monkeypatch.setenv("TETHER_CONFIG", str(tmp_path / "config.yml"))
    monkeypatch.setenv("TETHER_LOG_FILE", str(tmp_path / "tether.log"))
    monkeypatch.setenv("TETHER_AGENT_DATA_DIR", str(tmp_path / "agent-data"))
    monkeypatch.setattr(host_config, "_config", None)
    yield


@pytest.fixture
def pty_factory():
    return PtyFactory()


@pytest.fixture
def workspace_dir(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path
