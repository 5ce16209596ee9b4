# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for the tether command line."""

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from tether.cli import cli
from tether.deployer import RemoteAgentRecord
from tether.errors import InstallError, RemoteRuntimeError


@pytest.fixture
def runner():
    return CliRunner()


class TestHelp:
    @pytest.mark.parametrize("command", ["agent", "deploy", "stop-agent"])
    def test_command_listed(self, runner, command):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert command in result.output

    def test_deploy_requires_user(self, runner):
        result = runner.invoke(cli, ["deploy", "build.example.test"])
        assert result.exit_code == 2
        assert "--user" in result.output


class TestAgentCommand:
    def test_overrides_are_applied(self, runner):
        with patch("tether.agent.server.serve", new=AsyncMock()) as serve:
            result = runner.invoke(
                cli, ["agent", "--port", "9100", "--idle-timeout", "2", "--no-idle-shutdown"]
            )

        assert result.exit_code == 0, result.output
        settings = serve.await_args.args[0]
        assert settings.port == 9100
        assert settings.idle_timeout_minutes == 2
        assert settings.shutdown_on_idle is False


class TestDeployCommand:
    def test_success_prints_record(self, runner):
        record = RemoteAgentRecord(installed=True, healthy=True, runtime_version="3.11.4")
        with patch("tether.cli._with_connection", new=AsyncMock(return_value=record)) as run:
            result = runner.invoke(cli, ["deploy", "build.example.test", "-u", "ci", "-p", "2222"])

        assert result.exit_code == 0, result.output
        assert "3.11.4" in result.output
        config = run.await_args.args[0]
        assert config.describe() == "ci@build.example.test:2222"

    def test_runtime_error_exits_with_panel(self, runner):
        error = RemoteRuntimeError("python3 3.6.9 is older than required 3.9")
        with patch("tether.cli._with_connection", new=AsyncMock(side_effect=error)):
            result = runner.invoke(cli, ["deploy", "build.example.test", "-u", "ci"])

        assert result.exit_code == 1
        assert "3.6.9" in result.output
        assert "remote_runtime" in result.output

    def test_install_error_shows_step(self, runner):
        error = InstallError("dependencies", "exit 1: no network")
        with patch("tether.cli._with_connection", new=AsyncMock(side_effect=error)):
            result = runner.invoke(cli, ["deploy", "build.example.test", "-u", "ci"])

        assert result.exit_code == 1
        assert "step: dependencies" in result.output


class TestStopAgentCommand:
    def test_reports_when_nothing_running(self, runner):
        with patch("tether.cli._with_connection", new=AsyncMock(return_value=False)):
            result = runner.invoke(cli, ["stop-agent", "build.example.test", "-u", "ci"])

        assert result.exit_code == 0
        assert "No agent was running" in result.output
