# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for agent sessions and multi-viewer fan-out."""

import asyncio
import sys

import pytest

from tether.agent.sessions import (
    TERMINAL_ENV,
    Session,
    SessionManager,
    Viewer,
    build_environment,
)


def collecting_viewer():
    received = []
    exits = []
    viewer = Viewer(on_data=received.append, on_exit=lambda code, sig: exits.append((code, sig)))
    return viewer, received, exits


def create(manager, cwd, **kwargs):
    return asyncio.run(manager.create_session(str(cwd), **kwargs))


class TestEnvironment:
    def test_terminal_env_wins(self):
        env = build_environment({"TERM": "dumb", "PROJECT": "demo"})
        assert env["TERM"] == "xterm-256color"
        assert env["PROJECT"] == "demo"
        for key, value in TERMINAL_ENV.items():
            assert env[key] == value


class TestSessionManager:
    def test_create_spawns_login_shell(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        session = create(manager, workspace_dir, workspace_id="ws_1", shell="/bin/bash", cols=120, rows=40)

        [process] = pty_factory.spawned
        assert process.argv == ["/bin/bash", "-l"]
        assert process.cwd == str(workspace_dir)
        assert (process.cols, process.rows) == (120, 40)
        assert process.env["TERM"] == "xterm-256color"
        assert session.id.startswith("term_")
        assert session.pid == process.pid
        assert manager.get(session.id) is session

    def test_missing_cwd_rejected(self, pty_factory, tmp_path):
        manager = SessionManager(pty_factory)
        with pytest.raises(ValueError):
            create(manager, tmp_path / "missing")
        assert pty_factory.spawned == []

    def test_list_filters_by_workspace(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        a = create(manager, workspace_dir, workspace_id="ws_a")
        create(manager, workspace_dir, workspace_id="ws_b")
        assert manager.count() == 2
        assert manager.list("ws_a") == [a]

    def test_exit_removes_session(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        session = create(manager, workspace_dir)
        viewer, _, exits = collecting_viewer()
        session.attach(viewer)

        pty_factory.spawned[0].finish(0, None)

        assert exits == [(0, None)]
        assert manager.get(session.id) is None
        assert session.exited

    def test_delete_terminates_and_notifies(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        session = create(manager, workspace_dir)
        viewer, _, exits = collecting_viewer()
        session.attach(viewer)

        assert asyncio.run(manager.delete(session.id))

        assert pty_factory.spawned[0].terminated
        assert exits == [(129, 1)]
        assert manager.count() == 0
        assert asyncio.run(manager.delete(session.id)) is False

    def test_delete_workspace_sessions(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        create(manager, workspace_dir, workspace_id="ws_a")
        create(manager, workspace_dir, workspace_id="ws_a")
        keep = create(manager, workspace_dir, workspace_id="ws_b")

        closed = asyncio.run(manager.delete_workspace_sessions("ws_a"))

        assert closed == 2
        assert manager.list() == [keep]


class TestViewers:
    def test_all_viewers_see_output_in_order(self, pty_factory, workspace_dir):
        session = create(SessionManager(pty_factory), workspace_dir)
        first, first_data, _ = collecting_viewer()
        second, second_data, _ = collecting_viewer()
        session.attach(first)
        session.attach(second)

        process = pty_factory.spawned[0]
        for chunk in ("a", "b", "c"):
            process.emit(chunk)

        assert first_data == ["a", "b", "c"]
        assert second_data == ["a", "b", "c"]

    def test_detach_one_viewer_keeps_the_other(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        session = create(manager, workspace_dir)
        first, first_data, _ = collecting_viewer()
        second, second_data, _ = collecting_viewer()
        session.attach(first)
        session.attach(second)

        assert session.detach(first)
        pty_factory.spawned[0].emit("after")

        assert first_data == []
        assert second_data == ["after"]
        assert session.viewer_count == 1

    def test_detaching_last_viewer_keeps_session(self, pty_factory, workspace_dir):
        manager = SessionManager(pty_factory)
        session = create(manager, workspace_dir)
        viewer, _, _ = collecting_viewer()
        session.attach(viewer)

        session.detach(viewer)

        assert manager.get(session.id) is session
        assert not pty_factory.spawned[0].terminated
        assert session.detach(viewer) is False

    def test_failing_sink_is_isolated(self, pty_factory, workspace_dir):
        session = create(SessionManager(pty_factory), workspace_dir)

        def broken(data):
            raise RuntimeError("socket gone")

        session.attach(Viewer(on_data=broken, on_exit=lambda c, s: None))
        healthy, received, _ = collecting_viewer()
        session.attach(healthy)

        pty_factory.spawned[0].emit("one")
        pty_factory.spawned[0].emit("two")

        assert received == ["one", "two"]
        assert session.viewer_count == 2

    def test_attach_after_exit_gets_exit_immediately(self, pty_factory, workspace_dir):
        session = create(SessionManager(pty_factory), workspace_dir)
        pty_factory.spawned[0].finish(1, None)

        viewer, _, exits = collecting_viewer()
        session.attach(viewer)

        assert exits == [(1, None)]
        assert session.viewer_count == 0

    def test_write_and_resize_reach_process(self, pty_factory, workspace_dir):
        session = create(SessionManager(pty_factory), workspace_dir)
        process = pty_factory.spawned[0]

        assert session.write("ls\n")
        assert session.resize(132, 50)

        assert process.written == ["ls\n"]
        assert process.sizes == [(132, 50)]
        assert (session.cols, session.rows) == (132, 50)

    def test_invalid_resize_rejected(self, pty_factory, workspace_dir):
        session = create(SessionManager(pty_factory), workspace_dir)
        with pytest.raises(ValueError):
            session.resize(0, 24)

    def test_write_after_exit_is_refused(self, pty_factory, workspace_dir):
        session = create(SessionManager(pty_factory), workspace_dir)
        pty_factory.spawned[0].finish(0, None)
        assert session.write("echo hi\n") is False

    def test_to_dict_uses_wire_names(self):
        session = Session("term_x", "ws_1", "/tmp", "/bin/sh")
        data = session.to_dict()
        assert data["workspaceId"] == "ws_1"
        assert data["lastActivity"] == data["created"]
        assert data["pid"] is None
        assert data["viewers"] == 0


@pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX pty")
class TestRealPty:
    def test_shell_round_trip(self, tmp_path):
        async def scenario():
            manager = SessionManager()
            session = await manager.create_session(str(tmp_path), shell="/bin/sh")
            output = []
            done = asyncio.Event()
            session.attach(
                Viewer(on_data=output.append, on_exit=lambda code, sig: done.set())
            )
            session.write("echo tether-$((40 + 2))\n")
            session.write("exit 3\n")
            await asyncio.wait_for(done.wait(), 10)
            return "".join(output), session

        output, session = asyncio.run(scenario())
        assert "tether-42" in output
        assert session.exit_code == 3
        assert session.exit_signal is None
