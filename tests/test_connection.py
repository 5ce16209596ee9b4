# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for Connection lifecycle, reconnect policy and tunnels."""

import asyncio
from unittest.mock import AsyncMock, patch

import asyncssh
import pytest

from fakes import FakeSSH, wait_until
from tether.connection import (
    ALLOWED_TRANSITIONS,
    Connection,
    ConnectionState,
    reconnect_delay,
)
from tether.errors import (
    AuthenticationError,
    ConnectionStateError,
    ConnectTimeoutError,
    InvalidTransition,
    NetworkError,
)
from tether.models.config import ConnectionConfig, HealthConfig, ReconnectConfig

CONNECT = "tether.connection.asyncssh.connect"


def make_connection(**overrides) -> Connection:
    reconnect = overrides.pop("reconnect", ReconnectConfig(base=0.001, cap=0.001))
    health = overrides.pop("health", HealthConfig(interval=3600, timeout=1))
    config = ConnectionConfig(host="example.test", username="dev", password="secret", **overrides)
    return Connection(config, "ssh-test", reconnect=reconnect, health=health)


def record_states(connection: Connection):
    states = []
    connection.add_listener(
        lambda event: states.append(event.state) if event.kind == "state_changed" else None
    )
    return states


class TestReconnectDelay:
    def test_exponential_with_cap(self):
        delays = [reconnect_delay(attempt, 1.0, 30.0) for attempt in range(7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_custom_base(self):
        assert reconnect_delay(0, 0.5, 10) == 0.5
        assert reconnect_delay(3, 0.5, 10) == 4.0


class TestTransitions:
    def test_disconnected_only_goes_to_connecting(self):
        assert ALLOWED_TRANSITIONS[ConnectionState.DISCONNECTED] == {ConnectionState.CONNECTING}

    def test_error_can_retry_or_disconnect(self):
        assert ALLOWED_TRANSITIONS[ConnectionState.ERROR] == {
            ConnectionState.CONNECTING,
            ConnectionState.DISCONNECTED,
        }

    def test_illegal_transition_raises(self):
        connection = make_connection()
        with pytest.raises(InvalidTransition):
            connection._set_state(ConnectionState.CONNECTED)
        assert connection.state == ConnectionState.DISCONNECTED


class TestConnect:
    def test_connect_and_disconnect(self):
        async def scenario():
            ssh = FakeSSH()
            connection = make_connection()
            states = record_states(connection)
            with patch(CONNECT, new=AsyncMock(return_value=ssh)) as connect:
                await connection.connect()
                assert connection.is_connected
                assert connection.ssh is ssh
                options = connect.call_args.kwargs
                assert options["host"] == "example.test"
                assert options["password"] == "secret"
                assert options["known_hosts"] is None
                await connection.disconnect()
            return connection, states, ssh

        connection, states, ssh = asyncio.run(scenario())
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        assert connection.ssh is None
        assert ssh.close_calls == 1

    def test_connect_when_connected_is_noop(self):
        async def scenario():
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(return_value=FakeSSH())) as connect:
                await connection.connect()
                await connection.connect()
                assert connect.await_count == 1
                await connection.disconnect()

        asyncio.run(scenario())

    def test_auth_failure_enters_error(self):
        async def scenario():
            connection = make_connection()
            denied = asyncssh.PermissionDenied("bad password")
            with patch(CONNECT, new=AsyncMock(side_effect=denied)):
                with pytest.raises(AuthenticationError):
                    await connection.connect()
            return connection

        connection = asyncio.run(scenario())
        assert connection.state == ConnectionState.ERROR
        assert connection.last_error_reason == "auth_failed"

    def test_network_failure_enters_error(self):
        async def scenario():
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(side_effect=OSError("No route to host"))):
                with pytest.raises(NetworkError) as exc_info:
                    await connection.connect()
            return connection, exc_info.value

        connection, error = asyncio.run(scenario())
        assert connection.state == ConnectionState.ERROR
        assert error.retryable
        assert "No route to host" in connection.last_error

    def test_timeout_enters_error(self):
        async def hang(**kwargs):
            await asyncio.Event().wait()

        async def scenario():
            connection = make_connection(connect_timeout=0.05)
            with patch(CONNECT, new=hang):
                with pytest.raises(ConnectTimeoutError):
                    await connection.connect()
            return connection

        connection = asyncio.run(scenario())
        assert connection.state == ConnectionState.ERROR
        assert connection.last_error_reason == "timeout"

    def test_retry_from_error(self):
        async def scenario():
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(side_effect=[OSError("reset"), FakeSSH()])):
                with pytest.raises(NetworkError):
                    await connection.connect()
                await connection.connect()
                state = connection.state
                await connection.disconnect()
            return state

        assert asyncio.run(scenario()) == ConnectionState.CONNECTED

    def test_disconnect_while_connecting(self):
        async def hang(**kwargs):
            await asyncio.Event().wait()

        async def scenario():
            connection = make_connection()
            with patch(CONNECT, new=hang):
                pending = asyncio.ensure_future(connection.connect())
                await wait_until(lambda: connection.state == ConnectionState.CONNECTING)
                await asyncio.sleep(0)
                await connection.disconnect()
                with pytest.raises(ConnectionStateError):
                    await pending
            return connection

        connection = asyncio.run(scenario())
        assert connection.state == ConnectionState.DISCONNECTED

    def test_disconnect_is_idempotent(self):
        async def scenario():
            connection = make_connection()
            states = record_states(connection)
            await connection.disconnect()
            await connection.disconnect()
            return connection, states

        connection, states = asyncio.run(scenario())
        assert connection.state == ConnectionState.DISCONNECTED
        assert states == []

    def test_private_key_preferred_over_password(self):
        connection = make_connection(private_key="/nonexistent/key")
        with patch("tether.connection.asyncssh.read_private_key", return_value="KEY") as read:
            options = connection._connect_options()
        read.assert_called_once_with("/nonexistent/key", None)
        assert options["client_keys"] == ["KEY"]
        assert options["preferred_auth"] == "publickey"
        assert "password" not in options

    def test_unreadable_key_is_auth_error(self):
        connection = make_connection(private_key="/nonexistent/key")
        with pytest.raises(AuthenticationError):
            connection._connect_options()


class TestReconnect:
    def test_transport_drop_reconnects(self):
        async def scenario():
            first, second = FakeSSH(), FakeSSH()
            connection = make_connection()
            events = []
            connection.add_listener(events.append)
            with patch(CONNECT, new=AsyncMock(side_effect=[first, second])):
                await connection.connect()
                first.drop()
                await wait_until(lambda: connection.ssh is second)
            state = connection.state
            await connection.disconnect()
            return connection, state, events

        connection, state, events = asyncio.run(scenario())
        assert state == ConnectionState.CONNECTED
        kinds = [e.kind for e in events]
        assert "reconnect_scheduled" in kinds
        states = [e.state for e in events if e.kind == "state_changed"]
        assert states[:4] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]

    def test_failed_attempts_increment_then_reset(self):
        async def scenario():
            first, second = FakeSSH(), FakeSSH()
            connection = make_connection()
            scheduled = []
            connection.add_listener(
                lambda e: scheduled.append(e.attempt) if e.kind == "reconnect_scheduled" else None
            )
            side_effect = [first, OSError("refused"), OSError("refused"), second]
            with patch(CONNECT, new=AsyncMock(side_effect=side_effect)):
                await connection.connect()
                first.drop()
                await wait_until(lambda: connection.ssh is second)
            attempt = connection.attempt
            await connection.disconnect()
            return scheduled, attempt

        scheduled, attempt = asyncio.run(scenario())
        assert scheduled == [0, 1, 2]
        assert attempt == 0

    def test_gives_up_after_max_attempts(self):
        async def scenario():
            first = FakeSSH()
            connection = make_connection(
                reconnect=ReconnectConfig(base=0.001, cap=0.001, max_attempts=2)
            )
            side_effect = [first, OSError("refused"), OSError("refused")]
            with patch(CONNECT, new=AsyncMock(side_effect=side_effect)):
                await connection.connect()
                first.drop()
                await wait_until(lambda: connection.state == ConnectionState.ERROR)
            return connection

        connection = asyncio.run(scenario())
        assert connection.attempt == 2
        assert connection.last_error_reason == "network"

    def test_auth_failure_stops_reconnect(self):
        async def scenario():
            first = FakeSSH()
            connection = make_connection()
            side_effect = [first, asyncssh.PermissionDenied("key revoked")]
            with patch(CONNECT, new=AsyncMock(side_effect=side_effect)) as connect:
                await connection.connect()
                first.drop()
                await wait_until(lambda: connection.state == ConnectionState.ERROR)
                calls = connect.await_count
            return connection, calls

        connection, calls = asyncio.run(scenario())
        assert calls == 2
        assert connection.last_error_reason == "auth_failed"

    def test_failed_probe_triggers_reconnect(self):
        async def scenario():
            first = FakeSSH(run_error=OSError("broken pipe"))
            second = FakeSSH()
            connection = make_connection(health=HealthConfig(interval=0.01, timeout=0.5))
            with patch(CONNECT, new=AsyncMock(side_effect=[first, second])):
                await connection.connect()
                await wait_until(lambda: connection.ssh is second)
            await connection.disconnect()
            return first

        first = asyncio.run(scenario())
        assert first.commands[0] == "true"
        assert first.close_calls >= 1


class TestCommands:
    def test_run_requires_connected(self):
        connection = make_connection()
        with pytest.raises(ConnectionStateError):
            asyncio.run(connection.run("uptime"))

    def test_run_returns_result(self):
        async def scenario():
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(return_value=FakeSSH())):
                await connection.connect()
                result = await connection.run("uptime")
                await connection.disconnect()
            return result

        result = asyncio.run(scenario())
        assert result.ok
        assert result.stdout == ""


class TestTunnel:
    def test_tunnel_requires_connected(self):
        connection = make_connection()
        with pytest.raises(ConnectionStateError):
            asyncio.run(connection.create_tunnel(0, "127.0.0.1", 7777))

    def test_tunnel_forwards_and_closes_cleanly(self):
        async def echo(reader, writer):
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
            writer.close()

        async def scenario():
            remote = await asyncio.start_server(echo, "127.0.0.1", 0)
            remote_port = remote.sockets[0].getsockname()[1]
            ssh = FakeSSH(open_connection=lambda host, port: asyncio.open_connection(host, port))
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(return_value=ssh)):
                await connection.connect()

            tunnel = await connection.create_tunnel(0, "127.0.0.1", remote_port)
            assert tunnel.local_port != 0
            assert tunnel.is_listening

            reader, writer = await asyncio.open_connection("127.0.0.1", tunnel.local_port)
            writer.write(b"ping")
            await writer.drain()
            reply = await asyncio.wait_for(reader.readexactly(4), 2)
            await wait_until(lambda: tunnel.active_streams == 1)

            await connection.disconnect()
            writer.close()
            remote.close()
            return reply, tunnel, connection

        reply, tunnel, connection = asyncio.run(scenario())
        assert reply == b"ping"
        assert not tunnel.is_listening
        assert tunnel.active_streams == 0
        assert connection.tunnels == []

    def test_same_fixed_port_tunnel_is_reused(self):
        async def scenario():
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(return_value=FakeSSH())):
                await connection.connect()
            first = await connection.create_tunnel(0, "127.0.0.1", 7777)
            again = await connection.create_tunnel(first.local_port, "127.0.0.1", 7777)
            count = len(connection.tunnels)
            await connection.disconnect()
            return first, again, count

        first, again, count = asyncio.run(scenario())
        assert again is first
        assert count == 1

    def test_tunnel_listener_survives_reconnect(self):
        async def echo(reader, writer):
            data = await reader.read(1024)
            writer.write(data)
            await writer.drain()
            writer.close()

        async def scenario():
            remote = await asyncio.start_server(echo, "127.0.0.1", 0)
            remote_port = remote.sockets[0].getsockname()[1]
            opened = []

            def opener(name):
                def open_connection(host, port):
                    opened.append(name)
                    return asyncio.open_connection(host, port)

                return open_connection

            first = FakeSSH(open_connection=opener("first"))
            second = FakeSSH(open_connection=opener("second"))
            connection = make_connection()
            with patch(CONNECT, new=AsyncMock(side_effect=[first, second])):
                await connection.connect()
                tunnel = await connection.create_tunnel(0, "127.0.0.1", remote_port)
                first.drop()
                await wait_until(lambda: connection.ssh is second)

            still_listening = tunnel.is_listening
            tunnels = list(connection.tunnels)
            reader, writer = await asyncio.open_connection("127.0.0.1", tunnel.local_port)
            writer.write(b"after")
            await writer.drain()
            reply = await asyncio.wait_for(reader.readexactly(5), 2)

            writer.close()
            await connection.disconnect()
            remote.close()
            return tunnel, still_listening, tunnels, reply, opened

        tunnel, still_listening, tunnels, reply, opened = asyncio.run(scenario())
        assert still_listening
        assert tunnels == [tunnel]
        assert reply == b"after"
        assert opened == ["second"]
