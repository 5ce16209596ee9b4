"""Tests for the agent idle monitor."""

import asyncio
from unittest.mock import Mock

from tether.agent.idle import IdleMonitor


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_idle_after_timeout():
    clock = FakeClock()
    monitor = IdleMonitor(60, Mock(), clock=clock)

    clock.now += 59
    assert not monitor.check()
    clock.now += 1
    assert monitor.check()


def test_activity_resets_window():
    clock = FakeClock()
    monitor = IdleMonitor(60, Mock(), clock=clock)

    clock.now += 50
    monitor.record_activity()
    clock.now += 50
    assert not monitor.check()
    assert monitor.idle_for() == 50


def test_open_connection_keeps_agent_alive():
    clock = FakeClock()
    monitor = IdleMonitor(60, Mock(), clock=clock)
    monitor.connection_opened()

    clock.now += 3600
    assert not monitor.check()

    monitor.connection_closed()
    clock.now += 61
    assert monitor.check()


def test_connection_count_never_negative():
    monitor = IdleMonitor(60, Mock())
    monitor.connection_closed()
    assert monitor.active_connections == 0


def test_disabled_never_idles():
    clock = FakeClock()
    monitor = IdleMonitor(60, Mock(), enabled=False, clock=clock)
    clock.now += 10_000
    assert not monitor.check()


def test_run_calls_on_idle_once():
    on_idle = Mock()
    monitor = IdleMonitor(0, on_idle, check_interval=0.001)

    asyncio.run(asyncio.wait_for(monitor.run(), 1))

    on_idle.assert_called_once_with()


def test_stop_cancels_pending_run():
    on_idle = Mock()

    async def scenario():
        monitor = IdleMonitor(3600, on_idle, check_interval=0.001)
        monitor.start()
        await asyncio.sleep(0.01)
        await monitor.stop()
        return monitor

    monitor = asyncio.run(scenario())
    on_idle.assert_not_called()
    assert monitor._task is None
