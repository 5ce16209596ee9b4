"""Idle tracking for the agent.

Any HTTP request or stream message counts as activity, and so does an open
stream connection. When nothing has happened for the configured window the
monitor calls ``on_idle`` once and stops.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class IdleMonitor:
    def __init__(
        self,
        timeout_seconds: float,
        on_idle: Callable[[], Any],
        check_interval: float = 60.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout_seconds = timeout_seconds
        self.on_idle = on_idle
        self.check_interval = check_interval
        self.enabled = enabled
        self._clock = clock
        self.last_activity = clock()
        self.active_connections = 0
        self._task: Optional[asyncio.Task] = None

    def record_activity(self) -> None:
        self.last_activity = self._clock()

    def connection_opened(self) -> None:
        self.active_connections += 1
        self.record_activity()

    def connection_closed(self) -> None:
        self.active_connections = max(0, self.active_connections - 1)
        self.record_activity()

    def idle_for(self, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        return now - self.last_activity

    def check(self, now: Optional[float] = None) -> bool:
        """True if the idle window has elapsed."""
        if not self.enabled:
            return False
        if self.active_connections > 0:
            # Open streams keep the agent alive
            self.record_activity()
            return False
        return self.idle_for(now) >= self.timeout_seconds

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            if self.check():
                logger.info(f"Idle for {self.idle_for():.0f}s, shutting down")
                result = self.on_idle()
                if asyncio.iscoroutine(result):
                    await result
                return

    def start(self) -> None:
        if not self.enabled:
            logger.info("Idle shutdown disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
            logger.info(
                f"Idle monitor started: timeout={self.timeout_seconds:.0f}s "
                f"interval={self.check_interval:.0f}s"
            )

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
