# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""WebSocket relay for callers that cannot open sockets themselves.

The proxy opens the real connection on the caller's behalf and relays:
open -> on_open, inbound message -> on_message, send -> write, close ->
close with on_close(code, reason). Each open gets its own connection and
payloads are passed through untouched.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

OPEN_TIMEOUT = 10.0
ABNORMAL_CLOSE = 1006


async def _call_handler(handler: Optional[Callable], *args) -> Any:
    """Call a handler, handling both sync and async handlers."""
    if handler is None:
        return None
    if inspect.iscoroutinefunction(handler):
        return await handler(*args)
    result = handler(*args)
    if inspect.isawaitable(result):
        return await result
    return result


@dataclass
class ProxyChannel:
    key: str
    url: str
    ws: Any
    on_message: Callable
    on_close: Callable
    on_error: Optional[Callable] = None
    pump_task: Optional[asyncio.Task] = None


class TransportProxy:
    """Keyed set of relayed WebSocket connections."""

    def __init__(self, connect: Optional[Callable] = None, open_timeout: float = OPEN_TIMEOUT):
        self._connect = connect or websockets.connect
        self.open_timeout = open_timeout
        self._channels: Dict[str, ProxyChannel] = {}

    def is_open(self, key: str) -> bool:
        return key in self._channels

    def keys(self):
        return list(self._channels)

    async def open(
        self,
        key: str,
        url: str,
        on_message: Callable[[Any], Any],
        on_close: Callable[[Optional[int], str], Any],
        on_open: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[str], Any]] = None,
    ) -> bool:
        """Open a new connection for ``key``. An existing one for the key is closed first."""
        if key in self._channels:
            logger.debug(f"Proxy [{key}]: replacing existing connection")
            await self.close(key)

        try:
            ws = await asyncio.wait_for(self._connect(url), self.open_timeout)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            message = str(e) or type(e).__name__
            logger.warning(f"Proxy [{key}]: failed to connect to {url}: {message}")
            await _call_handler(on_error, message)
            await _call_handler(on_close, ABNORMAL_CLOSE, message)
            return False

        channel = ProxyChannel(key, url, ws, on_message, on_close, on_error)
        self._channels[key] = channel
        logger.info(f"Proxy [{key}]: connected to {url}")
        await _call_handler(on_open)
        channel.pump_task = asyncio.ensure_future(self._pump(channel))
        return True

    async def _pump(self, channel: ProxyChannel) -> None:
        try:
            async for message in channel.ws:
                try:
                    await _call_handler(channel.on_message, message)
                except Exception as e:
                    logger.error(f"Proxy [{channel.key}]: message handler error: {e}")
        except ConnectionClosed:
            pass
        except (OSError, WebSocketException) as e:
            logger.warning(f"Proxy [{channel.key}]: connection error: {e}")
            await _call_handler(channel.on_error, str(e))
        finally:
            if self._channels.get(channel.key) is channel:
                del self._channels[channel.key]
            code = getattr(channel.ws, "close_code", None)
            reason = getattr(channel.ws, "close_reason", None) or ""
            logger.info(f"Proxy [{channel.key}]: closed code={code} reason={reason!r}")
            try:
                await _call_handler(channel.on_close, code, reason)
            except Exception as e:
                logger.error(f"Proxy [{channel.key}]: close handler error: {e}")

    async def send(self, key: str, payload: Any) -> bool:
        """Write ``payload`` to the connection for ``key`` as-is."""
        channel = self._channels.get(key)
        if channel is None:
            logger.debug(f"Proxy [{key}]: send on unknown connection")
            return False
        try:
            await channel.ws.send(payload)
            return True
        except ConnectionClosed as e:
            logger.debug(f"Proxy [{key}]: send after close: {e}")
            return False

    async def close(self, key: str, code: int = 1000, reason: str = "") -> bool:
        channel = self._channels.pop(key, None)
        if channel is None:
            return False
        try:
            await channel.ws.close(code, reason)
        except (OSError, WebSocketException) as e:
            logger.debug(f"Proxy [{key}]: error while closing: {e}")
        if channel.pump_task is not None:
            await asyncio.gather(channel.pump_task, return_exceptions=True)
        return True

    async def close_all(self) -> None:
        for key in list(self._channels):
            await self.close(key)
