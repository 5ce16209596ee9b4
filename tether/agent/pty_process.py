# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""PTY-backed child process driven from the asyncio event loop.

The master side of the pty is non-blocking and watched with
``loop.add_reader``; output is decoded incrementally as UTF-8 and handed to
``on_output`` in the order the kernel delivers it. ``on_exit`` fires once,
after the process has been reaped and remaining output drained.
"""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
DRAIN_TIMEOUT = 1.0  # seconds to wait for trailing output after exit
TERMINATE_TIMEOUT = 2.0


def set_winsize(fd: int, rows: int, cols: int) -> None:
    winsize = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """One child process attached to its own pseudo-terminal."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        on_output: Callable[[str], None],
        on_exit: Callable[[Optional[int], Optional[int]], None],
    ):
        self._process = process
        self._master_fd: Optional[int] = master_fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_event_loop()
        self._eof = asyncio.Event()
        self._pending = bytearray()
        self._writer_registered = False
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[int] = None
        self.exited = asyncio.Event()

        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        self._exit_task = asyncio.ensure_future(self._watch_exit())

    @classmethod
    async def spawn(
        cls,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cols: int,
        rows: int,
        on_output: Callable[[str], None],
        on_exit: Callable[[Optional[int], Optional[int]], None],
    ) -> "PtyProcess":
        master_fd, slave_fd = pty.openpty()
        try:
            # Geometry is set before exec so the first prompt renders at the right size
            set_winsize(slave_fd, rows, cols)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        logger.debug(f"Spawned {argv} pid={process.pid} in {cwd} ({cols}x{rows})")
        return cls(process, master_fd, on_output, on_exit)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def running(self) -> bool:
        return not self.exited.is_set()

    # Output

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave fd is closed
            data = b""

        if not data:
            self._stop_reading()
            self._eof.set()
            return

        text = self._decoder.decode(data)
        if text:
            self._emit_output(text)

    def _emit_output(self, text: str) -> None:
        try:
            self._on_output(text)
        except Exception as e:
            logger.error(f"PTY output handler error (pid {self.pid}): {e}")

    def _stop_reading(self) -> None:
        if self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)
            if self._writer_registered:
                self._loop.remove_writer(self._master_fd)
                self._writer_registered = False

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        try:
            await asyncio.wait_for(self._eof.wait(), DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            # Orphaned background jobs may still hold the slave open
            logger.debug(f"pid {self.pid}: output not drained before exit")

        self._stop_reading()
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._emit_output(tail)
        self._close_master()

        if returncode < 0:
            self.exit_signal = -returncode
            self.exit_code = 128 + self.exit_signal
        else:
            self.exit_code = returncode
        self.exited.set()
        logger.debug(f"pid {self.pid} exited code={self.exit_code} signal={self.exit_signal}")

        try:
            self._on_exit(self.exit_code, self.exit_signal)
        except Exception as e:
            logger.error(f"PTY exit handler error (pid {self.pid}): {e}")

    def _close_master(self) -> None:
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    # Input

    def write(self, data: str) -> None:
        """Queue ``data`` for the process. Writes are delivered in call order."""
        if self._master_fd is None or not data:
            return
        self._pending.extend(data.encode("utf-8"))
        self._flush()

    def _flush(self) -> None:
        while self._pending and self._master_fd is not None:
            try:
                written = os.write(self._master_fd, self._pending)
            except BlockingIOError:
                break
            except OSError as e:
                logger.warning(f"PTY write failed (pid {self.pid}): {e}")
                self._pending.clear()
                break
            del self._pending[:written]

        if self._master_fd is None:
            return
        if self._pending and not self._writer_registered:
            self._loop.add_writer(self._master_fd, self._flush)
            self._writer_registered = True
        elif not self._pending and self._writer_registered:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False

    def resize(self, cols: int, rows: int) -> None:
        """Set the window size; the kernel delivers SIGWINCH to the foreground group."""
        if self._master_fd is None:
            return
        set_winsize(self._master_fd, rows, cols)

    # Lifecycle

    def send_signal(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._process.send_signal(sig)

    async def terminate(self, timeout: float = TERMINATE_TIMEOUT) -> None:
        """Hang up the session, escalating to SIGKILL if it lingers."""
        if not self.running:
            return
        self.send_signal(signal.SIGHUP)
        try:
            await asyncio.wait_for(self.exited.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"pid {self.pid} ignored SIGHUP, killing")
            self.send_signal(signal.SIGKILL)
            await self._exit_task
