"""Logging setup shared by the tether CLI and the remote agent.

Everything under the ``tether`` logger goes to a rotating log file. The CLI
additionally echoes user-facing messages through a shared Rich console; the
remote agent runs in daemon mode, where the same messages go to stderr (and
from there into ``agent.log`` via the launcher's redirect).

Environment:
    TETHER_DEBUG=1          verbose logging
    TETHER_LOG_LEVEL=LEVEL  DEBUG, INFO, WARNING or ERROR
    TETHER_LOG_FILE=/path   log file location
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

from tether.paths import HostPaths

_configured = False
_debug_mode = False
_daemon_mode = False
_log_file: Optional[Path] = None

console = Console()

SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DAEMON_FORMAT = "%(asctime)s %(name)s: %(levelname)s: %(message)s"


def _get_log_file() -> Path:
    global _log_file
    if _log_file:
        return _log_file

    env_log_file = os.environ.get("TETHER_LOG_FILE")
    if env_log_file:
        _log_file = Path(env_log_file)
    else:
        log_dir = HostPaths.log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        _log_file = log_dir / "tether.log"
    return _log_file


def is_debug_mode() -> bool:
    return _debug_mode or os.environ.get("TETHER_DEBUG", "").lower() in ("1", "true", "yes")


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> None:
    """Configure the ``tether`` logger tree. Only the first call has any effect.

    Args:
        debug: Verbose logging
        daemon: Remote agent mode (stderr handler, no Rich output)
        log_level: Overrides TETHER_LOG_LEVEL
        log_file: Overrides TETHER_LOG_FILE
    """
    global _configured, _debug_mode, _daemon_mode, _log_file

    if _configured:
        return

    _debug_mode = debug or is_debug_mode()
    _daemon_mode = daemon
    if log_file:
        _log_file = log_file

    level_name = (
        log_level or os.environ.get("TETHER_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO")
    ).upper()
    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger("tether")
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    try:
        file_handler = RotatingFileHandler(
            _get_log_file(),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)
    except OSError:
        # Read-only home or missing permissions: run without a log file
        pass

    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(logging.Formatter(DAEMON_FORMAT, datefmt="%H:%M:%S"))
        root_logger.addHandler(stderr_handler)

    _configured = True
    root_logger.debug(f"Logging configured: level={level_name} daemon={_daemon_mode} file={_log_file}")


class TetherLogger:
    """Logger that also reports to the user.

    Library modules log through ``logging.getLogger(__name__)``. Entry points
    use this wrapper so a message lands in the log file and on the console
    (or, in daemon mode, only in the log handlers).
    """

    def __init__(self, name: str):
        if not name.startswith("tether"):
            name = f"tether.{name}"
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def _echo(self, markup: str, console_output: bool) -> None:
        # Daemon mode already has a stderr handler on the logger tree
        if console_output and not _daemon_mode:
            self.console.print(markup)

    def info(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        self._echo(f"[blue]{message}[/blue]", console_output)

    def success(self, message: str, console_output: bool = True) -> None:
        self.logger.log(SUCCESS_LEVEL, message)
        self._echo(f"[green]✓ {message}[/green]", console_output)

    def warning(self, message: str, console_output: bool = True) -> None:
        self.logger.warning(message)
        self._echo(f"[yellow]⚠ {message}[/yellow]", console_output)

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = True,
    ) -> None:
        """Log an error, with the traceback of ``exc`` going to the log file only."""
        if exc is not None:
            message = f"{message}: {exc}"
            self.logger.error(message, exc_info=exc)
        else:
            self.logger.error(message)
        self._echo(f"[red]✗ {message}[/red]", console_output)


def get_daemon_logger(name: str) -> TetherLogger:
    """Logger for the remote agent process; switches the process to daemon mode."""
    configure_logging(daemon=True)
    return TetherLogger(name)


def tail(text: str, lines: int = 10) -> str:
    """Return the last ``lines`` lines of command output for diagnostics."""
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])
