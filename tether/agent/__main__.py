"""Entry point for ``python -m tether.agent`` (what the remote launcher execs)."""

import asyncio
import os

from tether import __version__
from tether.agent.server import serve
from tether.agent.settings import AgentSettings
from tether.utils.logging import get_daemon_logger


def main() -> None:
    logger = get_daemon_logger("agent")
    settings = AgentSettings.from_env()
    logger.info(f"Starting tether agent {__version__} (pid {os.getpid()})")
    try:
        asyncio.run(serve(settings))
    except Exception as e:
        logger.error("Agent crashed", exc=e)
        raise


if __name__ == "__main__":
    main()
