# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""tether command line."""

import asyncio
import functools
import sys
from pathlib import Path
from typing import Callable, Optional

import click
from rich.panel import Panel
from rich.table import Table

from tether import __version__
from tether.errors import TetherError
from tether.utils.logging import TetherLogger, configure_logging, console

# Configured by the group callback, so --debug is honoured
logger = TetherLogger(__name__)


def handle_errors(func: Callable) -> Callable:
    """Print tether errors as a panel and exit 1 instead of dumping a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SystemExit:
            raise
        except click.ClickException:
            raise
        except TetherError as exc:
            logger.error(f"{func.__name__} failed", exc=exc, console_output=False)
            content = f"{exc}\n\n[dim]reason: {exc.reason}[/dim]"
            step = getattr(exc, "step", None)
            if step:
                content += f"\n[dim]step: {step}[/dim]"
            console.print(Panel(content, title="[red]Error[/red]", border_style="red"))
            sys.exit(1)

    return wrapper


def connection_options(func: Callable) -> Callable:
    """Shared options for commands that open an SSH connection."""
    options = [
        click.argument("host"),
        click.option("-p", "--port", default=22, show_default=True, help="SSH port"),
        click.option("-u", "--user", "username", required=True, help="SSH username"),
        click.option(
            "-i",
            "--identity",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="Private key file",
        ),
        click.option("--password", is_flag=True, help="Prompt for a password"),
        click.option("--known-hosts", default=None, help="known_hosts file (default: no host key check)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_config(host, port, username, identity, password, known_hosts):
    from tether.models.config import ConnectionConfig

    secret: Optional[str] = None
    if password:
        secret = click.prompt(f"Password for {username}@{host}", hide_input=True)
    return ConnectionConfig(
        host=host,
        port=port,
        username=username,
        private_key=identity.read_text() if identity else None,
        password=secret,
        known_hosts=known_hosts,
    )


async def _with_connection(config, action):
    from tether.connection_manager import ConnectionManager

    manager = ConnectionManager()
    conn_id = await manager.create(config)
    try:
        connection = await manager.connect(conn_id)
        return await action(connection)
    finally:
        await manager.shutdown()


@click.group()
@click.version_option(version=__version__, prog_name="tether")
@click.option("--debug", is_flag=True, help="Verbose logging")
def cli(debug: bool):
    """tether - remote shell sessions over SSH."""
    configure_logging(debug=debug)


@cli.command("agent")
@click.option("--port", type=int, default=None, help="Listen port (default: TETHER_AGENT_PORT or 7777)")
@click.option("--host", default=None, help="Bind address (default: 127.0.0.1)")
@click.option("--idle-timeout", type=float, default=None, help="Idle minutes before shutdown")
@click.option("--no-idle-shutdown", is_flag=True, help="Never shut down when idle")
def agent(port, host, idle_timeout, no_idle_shutdown):
    """Run the session agent in the foreground."""
    from tether.agent.server import serve
    from tether.agent.settings import AgentSettings

    settings = AgentSettings.from_env()
    overrides = {}
    if port is not None:
        overrides["port"] = port
    if host is not None:
        overrides["host"] = host
    if idle_timeout is not None:
        overrides["idle_timeout_minutes"] = idle_timeout
    if no_idle_shutdown:
        overrides["shutdown_on_idle"] = False
    settings = settings.model_copy(update=overrides)

    asyncio.run(serve(settings))


@cli.command("deploy")
@connection_options
@handle_errors
def deploy(host, port, username, identity, password, known_hosts):
    """Install (if needed) and start the agent on HOST."""
    from tether.deployer import AgentDeployer

    config = _build_config(host, port, username, identity, password, known_hosts)
    deployer = AgentDeployer()

    logger.info(f"Ensuring agent on {config.describe()}")
    record = asyncio.run(_with_connection(config, deployer.ensure_agent_running))

    table = Table(show_header=False, box=None)
    for key, value in record.to_dict().items():
        table.add_row(f"[bold]{key}[/bold]", str(value))
    console.print(table)
    logger.success(f"Agent running on {host}:{deployer.config.port}")


@cli.command("stop-agent")
@connection_options
@handle_errors
def stop_agent(host, port, username, identity, password, known_hosts):
    """Stop the agent on HOST."""
    from tether.deployer import AgentDeployer

    config = _build_config(host, port, username, identity, password, known_hosts)
    deployer = AgentDeployer()
    stopped = asyncio.run(_with_connection(config, deployer.stop_agent))
    if stopped:
        logger.success(f"Agent stopped on {host}")
    else:
        logger.warning(f"No agent was running on {host}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
