"""CLI entry point for termhost."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from termhost import __version__
from termhost.config import TermhostConfig, default_log_dir
from termhost.rpc.client import RpcClient
from termhost.rpc.errors import RpcError
from termhost.singleton.errors import HostStartupError, LockContentionError

app = typer.Typer(
    name="termhost",
    help="Terminal session host: run shell commands in managed ptys over JSON-RPC.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )


def _load_config(config_file: str | None, port: int | None = None) -> TermhostConfig:
    config = TermhostConfig.load(config_file)
    if port is not None:
        config.rpc.port = port
    return config


def _connect_port(config: TermhostConfig) -> int:
    """Port of the host to talk to: the configured one, else the launched one."""
    from termhost.singleton.launcher import ensure_host

    if config.rpc.port:
        return config.rpc.port
    try:
        return asyncio.run(ensure_host(config))
    except (HostStartupError, LockContentionError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _call(config: TermhostConfig, method: str, *args: Any) -> Any:
    from termhost.singleton.launcher import connect_host

    port = _connect_port(config)

    async def _run() -> Any:
        async with RpcClient(connect_host(config), port) as client:
            return await getattr(client, method)(*args)

    try:
        return asyncio.run(_run())
    except RpcError as e:
        typer.echo(f"Error ({e.code}): {e.message}", err=True)
        raise typer.Exit(1)
    except OSError as e:
        typer.echo(f"Error: cannot reach host on port {port}: {e}", err=True)
        raise typer.Exit(1)


# Shared options
_VERBOSE = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")
_CONFIG = typer.Option(None, "--config", "-c", help="Config file path (JSON).")
_PORT = typer.Option(
    None, "--port", "-p", help="Host RPC port (default: from env/config or discovery file)."
)


@app.command()
def serve(
    port: int | None = _PORT,
    log_file: str | None = typer.Option(
        None, "--log-file", help="Also write logs to this file."
    ),
    log: bool = typer.Option(
        False, "--log", help="Also write logs under the per-user termhost-logs directory."
    ),
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """Run the terminal host in the foreground."""
    from termhost.host import run_host

    config = _load_config(config_file, port)
    if log_file:
        config.log_file = log_file
    elif log and not config.log_file:
        config.log_file = str(default_log_dir() / f"host-{os.getpid()}.log")
    setup_logging(verbose, config.log_file)

    try:
        asyncio.run(run_host(config))
    except HostStartupError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass


@app.command()
def launch(
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """Make sure a host is running and print its port."""
    setup_logging(verbose)
    config = _load_config(config_file)
    config.rpc.port = 0
    typer.echo(_connect_port(config))


@app.command(name="exec")
def exec_command(
    command: str = typer.Argument(help="Command line to run."),
    session: str | None = typer.Option(
        None, "--session", "-s", help="Run in this session if it is still live."
    ),
    port: int | None = _PORT,
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """Run a command on the host, print its output and exit with its exit code."""
    setup_logging(verbose)
    config = _load_config(config_file, port)
    result = _call(config, "execute", command, session)

    typer.echo(result.get("output", ""), nl=False)
    typer.echo(f"[{result['sessionId']}] status={result['status']}", err=True)
    exit_code = result.get("exitCode")
    raise typer.Exit(exit_code if isinstance(exit_code, int) and exit_code >= 0 else 1)


@app.command()
def output(
    session_id: str = typer.Argument(help="Session ID."),
    port: int | None = _PORT,
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """Print the current output of a session without waiting."""
    setup_logging(verbose)
    config = _load_config(config_file, port)
    result = _call(config, "output", session_id)
    typer.echo(result.get("output", ""), nl=False)
    typer.echo(f"status={result['status']} exitCode={result['exitCode']}", err=True)


@app.command()
def stop(
    session_id: str = typer.Argument(help="Session ID."),
    port: int | None = _PORT,
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """Terminate a session's shell."""
    setup_logging(verbose)
    config = _load_config(config_file, port)
    result = _call(config, "stop", session_id)
    typer.echo(f"{result['message']} (exit code {result['exitCode']})")


@app.command()
def sessions(
    port: int | None = _PORT,
    verbose: bool = _VERBOSE,
    config_file: str | None = _CONFIG,
) -> None:
    """List the host's sessions."""
    setup_logging(verbose)
    config = _load_config(config_file, port)
    rows = _call(config, "sessions")

    table = Table(title=f"termhost v{__version__} sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("PID", justify="right")
    table.add_column("Started")
    table.add_column("Command", overflow="fold")
    for row in rows:
        exit_code = row.get("exitCode")
        pid = row.get("pid")
        table.add_row(
            row["sessionId"],
            row["status"],
            "" if exit_code is None else str(exit_code),
            "" if pid is None else str(pid),
            row.get("startTime", ""),
            row.get("command", ""),
        )
    Console().print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
