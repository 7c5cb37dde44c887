"""Typer-powered command line interface for ``stablectl``.

Every command opens the stable, performs one operation on it and, when the
operation changes state, writes the registry back only after it succeeded.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .cnf import ConfigDocumentError
from .config import AppConfig, ConfigError, load_config
from .distribution import Distribution
from .errors import StableError, StableNotFoundError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import CommandError, CommandRunner
from .server import ServerInstance, ServerStatus
from .stable import Stable, stable_root
from .state import StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stablectl's YAML config file.",
)
ROOT_OPTION = typer.Option(
    None,
    "--root",
    file_okay=False,
    help="Directory holding the .stable tree (defaults to the configured root).",
)
LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    help="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision disposable local MySQL servers.

        A stable is a directory (.stable) holding unpacked server
        distributions and any number of server instances created from them.
        """
    ).strip(),
)
dist_app = typer.Typer(help="Install and inspect server distributions.")
server_app = typer.Typer(help="Create, control and connect to server instances.")

app.add_typer(dist_app, name="dist")
app.add_typer(server_app, name="server")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: CommandRunner


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    root: Path | None = None,
    log_level: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if root is not None:
        overrides["root"] = str(root)
    if log_level is not None:
        overrides["log_level"] = log_level

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(levelname)s %(name)s: %(message)s",
    )
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        runner=CommandRunner.from_config(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stablectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    root: Path | None = ROOT_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file, root, log_level)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stablectl {get_version()}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# Error handling -----------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, CommandError):
        return ExitCode.PROVIDER
    if isinstance(exc, (StableNotFoundError, StateRegistryError, OSError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.VALIDATION


@contextmanager
def _handle_errors(op: OperationScope, action: str) -> Iterator[None]:
    """Translate domain errors raised in the block into a failed command."""
    try:
        yield
    except (
        StableError,
        CommandError,
        StateRegistryError,
        ConfigDocumentError,
        OSError,
        ValueError,
    ) as exc:
        _command_error(op, f"{action}: {exc}", rc=_exit_code_for(exc), errors=[str(exc)])


def _open_stable(runtime: RuntimeContext, op: OperationScope) -> Stable:
    with _handle_errors(op, "Cannot open stable"):
        stable = Stable.open(runtime.config.root, runner=runtime.runner)
    op.add_step("stable.open", status="success", detail=str(stable.root))
    return stable


def _persist(stable: Stable, op: OperationScope) -> None:
    with _handle_errors(op, "Failed to write stable state"):
        stable.write_config()
    op.add_step("stable.write", status="success", detail=str(stable.registry.state_path))


def _match_servers(
    stable: Stable, patterns: Sequence[str], op: OperationScope
) -> list[ServerInstance]:
    """Resolve *patterns* to servers, dropping repeats, failing on no match."""
    with _handle_errors(op, "Invalid server pattern"):
        matches = stable.find_matching_servers(patterns)
    unique: list[ServerInstance] = []
    seen: set[str] = set()
    for server in matches:
        if server.name not in seen:
            seen.add(server.name)
            unique.append(server)
    if not unique:
        _command_error(op, f"No servers match {' '.join(patterns)}.", rc=ExitCode.VALIDATION)
    return unique


def _resolve_distribution(
    stable: Stable, fragment: str | None, op: OperationScope
) -> Distribution:
    """Pick a distribution by substring, or the only one when none is given."""
    names = sorted(stable.distributions)
    if fragment is not None:
        if fragment in stable.distributions:
            return stable.distributions[fragment]
        names = [name for name in names if fragment in name]
    if not names:
        hint = f" matching {fragment!r}" if fragment else ""
        _command_error(op, f"No distribution{hint} is installed.", rc=ExitCode.VALIDATION)
    if len(names) > 1:
        _command_error(
            op,
            f"Distribution is ambiguous, candidates: {', '.join(names)}. Use --dist.",
            rc=ExitCode.VALIDATION,
        )
    return stable.distributions[names[0]]


def _status_markup(status: ServerStatus) -> str:
    if status is ServerStatus.RUNNING:
        return "[green]running[/green]"
    return "[yellow]stopped[/yellow]"


# Stable commands ----------------------------------------------------------
@app.command("init")
def init_command(
    ctx: typer.Context,
    location: Path | None = typer.Argument(
        None,
        file_okay=False,
        help="Directory to create the stable in (defaults to the configured root).",
    ),
) -> None:
    """Create a new, empty stable."""
    runtime = _get_runtime(ctx)
    target = location or runtime.config.root
    with runtime.logger.operation(
        "init",
        args={"location": str(target)},
        target={"kind": "stable", "root": str(stable_root(target))},
    ) as op:
        with _handle_errors(op, "Cannot create stable"):
            stable = Stable.create(
                target,
                base_port=runtime.config.base_port,
                first_server_id=runtime.config.first_server_id,
                runner=runtime.runner,
            )
        op.add_step("stable.create", status="success", detail=str(stable.root))
        console.print(f"[green]Created stable at {stable.root}.[/green]")
        op.success("Stable created.", changed=1, context={"root": str(stable.root)})


@app.command("destroy")
def destroy_command(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
) -> None:
    """Remove the stable with every distribution and server in it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"yes": yes},
        target={"kind": "stable", "root": str(stable_root(runtime.config.root))},
    ) as op:
        stable = _open_stable(runtime, op)
        running = [
            name for name, server in sorted(stable.servers.items())
            if server.status() is ServerStatus.RUNNING
        ]
        if running:
            console.print(
                f"[yellow]Servers still running: {', '.join(running)}. "
                "Their processes are not stopped.[/yellow]"
            )
        if not yes and not typer.confirm(f"Remove {stable.root} and everything in it?"):
            console.print("Aborted.")
            op.warning("Destroy aborted by user.", warnings=["aborted"])
            return
        with _handle_errors(op, "Failed to remove stable"):
            stable.destroy()
        op.add_step("stable.destroy", status="success", detail=str(stable.root))
        console.print(f"[green]Removed {stable.root}.[/green]")
        op.success(
            "Stable destroyed.",
            changed=1,
            warnings=[f"running: {name}" for name in running],
        )


@app.command("info")
def info_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the stable location, counters and inventory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "info",
        args={"json": json_output},
        target={"kind": "stable", "root": str(stable_root(runtime.config.root))},
    ) as op:
        stable = _open_stable(runtime, op)
        payload = {
            "root": str(stable.root),
            "next_port": stable.next_port,
            "next_server_id": stable.next_server_id,
            "distributions": len(stable.distributions),
            "servers": len(stable.servers),
            "config_file": str(runtime.config.config_file),
            "operations_log": str(runtime.logger.operations_log_path),
        }
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in payload.items():
                table.add_row(key, str(value))
            console.print(table)
        op.success("Reported stable info.", changed=0)


# Distribution commands ----------------------------------------------------
@dist_app.command("add")
def dist_add(
    ctx: typer.Context,
    path: Path = typer.Argument(
        ...,
        exists=True,
        help="Archive (.tar.gz, .tgz, .tar, .zip) or unpacked directory.",
    ),
) -> None:
    """Install a distribution into the stable."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dist add",
        args={"path": str(path)},
        target={"kind": "distribution", "source": str(path)},
    ) as op:
        stable = _open_stable(runtime, op)
        with _handle_errors(op, f"Failed to add distribution from {path}"):
            distribution = stable.add_dist(path)
        op.add_step("distribution.install", status="success", detail=str(distribution.root))
        _persist(stable, op)
        console.print(
            f"[green]Added distribution '{distribution.name}' "
            f"(version {distribution.version}).[/green]"
        )
        op.success(
            "Distribution added.",
            changed=1,
            context={"name": distribution.name, "version": distribution.version},
        )


@dist_app.command("list")
def dist_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List installed distributions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dist list",
        args={"json": json_output},
        target={"kind": "distribution"},
    ) as op:
        stable = _open_stable(runtime, op)
        entries = [dist.to_dict() for _, dist in sorted(stable.distributions.items())]
        if json_output:
            console.print_json(data={"distributions": entries})
            op.success("Reported distributions as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Version")
        table.add_column("Server version")
        table.add_column("Default port")
        table.add_column("Path")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                entry["name"],
                entry["version"],
                entry["server_version"] or "-",
                str(entry["default_port"]),
                entry["root"],
            )
        console.print(table)
        op.success("Reported distributions.", changed=0)


@dist_app.command("remove")
def dist_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Distribution name."),
) -> None:
    """Deregister a distribution and delete the servers built from it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dist remove",
        args={"name": name},
        target={"kind": "distribution", "name": name},
    ) as op:
        stable = _open_stable(runtime, op)
        with _handle_errors(op, f"Failed to remove distribution '{name}'"):
            removed = stable.del_dist_by_name(name)
        for server_name in removed:
            op.add_step("server.remove", status="success", detail=server_name)
        _persist(stable, op)
        console.print(f"[green]Removed distribution '{name}'.[/green]")
        if removed:
            console.print(f"Removed servers: {', '.join(removed)}")
        op.success(
            "Distribution removed.",
            changed=1 + len(removed),
            context={"servers": removed},
        )


# Server commands ----------------------------------------------------------
@server_app.command("add")
def server_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server name, or name prefix with --count."),
    dist: str | None = typer.Option(
        None,
        "--dist",
        help="Distribution name or unique substring (optional with one distribution).",
    ),
    count: int = typer.Option(
        1,
        "--count",
        min=1,
        help="Create COUNT servers named NAME1..NAMECOUNT.",
    ),
) -> None:
    """Create and bootstrap one or more servers."""
    runtime = _get_runtime(ctx)
    names = [name] if count == 1 else [f"{name}{index}" for index in range(1, count + 1)]
    with runtime.logger.operation(
        "server add",
        args={"name": name, "dist": dist, "count": count},
        target={"kind": "server", "names": names},
    ) as op:
        stable = _open_stable(runtime, op)
        distribution = _resolve_distribution(stable, dist, op)
        defaults = runtime.config.server
        for server_name in names:
            with _handle_errors(op, f"Failed to add server '{server_name}'"):
                server = stable.add_server(
                    server_name,
                    distribution,
                    host=defaults.host,
                    user=defaults.user,
                    database=defaults.database,
                )
            op.add_step("server.add", status="success", detail=server_name)
            # Each server is persisted as soon as it exists on disk.
            _persist(stable, op)
            console.print(
                f"[green]Added server '{server.name}' on port {server.port} "
                f"(server id {server.server_id}).[/green]"
            )
        op.success(
            f"Added {len(names)} server(s).",
            changed=len(names),
            context={"servers": names, "distribution": distribution.name},
        )


@server_app.command("remove")
def server_remove(
    ctx: typer.Context,
    patterns: list[str] = typer.Argument(..., help="Server name globs."),
) -> None:
    """Delete matching servers and their directories."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server remove",
        args={"patterns": patterns},
        target={"kind": "server", "patterns": patterns},
    ) as op:
        stable = _open_stable(runtime, op)
        servers = _match_servers(stable, patterns, op)
        for server in servers:
            with _handle_errors(op, f"Failed to remove server '{server.name}'"):
                stable.del_server(server)
            op.add_step("server.remove", status="success", detail=server.name)
            # Persist per server so a later failure keeps earlier removals.
            _persist(stable, op)
            console.print(f"[green]Removed server '{server.name}'.[/green]")
        op.success(
            f"Removed {len(servers)} server(s).",
            changed=len(servers),
            context={"servers": [server.name for server in servers]},
        )


@server_app.command("list")
def server_list(
    ctx: typer.Context,
    patterns: list[str] | None = typer.Argument(None, help="Server name globs (default: all)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List servers with their status."""
    runtime = _get_runtime(ctx)
    selected = list(patterns or ["*"])
    with runtime.logger.operation(
        "server list",
        args={"patterns": selected, "json": json_output},
        target={"kind": "server"},
    ) as op:
        stable = _open_stable(runtime, op)
        with _handle_errors(op, "Invalid server pattern"):
            matches = stable.find_matching_servers(selected)
        servers: list[ServerInstance] = []
        for server in matches:
            if server not in servers:
                servers.append(server)

        if json_output:
            entries = [
                {**server.to_dict(), "status": server.status().value} for server in servers
            ]
            console.print_json(data={"servers": entries})
            op.success("Reported servers as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Port")
        table.add_column("Server id")
        table.add_column("Distribution")
        table.add_column("Host")
        if not servers:
            table.add_row("(none)", "", "", "", "", "")
        for server in servers:
            table.add_row(
                server.name,
                _status_markup(server.status()),
                str(server.port),
                str(server.server_id),
                server.distribution.name,
                server.host,
            )
        console.print(table)
        op.success("Reported servers.", changed=0)


@server_app.command("start")
def server_start(
    ctx: typer.Context,
    pattern: str = typer.Argument(..., help="Server name glob."),
    options: list[str] | None = typer.Argument(
        None,
        help="Extra mysqld options, passed after '--'.",
    ),
) -> None:
    """Start matching servers in the background."""
    runtime = _get_runtime(ctx)
    extra = list(options or [])
    with runtime.logger.operation(
        "server start",
        args={"pattern": pattern, "options": extra},
        target={"kind": "server", "pattern": pattern},
    ) as op:
        stable = _open_stable(runtime, op)
        failures: list[str] = []
        started: list[str] = []
        for server in _match_servers(stable, [pattern], op):
            try:
                pid = server.start(runtime.runner, extra)
            except (StableError, CommandError, OSError) as exc:
                console.print(f"[red]{server.name}: {exc}[/red]")
                op.add_step("server.start", status="error", detail=f"{server.name}: {exc}")
                failures.append(f"{server.name}: {exc}")
                continue
            op.add_step("server.start", status="success", detail=f"{server.name} pid {pid}")
            console.print(f"[green]Started '{server.name}' (pid {pid}).[/green]")
            started.append(server.name)
        if failures:
            _command_error(
                op,
                f"Failed to start {len(failures)} server(s).",
                rc=ExitCode.VALIDATION,
                errors=failures,
            )
        op.success(f"Started {len(started)} server(s).", changed=len(started))


@server_app.command("stop")
def server_stop(
    ctx: typer.Context,
    pattern: str = typer.Argument(..., help="Server name glob."),
) -> None:
    """Send SIGTERM to matching running servers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server stop",
        args={"pattern": pattern},
        target={"kind": "server", "pattern": pattern},
    ) as op:
        stable = _open_stable(runtime, op)
        failures: list[str] = []
        stopped: list[str] = []
        for server in _match_servers(stable, [pattern], op):
            try:
                pid = server.stop(runtime.runner)
            except (StableError, OSError) as exc:
                console.print(f"[red]{server.name}: {exc}[/red]")
                op.add_step("server.stop", status="error", detail=f"{server.name}: {exc}")
                failures.append(f"{server.name}: {exc}")
                continue
            op.add_step("server.stop", status="success", detail=f"{server.name} pid {pid}")
            console.print(f"[green]Stopping '{server.name}' (pid {pid}).[/green]")
            stopped.append(server.name)
        if failures:
            _command_error(
                op,
                f"Failed to stop {len(failures)} server(s).",
                rc=ExitCode.VALIDATION,
                errors=failures,
            )
        op.success(f"Signalled {len(stopped)} server(s).", changed=len(stopped))


@server_app.command("fmt")
def server_fmt(
    ctx: typer.Context,
    template: str = typer.Argument(
        ..., help="Template with {field} placeholders, e.g. '{name}:{port}'."
    ),
    patterns: list[str] | None = typer.Argument(None, help="Server name globs (default: all)."),
) -> None:
    """Print a line per server built from TEMPLATE."""
    runtime = _get_runtime(ctx)
    selected = list(patterns or ["*"])
    with runtime.logger.operation(
        "server fmt",
        args={"template": template, "patterns": selected},
        target={"kind": "server"},
    ) as op:
        stable = _open_stable(runtime, op)
        servers = _match_servers(stable, selected, op)
        with _handle_errors(op, "Cannot format servers"):
            lines = [server.format_string(template) for server in servers]
        for line in lines:
            typer.echo(line)
        op.success(f"Formatted {len(lines)} server(s).", changed=0)


@server_app.command("dsn")
def server_dsn(
    ctx: typer.Context,
    pattern: str = typer.Argument(..., help="Server name glob."),
    socket: bool = typer.Option(False, "--socket", help="Use the unix socket instead of TCP."),
    password: str = typer.Option("", "--password", help="Password to embed."),
    database: str | None = typer.Option(None, "--database", help="Database to connect to."),
) -> None:
    """Print connection strings for matching servers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server dsn",
        args={"pattern": pattern, "socket": socket, "database": database},
        target={"kind": "server", "pattern": pattern},
    ) as op:
        stable = _open_stable(runtime, op)
        servers = _match_servers(stable, [pattern], op)
        for server in servers:
            server.password = password
            server.database = database or runtime.config.server.database
            typer.echo(server.socket_dsn() if socket else server.tcp_dsn())
        op.success(f"Reported {len(servers)} connection string(s).", changed=0)


@server_app.command("client")
def server_client(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Server name."),
    options: list[str] | None = typer.Argument(None, help="Extra client options, after '--'."),
) -> None:
    """Open the distribution's command line client on a server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server client",
        args={"name": name},
        target={"kind": "server", "name": name},
    ) as op:
        stable = _open_stable(runtime, op)
        with _handle_errors(op, "Cannot run client"):
            server = stable.get_server(name)
            returncode = runtime.runner.run_foreground(server.client_command(options or []))
        op.add_step("client.run", status="success", detail=f"exit {returncode}")
        if returncode != 0:
            _command_error(op, f"Client exited with status {returncode}.", rc=ExitCode.PROVIDER)
        op.success("Client session finished.", changed=0)


@server_app.command("execute")
def server_execute(
    ctx: typer.Context,
    pattern: str = typer.Argument(..., help="Server name glob."),
    sql: list[str] = typer.Argument(..., help="SQL statement(s); words are joined by spaces."),
) -> None:
    """Run SQL on every matching server through the command line client."""
    runtime = _get_runtime(ctx)
    statement = " ".join(sql)
    with runtime.logger.operation(
        "server execute",
        args={"pattern": pattern, "sql": statement},
        target={"kind": "server", "pattern": pattern},
    ) as op:
        stable = _open_stable(runtime, op)
        failures: list[str] = []
        for server in _match_servers(stable, [pattern], op):
            console.print(f"[bold]-- {server.name}[/bold]")
            with _handle_errors(op, f"Cannot run client for '{server.name}'"):
                returncode = runtime.runner.run_foreground(
                    server.client_command(["-e", statement])
                )
            status = "success" if returncode == 0 else "error"
            op.add_step("client.execute", status=status, detail=f"{server.name} exit {returncode}")
            if returncode != 0:
                failures.append(f"{server.name}: exit {returncode}")
        if failures:
            _command_error(
                op,
                f"SQL failed on {len(failures)} server(s).",
                rc=ExitCode.PROVIDER,
                errors=failures,
            )
        op.success("SQL executed.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
