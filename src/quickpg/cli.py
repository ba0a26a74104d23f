"""Typer-powered command line interface for ``quickpg``.

Commands are thin: they resolve configuration, call into
:class:`~quickpg.lifecycle.InstanceManager` and render the result with Rich.
Failures raised by the core carry an :class:`~quickpg.errors.ErrorKind`,
which is mapped onto the exit codes in :mod:`quickpg.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import QuickPgError
from .exit_codes import ExitCode, exit_code_for
from .lifecycle import Instance, InstanceManager
from .ports import PortAllocationError, PortAllocator, generate_instance_id

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to quickpg's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)

INSTANCE_ID_OPTION = typer.Option(
    None,
    "--id",
    help="Instance id to use (a random 12 character id when omitted).",
)

PORT_OPTION = typer.Option(
    None,
    "--port",
    min=1,
    max=65535,
    help="Port to listen on (a free port is picked when omitted).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Ephemeral PostgreSQL instance manager.

        Creates, starts, stops, forks and destroys disposable PostgreSQL
        servers that live under a single data root.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    manager: InstanceManager
    ports: PortAllocator


def _command_error(message: str, *, rc: int, payload: dict[str, object] | None = None) -> NoReturn:
    """Report an error and terminate the command."""
    if payload is not None:
        console.print_json(data={"error": payload})
    else:
        console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=rc)


@contextmanager
def _handle_errors(*, json_output: bool = False) -> Iterator[None]:
    try:
        yield
    except QuickPgError as exc:
        _command_error(
            str(exc),
            rc=int(exit_code_for(exc.kind)),
            payload=exc.to_dict() if json_output else None,
        )
    except PortAllocationError as exc:
        _command_error(
            str(exc),
            rc=int(ExitCode.ENVIRONMENT),
            payload={"kind": "port_allocation", "message": str(exc)} if json_output else None,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        ports = PortAllocator(base_port=config.ports.base)
    except (ConfigError, PortAllocationError) as exc:
        _command_error(f"Configuration error: {exc}", rc=int(ExitCode.VALIDATION))
    runtime = RuntimeContext(
        config=config,
        manager=InstanceManager.from_config(config),
        ports=ports,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the quickpg version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.manager.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"quickpg {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _render_instance(instance: Instance, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=instance.to_dict())
        return

    table = Table(show_header=False)
    table.add_row("Id", instance.id)
    table.add_row("State", _format_state(instance))
    if instance.pid is not None:
        table.add_row("PID", str(instance.pid))
    table.add_row("Database", instance.dbname)
    table.add_row("Port", str(instance.port))
    table.add_row("User", instance.user)
    table.add_row("Host", instance.host)
    table.add_row("Data Directory", str(instance.data_directory))
    table.add_row("Log File", str(instance.log_file))
    console.print(table)


def _format_state(instance: Instance) -> str:
    if instance.is_running:
        return "[green]running[/green]"
    return "[yellow]stopped[/yellow]"


def _pick_port(runtime: RuntimeContext, port: int | None) -> int:
    if port is not None:
        return port
    return runtime.ports.pick(runtime.manager.reserved_ports())


instances_app = typer.Typer(help="Create, fork and manage PostgreSQL instances.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.manager.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ID_OPTION,
    dbname: str = typer.Option(
        "postgres",
        "--dbname",
        help="Logical database to create inside the new server.",
    ),
    port: int | None = PORT_OPTION,
    crash_unsafe: bool = typer.Option(
        False,
        "--crash-unsafe",
        help="Trade durability for speed (fsync off). Disposable data only.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Initialise and start a fresh instance."""
    runtime = _get_runtime(ctx)
    with _handle_errors(json_output=json_output):
        resolved_id = instance_id or generate_instance_id()
        conf = runtime.config.server
        if crash_unsafe:
            conf = conf.with_crash_unsafe()
        instance = runtime.manager.init(
            resolved_id,
            dbname,
            _pick_port(runtime, port),
            conf,
        )
    if not json_output:
        console.print(f"[green]Instance '{instance.id}' created.[/green]")
    _render_instance(instance, json_output=json_output)


@instances_app.command("fork")
def instance_fork(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="Stopped instance to clone."),
    instance_id: str | None = INSTANCE_ID_OPTION,
    dbname: str | None = typer.Option(
        None,
        "--dbname",
        help="Database name for the fork (defaults to the template's).",
    ),
    port: int | None = PORT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Clone a stopped template into a new running instance."""
    runtime = _get_runtime(ctx)
    with _handle_errors(json_output=json_output):
        resolved_id = instance_id or generate_instance_id()
        instance = runtime.manager.fork(
            template,
            resolved_id,
            _pick_port(runtime, port),
            dbname=dbname,
        )
    if not json_output:
        console.print(f"[green]Instance '{instance.id}' forked from '{template}'.[/green]")
    _render_instance(instance, json_output=json_output)


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to start."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Start a stopped instance."""
    runtime = _get_runtime(ctx)
    with _handle_errors(json_output=json_output):
        instance = runtime.manager.start(instance_id)
    if not json_output:
        console.print(f"[green]Instance '{instance_id}' started.[/green]")
    _render_instance(instance, json_output=json_output)


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to stop."),
    no_wait: bool = typer.Option(
        False,
        "--no-wait",
        help="Signal the server and return without waiting for shutdown.",
    ),
) -> None:
    """Stop a running instance."""
    runtime = _get_runtime(ctx)
    with _handle_errors():
        runtime.manager.stop(instance_id, wait=not no_wait)
    console.print(f"[green]Instance '{instance_id}' stopped.[/green]")


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the state of one instance."""
    runtime = _get_runtime(ctx)
    with _handle_errors(json_output=json_output):
        instance = runtime.manager.status(instance_id)
    _render_instance(instance, json_output=json_output)


@instances_app.command("destroy")
def instance_destroy(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to remove."),
) -> None:
    """Stop and remove an instance together with its log."""
    runtime = _get_runtime(ctx)
    with _handle_errors():
        runtime.manager.destroy(instance_id)
    console.print(f"[green]Instance '{instance_id}' destroyed.[/green]")


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List instances under the data root."""
    runtime = _get_runtime(ctx)
    with _handle_errors(json_output=json_output):
        instances = runtime.manager.list()

    if json_output:
        console.print_json(data={"instances": [instance.to_dict() for instance in instances]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Id", style="bold")
    table.add_column("Database")
    table.add_column("Port")
    table.add_column("State")
    table.add_column("PID")

    if not instances:
        table.add_row("(none)", "", "", "", "")
    else:
        for instance in instances:
            table.add_row(
                instance.id,
                instance.dbname,
                str(instance.port),
                _format_state(instance),
                "" if instance.pid is None else str(instance.pid),
            )

    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
