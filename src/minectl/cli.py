"""Typer-powered command line for ``minectl``.

Every command runs inside a :meth:`StructuredLogger.operation` scope, and
mutating commands additionally hold the instance's file lock so that the CLI
and a running ``minectl worker`` never interleave writes to the same
``server.config`` or ``server.properties``.
"""
from __future__ import annotations

import json
import sys
import textwrap
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn, TextIO

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .control import ConsoleLine, ControlPlane, Receipt
from .errors import MinectlError, NotSupportedError, ValidationError
from .exit_codes import ExitCode
from .instance import ManagedInstance
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .paths import validate_instance_name
from .storage import ConfigValue, parse_scalar

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to minectl's YAML config file.",
)

BASE_DIR_OPTION = typer.Option(
    None,
    "--base-dir",
    file_okay=False,
    help="Override the directory holding servers/, backup/ and archive/.",
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
        Game server instance lifecycle manager.

        Creates, configures, archives and restores named server instances
        under a base directory, and runs a worker loop that supervises their
        processes on behalf of a remote control plane.
        """
    ).strip(),
)

instances_app = typer.Typer(help="Create, inspect and archive server instances.")
config_app = typer.Typer(help="Inspect global configuration and edit server.config.")
properties_app = typer.Typer(help="Inspect and edit server.properties.")
eula_app = typer.Typer(help="Inspect and accept the server EULA.")

app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")
app.add_typer(properties_app, name="properties")
app.add_typer(eula_app, name="eula")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger

    def instance(self, name: str) -> ManagedInstance:
        """Return a facade for *name* under the configured base directory."""
        return ManagedInstance(
            name,
            self.config.base_dir,
            executables=self.config.executables.as_mapping(),
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    base_dir: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if base_dir is not None:
        overrides["base_dir"] = str(base_dir)
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
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
        help="Show the minectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    base_dir: Path | None = BASE_DIR_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"minectl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, base_dir, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, (ValidationError, ConfigError)):
        return ExitCode.VALIDATION
    if isinstance(exc, NotSupportedError):
        return ExitCode.UNSUPPORTED
    # StateError, ChannelError, lock timeouts
    return ExitCode.STATE


def _command_error(op: OperationScope, exc: BaseException) -> NoReturn:
    """Emit a structured error for *exc* and terminate the command."""
    rc = _exit_code_for(exc)
    message = str(exc)
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=[message], context={"rc": int(rc), "type": type(exc).__name__})
    raise typer.Exit(code=rc)


def _validated(name: str) -> str:
    try:
        return validate_instance_name(name)
    except ValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc


def _require_existing(op: OperationScope, inst: ManagedInstance) -> None:
    if not inst.exists():
        _command_error(op, ValidationError(f"server does not exist: {inst.name}"))


def _render_mapping(title: str, data: Mapping[str, object]) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    if not data:
        table.add_row("(none)", "")
    for key, value in data.items():
        if isinstance(value, dict):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = json.dumps(value) if isinstance(value, bool) else str(value)
        table.add_row(str(key), rendered)
    console.print(table)


def _coerce_cli_value(raw: str) -> ConfigValue:
    """Interpret a command-line value the way property files are read."""
    return parse_scalar(raw)


# ----------------------------------------------------------------------
# instance
# ----------------------------------------------------------------------
@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List server instances found under the base directory."""
    runtime = _get_runtime(ctx)
    plane = ControlPlane(runtime.config.base_dir, worker_name=runtime.config.worker_name)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "base_dir"},
    ) as op:
        entries: list[dict[str, object]] = []
        for name in plane.server_names():
            try:
                inst = runtime.instance(name)
            except ValidationError:
                op.add_step("instance.skip", status="warning", detail=name)
                continue
            server_type = inst.server_type
            entries.append(
                {
                    "name": name,
                    "server_type": server_type.value if server_type else None,
                    "eula": inst.eula,
                    "archives": len(inst.list_archives()),
                }
            )

        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("EULA")
        table.add_column("Archives")
        if not entries:
            table.add_row("(none)", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry["server_type"] or ""),
                "yes" if entry["eula"] else "no",
                str(entry["archives"]),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the server instance."),
    server_type: str = typer.Argument(
        "conventional_jar",
        help="conventional_jar, unconventional_jar or phar.",
    ),
) -> None:
    """Create the directories and config files of a new instance."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "instance create",
        args={"name": name, "server_type": server_type},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            inst = runtime.instance(name)
            try:
                inst.create(server_type)
            except MinectlError as exc:
                _command_error(op, exc)
            op.add_step("instance.paths", detail=str(inst.cwd))
        console.print(f"[green]Created server '{name}' ({inst.server_type.value}).[/green]")
        op.success("Instance created.", changed=1)


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to delete."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove an instance's live, backup and archive directories."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    if not yes:
        typer.confirm(f"Delete server '{name}' and all of its archives?", abort=True)
    with runtime.logger.operation(
        "instance delete",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            inst = runtime.instance(name)
            _require_existing(op, inst)
            try:
                inst.delete()
            except MinectlError as exc:
                _command_error(op, exc)
        console.print(f"[green]Deleted server '{name}'.[/green]")
        op.success("Instance deleted.", changed=1)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show paths, type and EULA state of an instance."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        inst = runtime.instance(name)
        _require_existing(op, inst)
        status = inst.status()
        if json_output:
            console.print_json(data=status)
        else:
            _render_mapping(f"Server {name}", status)
        op.success("Reported instance status.", changed=0)


@instances_app.command("start-args")
def instance_start_args(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    server_type: str | None = typer.Option(
        None,
        "--type",
        help="Build arguments for this type instead of the instance's own.",
    ),
) -> None:
    """Print the command line that would start the instance."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "instance start-args",
        args={"name": name, "server_type": server_type},
        target={"kind": "instance", "name": name},
    ) as op:
        inst = runtime.instance(name)
        try:
            argv = inst.get_start_args(server_type)
        except MinectlError as exc:
            _command_error(op, exc)
        console.print(" ".join(argv), markup=False, highlight=False, soft_wrap=True)
        op.success("Reported start arguments.", changed=0, context={"argv": argv})


@instances_app.command("archive")
def instance_archive(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to snapshot."),
) -> None:
    """Write a compressed snapshot of the live directory."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "instance archive",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            inst = runtime.instance(name)
            try:
                filename = inst.archive()
            except MinectlError as exc:
                _command_error(op, exc)
        console.print(f"[green]Archived '{name}' to {inst.awd / filename}.[/green]")
        op.success("Archive created.", changed=1, backups=[filename])


@instances_app.command("archives")
def instance_archives(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List archive snapshots of an instance, newest first."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "instance archives",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        inst = runtime.instance(name)
        archives = inst.list_archives()
        if json_output:
            console.print_json(data={"archives": archives})
        elif not archives:
            console.print(f"No archives for '{name}'.")
        else:
            for filename in archives:
                console.print(filename, markup=False, highlight=False, soft_wrap=True)
        op.success("Reported archives.", changed=0)


@instances_app.command("restore")
def instance_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to restore into."),
    archive: str = typer.Argument(..., help="Archive filename or path."),
    source: str | None = typer.Option(
        None,
        "--from",
        help="Instance whose archive directory holds ARCHIVE (default: NAME).",
    ),
) -> None:
    """Populate an unconfigured instance from an archive."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    source_name = _validated(source) if source else name
    with runtime.logger.operation(
        "instance restore",
        args={"name": name, "archive": archive, "from": source_name},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name, source_name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            origin = runtime.instance(source_name)
            target = runtime.instance(name)
            archive_path = Path(archive).expanduser()
            if not archive_path.is_absolute() and archive_path.parent == Path("."):
                archive_path = origin.awd / archive_path
            try:
                origin.restore_into(target, archive_path)
            except MinectlError as exc:
                _command_error(op, exc)
            op.add_step("archive.extract", detail=str(archive_path))
        console.print(f"[green]Restored '{name}' from {archive_path}.[/green]")
        op.success("Instance restored.", changed=1)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Show this instance's server.config instead of the global configuration.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration, or an instance's server.config."""
    runtime = _get_runtime(ctx)
    data: Mapping[str, object] = runtime.config.to_dict()
    target: dict[str, object] = {"kind": "config"}
    if name is not None:
        name = _validated(name)
        target = {"kind": "instance", "name": name}
    with runtime.logger.operation(
        "config show",
        args={"name": name, "json": json_output},
        target=target,
    ) as op:
        if name is not None:
            try:
                data = runtime.instance(name).sc
            except MinectlError as exc:
                _command_error(op, exc)
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return
        _render_mapping("server.config" if name else "Configuration", data)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    section: str = typer.Argument(..., help="server.config section, e.g. java."),
    key: str = typer.Argument(..., help="Key within the section."),
    value: str = typer.Argument(..., help="Value; true/false and integers are typed."),
) -> None:
    """Set one value in an instance's server.config."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    coerced = _coerce_cli_value(value)
    with runtime.logger.operation(
        "config set",
        args={"name": name, "section": section, "key": key, "value": coerced},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            inst = runtime.instance(name)
            _require_existing(op, inst)
            try:
                inst.modify_config(key, coerced, section)
            except MinectlError as exc:
                _command_error(op, exc)
        console.print(f"[green]{name}: {section}.{key} = {coerced!r}[/green]")
        op.success("server.config updated.", changed=1)


# ----------------------------------------------------------------------
# properties
# ----------------------------------------------------------------------
@properties_app.command("show")
def properties_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Display an instance's server.properties with defaults applied."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "properties show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            data = runtime.instance(name).sp
        except MinectlError as exc:
            _command_error(op, exc)
        if json_output:
            console.print_json(data=data)
        else:
            _render_mapping("server.properties", data)
        op.success("Rendered server.properties.", changed=0)


@properties_app.command("set")
def properties_set(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    key: str = typer.Argument(..., help="Property key, e.g. server-port."),
    value: str = typer.Argument(..., help="Value; true/false and integers are typed."),
) -> None:
    """Set one value in an instance's server.properties."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    coerced = _coerce_cli_value(value)
    with runtime.logger.operation(
        "properties set",
        args={"name": name, "key": key, "value": coerced},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            inst = runtime.instance(name)
            _require_existing(op, inst)
            try:
                inst.modify_properties(key, coerced)
            except MinectlError as exc:
                _command_error(op, exc)
        console.print(f"[green]{name}: {key} = {coerced!r}[/green]")
        op.success("server.properties updated.", changed=1)


# ----------------------------------------------------------------------
# eula
# ----------------------------------------------------------------------
@eula_app.command("show")
def eula_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
) -> None:
    """Report whether the instance's EULA has been accepted."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "eula show",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        accepted = runtime.instance(name).eula
        console.print("accepted" if accepted else "not accepted")
        op.success("Reported EULA state.", changed=0, context={"eula": accepted})


@eula_app.command("accept")
def eula_accept(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
) -> None:
    """Record acceptance of the EULA in eula.txt."""
    runtime = _get_runtime(ctx)
    name = _validated(name)
    with runtime.logger.operation(
        "eula accept",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with runtime.locks.mutate_instances([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            inst = runtime.instance(name)
            _require_existing(op, inst)
            inst.accept_eula()
        console.print(f"[green]EULA accepted for '{name}'.[/green]")
        op.success("EULA accepted.", changed=1)


# ----------------------------------------------------------------------
# worker
# ----------------------------------------------------------------------
class _JsonLineWriter:
    """Serialise JSON records onto a stream from several threads."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def write(self, record: Mapping[str, Any]) -> None:
        line = json.dumps(record, sort_keys=True, default=str)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


def _directive_record(plane: ControlPlane, directive: str) -> dict[str, Any]:
    answered, payload = plane.directive(directive)
    return {
        "type": "receipt.directive",
        "hostname": plane.hostname,
        "workername": plane.worker_name,
        "directive": answered,
        "payload": payload,
    }


def _run_worker_command(
    runtime: RuntimeContext,
    plane: ControlPlane,
    message: Mapping[str, Any],
) -> Receipt:
    payload = dict(message)
    server_name = str(payload.get("server_name") or "")
    cmd = str(payload.get("cmd") or "")
    params = {key: value for key, value in payload.items() if key not in ("server_name", "cmd")}
    with runtime.logger.operation(
        f"worker {cmd}",
        args=params,
        target={"kind": "instance", "name": server_name},
    ) as op:
        try:
            validate_instance_name(server_name)
        except ValidationError:
            receipt = plane.execute(server_name, cmd, params)
        else:
            try:
                with runtime.locks.mutate_instances([server_name]) as bundle:
                    op.set_lock_wait_ms(bundle.wait_ms)
                    receipt = plane.execute(server_name, cmd, params)
            except LockTimeoutError as exc:
                receipt = Receipt(server_name=server_name, cmd=cmd)
                receipt.exception = {"name": type(exc).__name__, "detail": str(exc)}
        if receipt.success:
            op.success(f"{cmd} succeeded.", changed=0)
        else:
            detail = (receipt.exception or {}).get("detail", "failed")
            op.error(detail, context={"exception": receipt.exception})
    return receipt


@app.command()
def worker(ctx: typer.Context) -> None:
    """Serve commands read as JSON lines from stdin until EOF.

    Each input line is either a directive (``IDENT``, ``LIST``, ``USAGE``) or
    a JSON object ``{"server_name": ..., "cmd": ..., ...params}``. Receipts
    and console output are written to stdout as JSON lines.
    """
    runtime = _get_runtime(ctx)
    config = runtime.config
    plane = ControlPlane(
        config.base_dir,
        worker_name=config.worker_name,
        executables=config.executables.as_mapping(),
    )
    out = _JsonLineWriter(sys.stdout)

    def relay(line: ConsoleLine) -> None:
        out.write({"type": "stdout", "hostname": plane.hostname, **line.to_dict()})

    subscribed: set[str] = set()

    def follow(name: str) -> None:
        if name in subscribed:
            return
        try:
            plane.subscribe(name, relay)
        except ValidationError:
            return
        subscribed.add(name)

    for name in plane.startup():
        follow(name)
    out.write(_directive_record(plane, "IDENT"))

    try:
        for raw in sys.stdin:
            line = raw.strip()
            if not line:
                continue
            if not line.startswith("{"):
                out.write(_directive_record(plane, line))
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                out.write(_directive_record(plane, line))
                continue
            if not isinstance(message, dict):
                out.write(_directive_record(plane, line))
                continue
            follow(str(message.get("server_name") or ""))
            receipt = _run_worker_command(runtime, plane, message)
            out.write({"type": "receipt.command", **receipt.to_dict()})
    finally:
        plane.shutdown()


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
