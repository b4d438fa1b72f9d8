"""Typer-powered command line interface for ``ssctl``.

Every command runs inside a structured log operation. Mutating commands
also check privileges and tooling up front and hold the global advisory lock
while they touch the config store, the ports registry and systemd/firewalld.
"""
from __future__ import annotations

import os
import shutil
import sys
import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
import typer
from rich.console import Console
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .backups import ArchiveConflictError, BackupManager
from .config import AppConfig, load_config
from .errors import (
    ActionNotFoundError,
    MissingArgumentError,
    NoPermissionError,
    SsctlError,
    UnsupportedPlatformError,
)
from .exit_codes import ExitCode
from .lifecycle import LifecycleSynchronizer, Reconciler, RefreshReport
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .manager import ConfigManager
from .ports import PortAllocator, PortsRegistry
from .providers import CommandRunner, FirewallProvider, SystemdProvider
from .records import ConfigRecord, ConfigStore, validate_name
from .settings import FirewallType, Settings, SettingsStore
from .state import StateRegistry
from .uri import format_uri

console = Console()


class CommandRegistry(TyperGroup):
    """Command group rejecting unknown actions before anything else runs."""

    def resolve_command(
        self,
        ctx: click.Context,
        args: list[str],
    ) -> tuple[str | None, click.Command | None, list[str]]:
        """Exit with ``ACTION_NOT_FOUND`` for names missing from the registry."""
        if args and not args[0].startswith("-") and self.get_command(ctx, args[0]) is None:
            known = ", ".join(self.list_commands(ctx))
            error = ActionNotFoundError(f"Unknown action '{args[0]}'. Available: {known}.")
            console.print(f"[red]{error}[/red]")
            ctx.exit(int(error.exit_code))
        return super().resolve_command(ctx, args)


app = typer.Typer(
    cls=CommandRegistry,
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage multiple shadowsocks-libev server configs on this host.

        Each config is a JSON document served by its own systemd unit. ssctl
        keeps the documents, the registry of ports in use and the
        systemd/firewalld state in agreement; run `ssctl refresh` to rebuild
        the host state from the documents after any manual change.
        """
    ).strip(),
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ssctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    runner: CommandRunner
    store: ConfigStore
    ports: PortsRegistry
    settings_store: SettingsStore
    settings: Settings
    systemd_provider: SystemdProvider
    firewall_provider: FirewallProvider
    manager: ConfigManager
    locks: LockManager
    logger: StructuredLogger


def _build_runtime(
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    if not sys.platform.startswith("linux"):
        raise UnsupportedPlatformError(
            f"ssctl manages systemd units and only runs on Linux (found {sys.platform})."
        )

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    registry = StateRegistry(config.state_dir)
    runner = CommandRunner()
    store = ConfigStore(config.config_dir)
    ports = PortsRegistry(registry=registry, filename=config.ports_file)
    settings_store = SettingsStore(registry=registry, filename=config.settings_file)
    settings = settings_store.load()
    systemd_provider = SystemdProvider(
        runner=runner,
        unit_prefix=config.systemd.unit_prefix,
        systemctl_bin=config.systemd.systemctl_bin,
    )
    firewall_provider = FirewallProvider(
        settings=settings,
        runner=runner,
        firewall_cmd_bin=config.firewall.firewall_cmd_bin,
        zone=config.firewall.zone,
    )
    synchronizer = LifecycleSynchronizer(
        store=store,
        ports=ports,
        systemd=systemd_provider,
        firewall=firewall_provider,
    )
    reconciler = Reconciler(synchronizer)
    manager = ConfigManager(
        store=store,
        allocator=PortAllocator(
            ports=ports,
            base=config.ports.base,
            span=config.ports.span,
            max_attempts=config.ports.max_attempts,
        ),
        synchronizer=synchronizer,
        reconciler=reconciler,
        backups=BackupManager(store=store, reconciler=reconciler, archive_path=config.backup_file),
        settings_store=settings_store,
        settings=settings,
        defaults=config.records,
    )
    return RuntimeContext(
        config=config,
        registry=registry,
        runner=runner,
        store=store,
        ports=ports,
        settings_store=settings_store,
        settings=settings,
        systemd_provider=systemd_provider,
        firewall_provider=firewall_provider,
        manager=manager,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        runtime = _build_runtime(config_file, lock_timeout_override)
    except SsctlError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
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
        help="Show the ssctl version and exit.",
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
        console.print(f"ssctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# Helpers --------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.MISSING_ARGUMENT),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _reported(op: OperationScope) -> Iterator[None]:
    """Turn :class:`SsctlError` into a logged error and its exit code."""
    try:
        yield
    except SsctlError as exc:
        _command_error(op, str(exc), rc=int(exc.exit_code))


def _preflight(runtime: RuntimeContext, op: OperationScope, *, controllers: bool = True) -> None:
    """Check privileges and tooling before a mutating command changes anything."""
    if runtime.config.require_root and os.geteuid() != 0:
        raise NoPermissionError("This command must be run as root (or set require_root: false).")
    op.add_step("preflight.privileges", detail=f"euid={os.geteuid()}")
    if controllers:
        runtime.runner.require(runtime.config.systemd.systemctl_bin)
        if runtime.manager.settings.firewall_type is FirewallType.FIREWALLD:
            runtime.runner.require(runtime.config.firewall.firewall_cmd_bin)
        runtime.store.ensure_root()
        op.add_step("preflight.tools", detail=runtime.config.systemd.systemctl_bin)


def _record_row(record: ConfigRecord) -> dict[str, object]:
    return {"name": record.name, **record.to_document()}


def _unit_state(runtime: RuntimeContext, name: str) -> str | None:
    """Return ``active``/``inactive`` for the unit, or None without systemctl."""
    if shutil.which(runtime.config.systemd.systemctl_bin) is None:
        return None
    return "active" if runtime.systemd_provider.is_active(name) else "inactive"


def _render_refresh(report: RefreshReport) -> None:
    console.print(
        f"Stopped {len(report.stopped_units)} unit(s), closed {len(report.closed_ports)} "
        f"port(s), enabled {len(report.enabled)} config(s)."
    )
    for port, names in report.port_conflicts:
        console.print(
            f"[yellow]Port {port} is shared by {', '.join(names)}; "
            "only one of them can serve.[/yellow]"
        )


# Commands -------------------------------------------------------------
@app.command("new")
def new_command(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Names of the configs to create."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create configs with a random free port and password, and enable them."""
    runtime = _get_runtime(ctx)
    requested = list(names or [])
    with runtime.logger.operation(
        "new",
        args={"names": requested},
        target={"kind": "config", "names": requested},
    ) as op, _reported(op):
        if not requested:
            raise MissingArgumentError("Usage: ssctl new <name> [<name>...]")
        locked = [validate_name(name) for name in requested]
        _preflight(runtime, op)
        with runtime.locks.mutate_configs(locked) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            records = runtime.manager.new(requested, op)

        if json_output:
            console.print_json(data={"created": [_record_row(record) for record in records]})
        else:
            for record in records:
                console.print(
                    f"[green]Config '{record.name}' created on port {record.server_port}.[/green]"
                )
        op.success(
            "Configs created.",
            changed=len(records),
            context={"ports": {record.name: record.server_port for record in records}},
        )


@app.command("del")
def delete_command(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Names of the configs to delete."),
) -> None:
    """Disable and delete configs."""
    runtime = _get_runtime(ctx)
    requested = list(names or [])
    with runtime.logger.operation(
        "del",
        args={"names": requested},
        target={"kind": "config", "names": requested},
    ) as op, _reported(op):
        if not requested:
            raise MissingArgumentError("Usage: ssctl del <name> [<name>...]")
        locked = [validate_name(name) for name in requested]
        _preflight(runtime, op)
        with runtime.locks.mutate_configs(locked) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            records = runtime.manager.delete(requested, op)
        for record in records:
            console.print(f"[yellow]Config '{record.name}' removed.[/yellow]")
        op.success("Configs deleted.", changed=len(records))


@app.command("ls")
def list_command(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Restrict output to these configs."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List config names."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ls",
        args={"names": list(names or []), "json": json_output},
        target={"kind": "config"},
    ) as op, _reported(op):
        listed = runtime.manager.names(names)
        if json_output:
            console.print_json(data={"configs": listed})
        else:
            for name in listed:
                console.print(name)
        op.success("Listed configs.", changed=0, context={"count": len(listed)})


@app.command("ll")
def detail_command(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Restrict output to these configs."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show configs in detail."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ll",
        args={"names": list(names or []), "json": json_output},
        target={"kind": "config"},
    ) as op, _reported(op):
        records = runtime.manager.records(names)
        settings = runtime.manager.settings
        registered = set(runtime.ports.list_ports())
        states = {record.name: _unit_state(runtime, record.name) for record in records}

        if json_output:
            rows = []
            for record in records:
                row = _record_row(record)
                row["registered"] = record.server_port in registered
                row["state"] = states[record.name]
                row["uri"] = format_uri(record, settings) if settings.has_address else None
                rows.append(row)
            console.print_json(data={"configs": rows})
            op.success("Reported configs as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Port")
        table.add_column("Method")
        table.add_column("Password")
        table.add_column("Timeout")
        table.add_column("Bind")
        table.add_column("Registered")
        table.add_column("State")
        if not records:
            table.add_row("(none)", "", "", "", "", "", "", "")
        for record in records:
            table.add_row(
                record.name,
                str(record.server_port),
                record.method,
                record.password,
                str(record.timeout),
                ", ".join(record.bind_addresses),
                "[green]yes[/green]" if record.server_port in registered else "[red]no[/red]",
                states[record.name] or "unknown",
            )
        console.print(table)
        op.success("Reported configs.", changed=0)


@app.command("uri")
def uri_command(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Configs to share (default: all)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Print ss:// URIs for configs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uri",
        args={"names": list(names or []), "json": json_output},
        target={"kind": "config"},
    ) as op, _reported(op):
        uris = {name: runtime.manager.uri(name) for name in runtime.manager.names(names)}
        if json_output:
            console.print_json(data={"uris": uris})
        else:
            for name, uri in uris.items():
                console.print(f"{name}: {uri}", soft_wrap=True)
        op.success("Reported URIs.", changed=0)


@app.command("address")
def address_command(
    ctx: typer.Context,
    address: str | None = typer.Argument(None, help="Address advertised in URIs."),
) -> None:
    """Show or set the server address advertised in URIs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "address",
        args={"address": address},
        target={"kind": "settings", "key": "server_address"},
    ) as op, _reported(op):
        if address is None:
            current = runtime.manager.settings.server_address
            console.print(current if current else "[yellow](unset)[/yellow]")
            op.success("Reported server address.", changed=0)
            return
        _preflight(runtime, op, controllers=False)
        with runtime.locks.mutate_configs() as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            settings = runtime.manager.configure(address=address)
        op.add_step("settings.write", detail=str(runtime.settings_store.path))
        console.print(f"[green]Server address set to {settings.server_address}.[/green]")
        op.success("Server address updated.", changed=1)


@app.command("settings")
def settings_command(
    ctx: typer.Context,
    address: str | None = typer.Option(None, "--address", help="Set the server address."),
    firewall: str | None = typer.Option(
        None,
        "--firewall",
        help="Set the firewall type (firewalld|none).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show or edit host settings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "settings",
        args={"address": address, "firewall": firewall, "json": json_output},
        target={"kind": "settings"},
    ) as op, _reported(op):
        changed = 0
        if address is not None or firewall is not None:
            firewall_type = FirewallType.parse(firewall) if firewall is not None else None
            _preflight(runtime, op, controllers=False)
            previous = runtime.manager.settings
            with runtime.locks.mutate_configs() as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.manager.configure(address=address, firewall_type=firewall_type)
            op.add_step("settings.write", detail=str(runtime.settings_store.path))
            changed = 1
            if firewall_type is not None and firewall_type is not previous.firewall_type:
                console.print(
                    "[yellow]Firewall type changed; run `ssctl refresh` to apply it "
                    "to existing configs.[/yellow]"
                )

        settings = runtime.manager.settings
        if json_output:
            console.print_json(data=settings.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            table.add_row("server_address", settings.server_address or "(unset)")
            table.add_row("firewall_type", settings.firewall_type.value)
            table.add_row("settings_file", str(runtime.settings_store.path))
            console.print(table)
        op.success("Settings reported." if not changed else "Settings updated.", changed=changed)


@app.command("refresh")
def refresh_command(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop every unit and rebuild ports/firewall state from the config documents."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "refresh",
        args={"json": json_output},
        target={"kind": "host"},
    ) as op, _reported(op):
        _preflight(runtime, op)
        with runtime.locks.mutate_configs() as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            report = runtime.manager.refresh(op)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_refresh(report)
        if report.port_conflicts:
            op.warning(
                "Refresh completed with port conflicts.",
                warnings=[f"port {port}" for port, _ in report.port_conflicts],
                changed=report.changed,
                context=report.to_dict(),
            )
            return
        op.success("Refresh complete.", changed=report.changed, context=report.to_dict())


@app.command("rename")
def rename_command(
    ctx: typer.Context,
    old: str = typer.Argument(..., help="Current config name."),
    new: str = typer.Argument(..., help="New config name."),
) -> None:
    """Rename a config, keeping its port and password."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rename",
        args={"old": old, "new": new},
        target={"kind": "config", "names": [old, new]},
    ) as op, _reported(op):
        locked = [validate_name(old), validate_name(new)]
        _preflight(runtime, op)
        with runtime.locks.mutate_configs(locked) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            record = runtime.manager.rename(old, new, op)
        console.print(f"[green]Config '{old}' renamed to '{record.name}'.[/green]")
        op.success("Config renamed.", changed=2)


@app.command("backup")
def backup_command(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Overwrite an existing archive without asking.",
    ),
) -> None:
    """Archive every config document."""
    runtime = _get_runtime(ctx)
    target = runtime.config.backup_file
    with runtime.logger.operation(
        "backup",
        args={"yes": yes},
        target={"kind": "backup", "path": str(target)},
    ) as op, _reported(op):
        overwrite = yes
        if target.exists() and not yes:
            overwrite = typer.confirm(f"{target} already exists. Overwrite it?", default=False)
            if not overwrite:
                raise ArchiveConflictError(f"Backup archive {target} already exists.")
        path = runtime.manager.backup(overwrite=overwrite, op=op)
        console.print(f"[green]Backup written to {path}.[/green]")
        op.success("Backup created.", changed=1, backups=[str(path)])


@app.command("restore")
def restore_command(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="Archive produced by `ssctl backup`."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore config documents from an archive and refresh."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"archive": archive, "json": json_output},
        target={"kind": "backup", "path": str(archive)},
    ) as op, _reported(op):
        _preflight(runtime, op)
        with runtime.locks.mutate_configs() as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            report = runtime.manager.restore(archive, op)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            console.print(f"[green]Restored configs from {archive}.[/green]")
            _render_refresh(report)
        op.success("Restore complete.", changed=report.changed, backups=[str(archive)])


def main() -> None:
    """Console script entry point."""
    app()
