"""Typer-powered command line interface for ``pcpctl``.

Two command groups are exposed, both as subcommands of ``pcpctl`` and as
standalone console scripts:

* ``pcpctl-deploy`` provisions new instances (interactive when invoked
  without a subcommand).
* ``pcpctl-manage`` lists instances and drives their lifecycle.

Every command exits ``0`` on success and ``1`` on any failure.
"""
from __future__ import annotations

import json
import re
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, cast

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .lifecycle import (
    STEP_FAILED,
    STEP_OK,
    BackupService,
    DeployRequest,
    LifecycleController,
    LifecycleResult,
    Operation,
)
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError, PortAllocator, PortProbe
from .providers import (
    ComposeError,
    ComposeProvider,
    ContainerRuntime,
    InstanceStatusProvider,
    RuntimeUnavailableError,
)
from .providers.compose import PRUNABLE_RESOURCES
from .service_definition import ServiceDefinition
from .state import (
    InstanceMetadata,
    InstanceRegistry,
    InstanceRegistryError,
    default_database_name,
    validate_instance_name,
)
from .templates import TemplateEngine

console = Console()

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Failures a command reports as a clean error instead of a traceback.
_HANDLED_ERRORS = (
    InstanceRegistryError,
    PortAllocationError,
    ComposeError,
    BackupError,
    LockError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to pcpctl's YAML config file.",
)
LOCK_TIMEOUT_OPTION = typer.Option(
    None,
    "--lock-timeout",
    help="Override lock acquisition timeout in seconds.",
)
VERSION_OPTION = typer.Option(
    False,
    "--version",
    "-V",
    help="Show the pcpctl version and exit.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    "-f",
    help="Skip the confirmation prompt.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        PowerChat Plus multi-instance deployment CLI.

        Use ``deploy`` to provision new instances and ``manage`` to operate
        existing ones.
        """
    ).strip(),
)
deploy_app = typer.Typer(
    add_completion=False,
    help="Provision new PowerChat Plus instances.",
)
manage_app = typer.Typer(
    add_completion=False,
    help="Manage deployed PowerChat Plus instances.",
)

app.add_typer(deploy_app, name="deploy")
app.add_typer(manage_app, name="manage")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: InstanceRegistry
    definitions: ServiceDefinition
    compose: ContainerRuntime
    instance_status_provider: InstanceStatusProvider
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    backups: BackupsRegistry
    controller: LifecycleController


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
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    definitions = ServiceDefinition(
        templates=templates,
        runtime=config.runtime,
        database=config.database,
    )
    registry = InstanceRegistry(config.instances_dir, definitions)
    compose = ComposeProvider(
        compose_bin=config.runtime.compose_bin,
        docker_bin=config.runtime.docker_bin,
    )
    status_provider = InstanceStatusProvider(compose)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    probe = PortProbe(compose, host=config.ports.probe_host)
    allocator = PortAllocator(probe, registry, config.ports)
    backup_service = BackupService(compose, definitions, config.backups)
    controller = LifecycleController(
        registry,
        compose,
        definitions,
        backups=backup_service,
        status=status_provider,
        allocator=allocator,
        locks=locks,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        definitions=definitions,
        compose=compose,
        instance_status_provider=status_provider,
        locks=locks,
        logger=logger,
        templates=templates,
        backups=BackupsRegistry(config.backups.root),
        controller=controller,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _handle_global_options(
    ctx: typer.Context,
    *,
    version: bool,
    config_file: Path | None,
    lock_timeout: float | None,
) -> RuntimeContext:
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"pcpctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)
    return runtime


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = VERSION_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _handle_global_options(
        ctx, version=version, config_file=config_file, lock_timeout=lock_timeout
    )
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@manage_app.callback(invoke_without_command=True)
def _manage_root(
    ctx: typer.Context,
    version: bool = VERSION_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
) -> None:
    """Manage deployed PowerChat Plus instances."""
    _handle_global_options(
        ctx, version=version, config_file=config_file, lock_timeout=lock_timeout
    )
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@deploy_app.callback(invoke_without_command=True)
def _deploy_root(
    ctx: typer.Context,
    version: bool = VERSION_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
) -> None:
    """Provision a new instance (prompts for details when run without a subcommand)."""
    runtime = _handle_global_options(
        ctx, version=version, config_file=config_file, lock_timeout=lock_timeout
    )
    if ctx.invoked_subcommand is None:
        _deploy_instance(
            runtime,
            name=None,
            company=None,
            admin_email=None,
            database_name=None,
            start=True,
        )


# ----------------------------------------------------------------------
# Shared helpers


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _instance_name(op: OperationScope, name: str) -> str:
    """Return the validated *name* or fail the command."""
    try:
        return validate_instance_name(name)
    except ValueError as exc:
        _command_error(op, f"Invalid instance name {name!r}: {exc}")


def _usage_error(message: str) -> NoReturn:
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=ExitCode.FAILURE)


def _step_status(status: str) -> str:
    if status == STEP_OK:
        return "success"
    if status == STEP_FAILED:
        return "error"
    return status


def _render_steps(result: LifecycleResult, op: OperationScope) -> None:
    for step in result.steps:
        op.add_step(f"{result.operation.value}.{step.name}", status=_step_status(step.status))
        if step.status == STEP_OK:
            console.print(f"  [green]✓[/green] {step.name}")
        elif step.status == STEP_FAILED:
            console.print(f"  [red]✗[/red] {step.name}: {escape(step.detail)}")
        else:
            console.print(f"  [yellow]-[/yellow] {step.name} ({step.detail})")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


def _complete(
    op: OperationScope,
    message: str,
    *,
    warnings: Sequence[str] = (),
    changed: int = 0,
    context: Mapping[str, object] | None = None,
) -> None:
    """Record success, or completion with warnings when any were raised."""
    if warnings:
        op.warning(message, warnings=list(warnings), changed=changed, context=context)
        return
    op.success(message, changed=changed, context=context)


def _finish_lifecycle(op: OperationScope, result: LifecycleResult, message: str) -> None:
    if not result.succeeded:
        _command_error(
            op,
            f"{result.operation.value.capitalize()} failed for instance '{result.name}'.",
            errors=result.errors,
            context=result.to_dict(),
        )
    console.print(f"[green]{message}[/green]")
    _complete(
        op,
        message,
        warnings=result.warnings,
        changed=0 if result.operation in (Operation.INFO, Operation.LOGS, Operation.STATUS) else 1,
        context=result.to_dict(),
    )


def _execute(
    runtime: RuntimeContext,
    op: OperationScope,
    name: str,
    operation: Operation,
    *,
    lock: bool = True,
    follow: bool = False,
) -> LifecycleResult:
    try:
        if lock:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                return runtime.controller.execute(name, operation, follow=follow)
        return runtime.controller.execute(name, operation, follow=follow)
    except _HANDLED_ERRORS as exc:
        _command_error(op, str(exc))


def _run_operation(ctx: typer.Context, name: str, operation: Operation, message: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"manage {operation.value}",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _instance_name(op, name)
        console.print(f"[bold]{operation.value.capitalize()}[/bold] instance '{name}'")
        result = _execute(runtime, op, name, operation)
        _render_steps(result, op)
        _finish_lifecycle(op, result, message)


def _list_instances(ctx: typer.Context, command: str, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        view = runtime.registry.list()
        entries: list[dict[str, object]] = []
        for record in view:
            status = runtime.instance_status_provider.status(
                runtime.registry.paths(record.name).compose_file
            )
            entry = record.summary()
            entry["status"] = status.state
            entry["status_detail"] = status.detail
            entries.append(entry)
        corrupt = view.corrupt()
        warnings = [f"Skipped corrupt instance record '{name}'." for name in corrupt]

        if json_output:
            console.print_json(data={"instances": entries, "corrupt": corrupt})
            _complete(op, "Reported instance list as JSON.", warnings=warnings)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("App Port")
        table.add_column("DB Port")
        table.add_column("Status")
        table.add_column("Created")
        table.add_column("URL")

        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for entry in entries:
                state = str(entry["status"])
                colour = {"running": "green", "stopped": "red"}.get(state, "yellow")
                table.add_row(
                    str(entry["name"]),
                    str(entry["app_port"]),
                    str(entry["db_port"]),
                    f"[{colour}]{state}[/{colour}]",
                    str(entry["created_at"])[:19].replace("T", " "),
                    str(entry["url"]),
                )

        console.print(table)
        for warning in warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
        _complete(op, "Reported instance list.", warnings=warnings)


def _run_bulk(ctx: typer.Context, operation: Operation, *, confirm: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"manage {operation.value}-all",
        args={"confirm": confirm},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        names = runtime.registry.list().names()
        if not names:
            console.print("No instances registered.")
            op.success("No instances to process.", changed=0)
            return
        if confirm and not typer.confirm(
            f"{operation.value.capitalize()} {len(names)} instance(s): {', '.join(names)}?",
            default=False,
        ):
            console.print("[yellow]Aborted.[/yellow]")
            op.warning("Cancelled by operator.", warnings=["user-cancelled"])
            return

        def _report(result: LifecycleResult) -> None:
            marker = "[green]✓[/green]" if result.succeeded else "[red]✗[/red]"
            console.print(f"{marker} {result.name}")
            for error in result.errors:
                console.print(f"    {error}", markup=False)
            for warning in result.warnings:
                console.print(f"    [yellow]Warning:[/yellow] {escape(warning)}")

        try:
            with runtime.locks.mutate_instances(names) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                bulk = runtime.controller.run_bulk(operation, names, on_result=_report)
        except _HANDLED_ERRORS as exc:
            _command_error(op, str(exc))

        for result in bulk.results:
            op.add_step(
                result.name,
                status="success" if result.succeeded else "error",
                detail="; ".join(result.errors) or None,
            )
        console.print(
            f"\nSucceeded: [green]{len(bulk.succeeded)}[/green]  "
            f"Failed: [red]{len(bulk.failed)}[/red]  "
            f"Elapsed: {bulk.elapsed:.1f}s"
        )
        if bulk.aborted is not None:
            _command_error(
                op,
                f"Aborted: {bulk.aborted}",
                context=bulk.to_dict(),
            )
        if bulk.failed:
            _command_error(
                op,
                f"{operation.value.capitalize()} failed for: {', '.join(bulk.failed)}",
                errors=[f"{name} failed" for name in bulk.failed],
                context=bulk.to_dict(),
            )
        op.success(
            f"{operation.value.capitalize()} completed for {len(bulk.succeeded)} instance(s).",
            changed=len(bulk.succeeded),
            context=bulk.to_dict(),
        )


def _prompt_name(value: str | None) -> str:
    while True:
        candidate = value if value is not None else typer.prompt("Instance name")
        try:
            return validate_instance_name(candidate)
        except ValueError as exc:
            if value is not None:
                _usage_error(f"Invalid --name: {exc}")
            console.print(f"[red]{escape(str(exc))}[/red]")


def _prompt_email(value: str | None) -> str:
    while True:
        candidate = value if value is not None else typer.prompt("Admin email", default="")
        candidate = candidate.strip()
        if not candidate or EMAIL_PATTERN.fullmatch(candidate):
            return candidate
        if value is not None:
            _usage_error("Invalid --admin-email: not an email address.")
        console.print("[red]Invalid email address.[/red]")


def _deploy_instance(
    runtime: RuntimeContext,
    *,
    name: str | None,
    company: str | None,
    admin_email: str | None,
    database_name: str | None,
    start: bool,
) -> None:
    resolved_name = _prompt_name(name)
    resolved_company = (
        company if company is not None else typer.prompt("Company name", default="")
    )
    resolved_email = _prompt_email(admin_email)
    resolved_db = (
        database_name
        if database_name is not None
        else typer.prompt("Database name", default=default_database_name(resolved_name))
    )

    with runtime.logger.operation(
        "deploy create",
        args={
            "name": resolved_name,
            "company": resolved_company,
            "admin_email": resolved_email,
            "database_name": resolved_db,
            "start": start,
        },
        target={"kind": "instance", "name": resolved_name},
    ) as op:
        request = DeployRequest(
            name=resolved_name,
            metadata=InstanceMetadata(
                company_name=resolved_company.strip(),
                admin_email=resolved_email,
                database_name=resolved_db.strip(),
            ),
            start=start,
        )
        try:
            result = runtime.controller.deploy(request)
        except _HANDLED_ERRORS as exc:
            _command_error(op, str(exc))

        op.set_lock_wait_ms(result.lock_wait_ms)
        record = result.record
        for step in result.steps:
            op.add_step(f"deploy.{step.name}", status=_step_status(step.status), detail=step.detail or None)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Instance", record.name)
        table.add_row("App port", str(record.app_port))
        table.add_row("DB port", str(record.db_port))
        table.add_row("Database", record.database_name)
        table.add_row("Directory", str(runtime.registry.paths(record.name).root))
        table.add_row("URL", record.url)
        console.print(table)

        context = {"instance": record.summary()}
        if not result.succeeded:
            failed = [f"{step.name}: {step.detail}" for step in result.steps if step.status == STEP_FAILED]
            for line in failed:
                console.print(f"  [red]✗[/red] {escape(line)}")
            console.print(
                f"[yellow]Instance registered; retry with 'pcpctl-manage start {record.name}'.[/yellow]"
            )
            _command_error(
                op,
                f"Provisioning failed for instance '{record.name}'.",
                errors=failed,
                context=context,
            )
        if start:
            message = f"Instance '{record.name}' deployed at {record.url}."
        else:
            message = f"Instance '{record.name}' registered (not started)."
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=1, context=context)


# ----------------------------------------------------------------------
# deploy commands


@deploy_app.command("create")
def deploy_create(
    ctx: typer.Context,
    name: str | None = typer.Option(None, "--name", help="Instance name."),
    company: str | None = typer.Option(None, "--company", help="Company name."),
    admin_email: str | None = typer.Option(None, "--admin-email", help="Administrator email."),
    database_name: str | None = typer.Option(
        None,
        "--database-name",
        help="PostgreSQL database name (defaults to powerchat_<name>).",
    ),
    no_start: bool = typer.Option(
        False,
        "--no-start",
        help="Register the instance without building or starting containers.",
    ),
) -> None:
    """Create a new instance, prompting for any value not given."""
    _deploy_instance(
        _get_runtime(ctx),
        name=name,
        company=company,
        admin_email=admin_email,
        database_name=database_name,
        start=not no_start,
    )


@deploy_app.command("list")
def deploy_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List deployed instances."""
    _list_instances(ctx, "deploy list", json_output)


# ----------------------------------------------------------------------
# manage commands


@manage_app.command("list")
def manage_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances with ports, status and URL."""
    _list_instances(ctx, "manage list", json_output)


@manage_app.command("start")
def manage_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
) -> None:
    """Start an instance's containers."""
    _run_operation(ctx, name, Operation.START, f"Instance '{name}' started.")


@manage_app.command("stop")
def manage_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
) -> None:
    """Stop an instance's containers."""
    _run_operation(ctx, name, Operation.STOP, f"Instance '{name}' stopped.")


@manage_app.command("restart")
def manage_restart(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to restart."),
) -> None:
    """Restart an instance's containers."""
    _run_operation(ctx, name, Operation.RESTART, f"Instance '{name}' restarted.")


@manage_app.command("status")
def manage_status(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to inspect."),
) -> None:
    """Show derived status and the runtime's service listing."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "manage status",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _instance_name(op, name)
        result = _execute(runtime, op, name, Operation.STATUS, lock=False)
        state = str(result.data.get("status", "unknown"))
        colour = {"running": "green", "stopped": "red"}.get(state, "yellow")
        console.print(f"Instance '{name}': [{colour}]{state}[/{colour}] ({result.data.get('detail', '')})")
        if result.output:
            console.print(result.output, markup=False, highlight=False)
        if not result.succeeded:
            _command_error(op, f"Status lookup failed for instance '{name}'.", errors=result.errors)
        op.success("Reported instance status.", changed=0, context=result.to_dict())


@manage_app.command("logs")
def manage_logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    no_follow: bool = typer.Option(
        False,
        "--no-follow",
        help="Print current logs and exit instead of streaming.",
    ),
) -> None:
    """Stream (or print) container logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "manage logs",
        args={"name": name, "follow": not no_follow},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _instance_name(op, name)
        result = _execute(runtime, op, name, Operation.LOGS, lock=False, follow=not no_follow)
        if result.output:
            console.print(result.output, markup=False, highlight=False)
        if not result.succeeded:
            _command_error(op, f"Logs unavailable for instance '{name}'.", errors=result.errors)
        op.success("Displayed logs.", changed=0)


@manage_app.command("info")
def manage_info(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show instance details and resource usage."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "manage info",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _instance_name(op, name)
        result = _execute(runtime, op, name, Operation.INFO, lock=False)
        data = result.data
        if json_output:
            console.print_json(data={"instance": data, "warnings": result.warnings})
            _complete(op, "Reported instance info as JSON.", warnings=result.warnings)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key in (
            "name",
            "company_name",
            "admin_email",
            "app_port",
            "db_port",
            "database_name",
            "created_at",
            "url",
            "status",
        ):
            table.add_row(key, str(data.get(key, "")))
        console.print(table)
        services = str(data.get("services", "") or "")
        if services:
            console.print("\n[bold]Services[/bold]")
            console.print(services, markup=False, highlight=False)
        stats = str(data.get("stats", "") or "")
        if stats:
            console.print("\n[bold]Resource usage[/bold]")
            console.print(stats, markup=False, highlight=False)
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
        _complete(op, "Reported instance info.", warnings=result.warnings)


@manage_app.command("backup")
def manage_backup(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to back up."),
) -> None:
    """Write database, volume and configuration backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "manage backup",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _instance_name(op, name)
        console.print(f"[bold]Backup[/bold] instance '{name}'")
        result = _execute(runtime, op, name, Operation.BACKUP)
        _render_steps(result, op)
        artifacts = [str(path) for path in cast(list[str], result.data.get("artifacts", []))]
        if result.succeeded:
            for artifact in artifacts:
                console.print(f"  {artifact}", markup=False)
            message = f"Backup written to {result.data.get('backup_dir')}."
            console.print(f"[green]{message}[/green]")
            op.success(message, changed=len(artifacts), backups=artifacts, context=result.to_dict())
            return
        _finish_lifecycle(op, result, "")


@manage_app.command("backups")
def manage_backups(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List backup sets recorded for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "manage backups",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "name": name},
    ) as op:
        name = _instance_name(op, name)
        sets = runtime.backups.list_sets(name)
        if json_output:
            console.print_json(data={"backups": [item.to_dict() for item in sets]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Timestamp", style="bold")
        table.add_column("Complete")
        table.add_column("Missing")
        table.add_column("Size")
        if not sets:
            table.add_row("(none)", "", "", "")
        for item in sets:
            table.add_row(
                item.timestamp,
                "yes" if item.complete else "[red]no[/red]",
                ", ".join(item.missing),
                _format_size(item.size_bytes),
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@manage_app.command("update")
def manage_update(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Name of the instance to update."),
    all_instances: bool = typer.Option(False, "--all", help="Update every instance."),
    force: bool = FORCE_OPTION,
) -> None:
    """Stop, rebuild without cache, and start an instance (or all with --all)."""
    if all_instances:
        if name is not None:
            _usage_error("Give an instance name or --all, not both.")
        _run_bulk(ctx, Operation.UPDATE, confirm=not force)
        return
    if name is None:
        _usage_error("Give an instance name or --all.")
    _run_operation(ctx, name, Operation.UPDATE, f"Instance '{name}' updated.")


@manage_app.command("start-all")
def manage_start_all(ctx: typer.Context) -> None:
    """Start every registered instance."""
    _run_bulk(ctx, Operation.START, confirm=False)


@manage_app.command("stop-all")
def manage_stop_all(ctx: typer.Context) -> None:
    """Stop every registered instance."""
    _run_bulk(ctx, Operation.STOP, confirm=False)


@manage_app.command("update-all")
def manage_update_all(ctx: typer.Context, force: bool = FORCE_OPTION) -> None:
    """Update every registered instance."""
    _run_bulk(ctx, Operation.UPDATE, confirm=not force)


@manage_app.command("remove")
def manage_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
    volumes: bool = typer.Option(
        False,
        "--volumes",
        help="Also delete the instance's data volumes (irreversible).",
    ),
    force: bool = FORCE_OPTION,
) -> None:
    """Tear down an instance and delete its registry record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "manage remove",
        args={"name": name, "volumes": volumes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _instance_name(op, name)
        if not runtime.registry.exists(name):
            _command_error(op, f"Instance '{name}' not found.")
        suffix = " and delete its volumes" if volumes else ""
        if not force and not typer.confirm(f"Remove instance '{name}'{suffix}?", default=False):
            console.print("[yellow]Aborted.[/yellow]")
            op.warning("Cancelled by operator.", warnings=["user-cancelled"])
            return
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.controller.remove(name, purge_volumes=volumes)
        except _HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        _render_steps(result, op)
        _finish_lifecycle(op, result, f"Instance '{name}' removed.")


@manage_app.command("prune")
def manage_prune(
    ctx: typer.Context,
    networks: bool = typer.Option(False, "--networks", help="Prune unused networks."),
    containers: bool = typer.Option(False, "--containers", help="Prune stopped containers."),
    images: bool = typer.Option(False, "--images", help="Prune dangling images."),
) -> None:
    """Remove unused Docker resources (all kinds when none is selected)."""
    runtime = _get_runtime(ctx)
    selected = [
        resource
        for resource, flag in zip(PRUNABLE_RESOURCES, (networks, containers, images), strict=True)
        if flag
    ] or list(PRUNABLE_RESOURCES)
    with runtime.logger.operation(
        "manage prune",
        args={"resources": selected},
        target={"kind": "docker"},
    ) as op:
        failures: list[str] = []
        for resource in selected:
            try:
                runtime.compose.prune(resource)
            except RuntimeUnavailableError as exc:
                _command_error(op, str(exc))
            except ComposeError as exc:
                failures.append(f"{resource}: {exc}")
                op.add_step(f"prune.{resource}", status="error", detail=str(exc))
                console.print(f"  [red]✗[/red] {resource}: {escape(str(exc))}")
                continue
            op.add_step(f"prune.{resource}", status="success")
            console.print(f"  [green]✓[/green] {resource}")
        if failures:
            _command_error(op, "Prune failed.", errors=failures)
        console.print("[green]Prune complete.[/green]")
        op.success("Pruned unused Docker resources.", changed=len(selected))


@manage_app.command("config")
def manage_config(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "manage config",
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


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"


def main() -> None:
    """Console script entry point."""
    app()


def deploy_main() -> None:
    """Console script entry point for ``pcpctl-deploy``."""
    deploy_app()


def manage_main() -> None:
    """Console script entry point for ``pcpctl-manage``."""
    manage_app()


__all__ = ["app", "deploy_app", "deploy_main", "main", "manage_app", "manage_main"]
