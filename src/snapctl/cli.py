"""Typer-powered command line interface for ``snapctl``.

The root callback resolves configuration, detects the external tools once and
builds a :class:`RuntimeContext` shared by every subcommand. Mutating commands
hold the global operation lock for their whole duration and record one
structured entry in ``operations.jsonl``.
"""
from __future__ import annotations

import json
import logging
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .capabilities import MIN_RESTIC_VERSION, Capabilities, detect_capabilities
from .config import AppConfig, ConfigError, load_config
from .containers import ContainerStateManager
from .diskspace import DiskSpaceEstimator, SpaceEstimate
from .errors import (
    ConfirmationDeclinedError,
    PreconditionError,
    RestoreInterrupted,
    SelectionError,
    SnapctlError,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import BackupOrchestrator, RestoreOrchestrator, RestoreState
from .providers import DockerProvider, ResticProvider, RsyncProvider, SystemdProvider
from .repository import initialize_repository, require_repository
from .snapshots import Snapshot, SnapshotListing

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to snapctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

# Subcommand groups that may run without root privileges.
_UNPRIVILEGED_GROUPS = {"config"}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Whole-machine snapshot backup and restore.

        Backs up the root filesystem into a restic repository, pausing running
        containers while the snapshot is taken, and restores a chosen snapshot
        through a staging area before replaying the container workloads.
        """
    ).strip(),
)

repo_app = typer.Typer(help="Bootstrap and inspect the snapshot repository.")
snapshot_app = typer.Typer(help="Create, list, delete and restore snapshots.")
config_app = typer.Typer(help="Inspect the resolved configuration.")

app.add_typer(repo_app, name="repo")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    capabilities: Capabilities
    locks: LockManager
    logger: StructuredLogger
    store: ResticProvider
    sync: RsyncProvider
    docker: DockerProvider
    daemon: SystemdProvider
    containers: ContainerStateManager
    estimator: DiskSpaceEstimator

    def backup_orchestrator(self) -> BackupOrchestrator:
        """Return a backup orchestrator wired to this runtime."""
        return BackupOrchestrator(
            store=self.store,
            containers=self.containers,
            estimator=self.estimator,
            settings=self.config.backup,
        )

    def restore_orchestrator(self) -> RestoreOrchestrator:
        """Return a fresh restore state machine wired to this runtime."""
        return RestoreOrchestrator(
            store=self.store,
            sync=self.sync,
            containers=self.containers,
            estimator=self.estimator,
            settings=self.config.restore,
        )


def _configure_logging(verbose: bool) -> None:
    """Route snapctl's module loggers to stderr through Rich."""
    package_logger = logging.getLogger("snapctl")
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _is_root() -> bool:
    return os.geteuid() == 0


def _build_runtime(config: AppConfig) -> RuntimeContext:
    capabilities = detect_capabilities(config.binaries)
    binaries = config.binaries
    store = ResticProvider(
        repository=config.repository.path,
        password_file=config.repository.password_file,
        restic_bin=capabilities.restic_path or binaries.restic,
    )
    docker = DockerProvider(
        docker_bin=capabilities.docker_path or binaries.docker,
        compose_command=capabilities.compose_command,
    )
    daemon = SystemdProvider(units=config.runtime.units, systemctl_bin=binaries.systemctl)
    return RuntimeContext(
        config=config,
        capabilities=capabilities,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        store=store,
        sync=RsyncProvider(rsync_bin=capabilities.rsync_path or binaries.rsync),
        docker=docker,
        daemon=daemon,
        containers=ContainerStateManager(runtime=docker, daemon=daemon),
        estimator=DiskSpaceEstimator(
            backup=config.backup,
            restore=config.restore,
            repository_path=config.repository.path,
            store=store,
        ),
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
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runtime = _build_runtime(config)
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
        help="Show the snapctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug output from every step.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"snapctl {__version__}")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand not in _UNPRIVILEGED_GROUPS and not _is_root():
        console.print("[red]snapctl must be run as root.[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT))

    _ensure_runtime(ctx, config_file, lock_timeout)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, RestoreInterrupted):
        return ExitCode.INTERRUPTED
    if isinstance(exc, (SelectionError, ConfirmationDeclinedError)):
        return ExitCode.VALIDATION
    if isinstance(exc, (PreconditionError, LockTimeoutError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    _command_error(op, str(exc), rc=int(_exit_code_for(exc)))


def _require_tools(runtime: RuntimeContext, op: OperationScope, tools: Sequence[str]) -> None:
    missing = [tool for tool in runtime.capabilities.missing_tools() if tool in tools]
    if missing:
        _command_error(
            op,
            f"Required tools not found on PATH: {', '.join(missing)}.",
            rc=int(ExitCode.ENVIRONMENT),
        )
    if "restic" in tools and not runtime.capabilities.restic_supported:
        detected = runtime.capabilities.restic_version or "unknown"
        console.print(
            f"[yellow]restic {detected} detected; {MIN_RESTIC_VERSION} or newer is "
            "recommended.[/yellow]"
        )
        op.add_step("capabilities.restic", status="warning", detail=str(detected))


def _load_listing(runtime: RuntimeContext) -> SnapshotListing:
    require_repository(runtime.store, runtime.config.repository)
    return SnapshotListing.of(runtime.store.snapshots())


def _print_estimate(estimate: SpaceEstimate) -> None:
    colour = "green" if estimate.ok else "red"
    console.print(f"[{colour}]{estimate.describe()}[/{colour}] ({estimate.checked_path})")


@repo_app.command("init")
def repo_init(ctx: typer.Context) -> None:
    """Create the credential file and initialise a new repository."""
    runtime = _get_runtime(ctx)
    repository = runtime.config.repository
    with runtime.logger.operation(
        "repo init",
        target={"kind": "repository", "path": str(repository.path)},
    ) as op:
        _require_tools(runtime, op, ["restic"])
        try:
            with runtime.locks.operation_lock("repo init") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = initialize_repository(runtime.store, repository)
        except (SnapctlError, LockTimeoutError, OSError) as exc:
            _fail(op, exc)

        if result.credential_created:
            console.print(f"Credential written to {result.password_file} (mode 0600).")
        else:
            console.print(f"Using existing credential file {result.password_file}.")
        console.print(f"[green]Repository initialised at {result.repository}.[/green]")
        op.success("Repository initialised.", changed=1, context=result.to_dict())


@repo_app.command("status")
def repo_status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report detected tools, the container runtime and repository state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repo status",
        args={"json": json_output},
        target={"kind": "repository", "path": str(runtime.config.repository.path)},
    ) as op:
        capabilities = runtime.capabilities
        initialised = capabilities.restic_path is not None and runtime.store.is_initialized()
        installed = runtime.docker.is_installed()
        active = installed and runtime.docker.is_active()
        units_active = runtime.daemon.is_active()
        data: dict[str, object] = {
            "repository": {
                "path": str(runtime.config.repository.path),
                "initialized": initialised,
            },
            "tools": capabilities.to_dict(),
            "runtime": {
                "installed": installed,
                "active": active,
                "units": list(runtime.daemon.units),
                "units_active": units_active,
            },
        }

        if json_output:
            console.print_json(data=data)
            op.success("Reported repository status (JSON).", changed=0, context=data)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Check", style="bold")
        table.add_column("Value")
        table.add_row("Repository", str(runtime.config.repository.path))
        table.add_row("Initialised", "yes" if initialised else "no")
        table.add_row(
            "restic",
            f"{capabilities.restic_path or 'missing'} "
            f"({capabilities.restic_version or 'unknown version'})",
        )
        table.add_row("rsync", capabilities.rsync_path or "missing")
        table.add_row("docker", capabilities.docker_path or "missing")
        table.add_row(
            "compose",
            " ".join(capabilities.compose_command) if capabilities.compose_command else "missing",
        )
        table.add_row(
            "Container runtime",
            "active" if active else ("installed" if installed else "missing"),
        )
        table.add_row(
            "Daemon units",
            f"{', '.join(runtime.daemon.units)} ({'active' if units_active else 'inactive'})",
        )
        console.print(table)
        op.success("Reported repository status.", changed=0, context=data)


@snapshot_app.command("create")
def snapshot_create(
    ctx: typer.Context,
    tags: list[str] | None = typer.Option(
        None,
        "--tag",
        help="Tag to attach to the snapshot (repeatable; defaults to backup.tags).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up the configured paths into a new snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot create",
        args={"tags": list(tags or []), "json": json_output},
        target={"kind": "repository", "path": str(runtime.config.repository.path)},
    ) as op:
        _require_tools(runtime, op, ["restic"])
        try:
            with runtime.locks.operation_lock("snapshot create") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                require_repository(runtime.store, runtime.config.repository)
                outcome = runtime.backup_orchestrator().execute(tags=tags, op=op)
                listing = SnapshotListing.of(runtime.store.snapshots())
        except PreconditionError as exc:
            estimate = getattr(exc, "estimate", None)
            if isinstance(estimate, SpaceEstimate):
                _print_estimate(estimate)
            _fail(op, exc)
        except (SnapctlError, LockTimeoutError) as exc:
            _fail(op, exc)

        snapshot_id = outcome.summary.snapshot_id
        listed = bool(snapshot_id) and listing.contains(snapshot_id or "")
        warnings = [*outcome.resume.warnings, *outcome.resume.errors]
        if not listed:
            warnings.append(f"Snapshot {snapshot_id} not found in the repository listing.")
        payload = {**outcome.to_dict(), "listed": listed}

        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]Snapshot {snapshot_id} created.[/green]")
            console.print(
                f"  files new: {outcome.summary.files_new}, "
                f"changed: {outcome.summary.files_changed}, "
                f"data added: {outcome.summary.data_added} bytes"
            )
            for warning in warnings:
                console.print(f"[yellow]{warning}[/yellow]")

        if warnings:
            op.warning(
                "Snapshot created with warnings.",
                warnings=warnings,
                changed=1,
                backups=[snapshot_id or ""],
                context=payload,
            )
            return
        op.success(
            "Snapshot created.",
            changed=1,
            backups=[snapshot_id or ""],
            context=payload,
        )


@snapshot_app.command("list")
def snapshot_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots with the numbers used by delete and restore."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot list",
        args={"json": json_output},
        target={"kind": "repository", "path": str(runtime.config.repository.path)},
    ) as op:
        _require_tools(runtime, op, ["restic"])
        try:
            listing = _load_listing(runtime)
        except SnapctlError as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(
                data={
                    "snapshots": [
                        {"number": number, **snapshot.to_dict()}
                        for number, snapshot in listing.numbered()
                    ]
                }
            )
            op.success("Reported snapshot list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", style="bold", justify="right")
        table.add_column("ID")
        table.add_column("Time")
        table.add_column("Host")
        table.add_column("Tags")
        table.add_column("Paths")

        if not len(listing):
            table.add_row("(none)", "", "", "", "", "")
        for number, snapshot in listing.numbered():
            table.add_row(
                str(number),
                snapshot.short_id,
                snapshot.display_time,
                snapshot.hostname,
                ", ".join(snapshot.tags),
                ", ".join(snapshot.paths),
            )

        console.print(table)
        op.success("Reported snapshot list.", changed=0, context={"count": len(listing)})


def _describe(snapshot: Snapshot) -> str:
    return f"{snapshot.short_id} ({snapshot.display_time}, {snapshot.hostname})"


@snapshot_app.command("delete")
def snapshot_delete(
    ctx: typer.Context,
    number: str = typer.Argument(..., help="Snapshot number as shown by 'snapshot list'."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Forget a snapshot and prune data no other snapshot references."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot delete",
        args={"number": number, "yes": yes},
        target={"kind": "snapshot", "number": number},
    ) as op:
        _require_tools(runtime, op, ["restic"])
        try:
            with runtime.locks.operation_lock("snapshot delete") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                listing = _load_listing(runtime)
                snapshot = listing.select(number)
                op.add_step("snapshot.select", detail=snapshot.short_id)
                if not yes and not typer.confirm(
                    f"Delete snapshot {_describe(snapshot)}?", default=False
                ):
                    raise ConfirmationDeclinedError("Deletion cancelled.")
                runtime.store.forget(snapshot.short_id, prune=True)
        except (SnapctlError, LockTimeoutError) as exc:
            _fail(op, exc)

        console.print(f"[green]Snapshot {snapshot.short_id} deleted.[/green]")
        op.success(
            "Snapshot deleted.",
            changed=1,
            context={"snapshot": snapshot.to_dict()},
        )


@snapshot_app.command("restore")
def snapshot_restore(
    ctx: typer.Context,
    number: str = typer.Argument(..., help="Snapshot number as shown by 'snapshot list'."),
    confirm_phrase: str | None = typer.Option(
        None,
        "--confirm",
        help="Confirmation phrase; prompted for when omitted.",
    ),
) -> None:
    """Restore the whole machine from a snapshot."""
    runtime = _get_runtime(ctx)
    settings = runtime.config.restore
    with runtime.logger.operation(
        "snapshot restore",
        args={"number": number, "confirm_supplied": confirm_phrase is not None},
        target={"kind": "snapshot", "number": number, "live_root": str(settings.live_root)},
    ) as op:
        _require_tools(runtime, op, ["restic", "rsync"])

        def confirm(snapshot: Snapshot, estimate: SpaceEstimate) -> str:
            _print_estimate(estimate)
            console.print(
                f"[bold red]Restoring {_describe(snapshot)} overwrites system files under "
                f"{settings.live_root} and replaces {settings.runtime_data_dir}.[/bold red]"
            )
            if confirm_phrase is not None:
                return confirm_phrase
            return typer.prompt(f"Type {settings.confirmation_phrase} to continue")

        orchestrator = runtime.restore_orchestrator()
        try:
            with runtime.locks.operation_lock("snapshot restore") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                listing = _load_listing(runtime)
                outcome = orchestrator.execute(listing, number, confirm=confirm, op=op)
        except PreconditionError as exc:
            estimate = getattr(exc, "estimate", None)
            if isinstance(estimate, SpaceEstimate):
                _print_estimate(estimate)
            _fail(op, exc)
        except (SnapctlError, LockTimeoutError, OSError) as exc:
            if RestoreState.SWAP_DATA in orchestrator.history:
                console.print(
                    "[yellow]The live system may be partially restored "
                    f"(state: {orchestrator.state.value}).[/yellow]"
                )
            op.add_step("restore.state", status="error", detail=orchestrator.state.value)
            _fail(op, exc)

        context = {**outcome.to_dict(), "states": [state.value for state in orchestrator.history]}
        for warning in outcome.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        console.print(f"[green]Snapshot {outcome.snapshot.short_id} restored.[/green]")
        console.print("A reboot is recommended so every service picks up the restored files.")
        if outcome.resume.errors:
            _command_error(
                op,
                "Files were restored but the container workloads did not come back cleanly.",
                rc=int(ExitCode.PROVIDER),
                errors=outcome.resume.errors,
            )
        if outcome.warnings:
            op.warning(
                "Restore completed with warnings.",
                warnings=outcome.warnings,
                changed=1,
                context=context,
            )
            return
        op.success("Restore completed.", changed=1, context=context)


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

    with runtime.logger.operation(
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


def main() -> None:
    """Console script entry point."""
    app()
