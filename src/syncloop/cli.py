"""Command-line interface for Syncloop."""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .activities.config_api import CatalogConfigApi
from .activities.jobs import InMemoryJobTracker
from .activities.models import ScheduleType
from .config import ConnectionEntry, SyncloopConfig, create_sample_config, load_config
from .core.daemon import SyncloopDaemon
from .error_handling import (
    ConfigurationError,
    ErrorCategory,
    SyncloopError,
    check_dependencies,
    with_error_handling,
)
from .notify.ntfy import NtfyNotifier
from .process_lock import ProcessLock
from .scheduling.scheduler import SUSPENDED_WAIT, Scheduler
from .storage.snapshots import SnapshotStore, StoredSnapshot

console = Console()


def setup_logging(
    *,
    verbose: bool = False,
    config: SyncloopConfig | None = None,
) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Clean up existing handlers first to prevent resource leaks
    cleanup_logging()

    show_path = level == logging.DEBUG
    handlers: list[logging.Handler] = [
        RichHandler(console=console, rich_tracebacks=True, show_path=show_path),
    ]

    if config and config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = config.log_dir / "syncloop.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            ),
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,  # Force reconfiguration of root logger
    )


def cleanup_logging() -> None:
    """Clean up logging handlers to prevent ResourceWarnings."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root_logger.removeHandler(handler)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """Syncloop - Scheduled sync runs for data connections."""
    try:
        ctx.ensure_object(dict)
        loaded_config = load_config(config)
        ctx.obj["config"] = loaded_config
        ctx.obj["verbose"] = verbose

        setup_logging(verbose=verbose, config=loaded_config)
    except (OSError, ValueError, RuntimeError) as e:
        config_error = ConfigurationError(
            f"Failed to load configuration: {e}",
            config_path=config,
            solution="Run 'syncloop config validate' to check your configuration file",
        )
        console.print(f"[red]Configuration Error:[/red] {config_error}")
        sys.exit(1)


@cli.group("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Configuration management commands."""


@config_cmd.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config: SyncloopConfig = ctx.obj["config"]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Config File", str(config.config_path or "Defaults"))
    table.add_row("State Directory", str(config.state_dir))
    table.add_row("Log Directory", str(config.log_dir))
    table.add_row("Max Attempts", str(config.max_attempt))
    table.add_row("Schedule Retry Interval", format_duration(config.schedule_retry_interval))
    table.add_row("Cycles Before Hand-off", str(config.max_cycles_before_handoff))
    table.add_row("Ntfy Topic", config.ntfy_topic or "Not configured")
    table.add_row("Connections", str(len(config.connections)))

    console.print(table)

    if config.connections:
        connections = Table(title="Connections")
        connections.add_column("ID")
        connections.add_column("Status")
        connections.add_column("Schedule")
        connections.add_column("Command")
        for entry in config.connections:
            connections.add_row(
                entry.connection_id,
                entry.status.value,
                describe_schedule(entry),
                " ".join(entry.sync_command) or "-",
            )
        console.print(connections)


@config_cmd.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Validate current configuration."""
    config: SyncloopConfig = ctx.obj["config"]

    console.print("[bold]Configuration Validation[/bold]")

    errors = []

    for name, path in [
        ("State", config.state_dir),
        ("Log", config.log_dir),
    ]:
        try:
            path.mkdir(parents=True, exist_ok=True)
            console.print(f"[green]✓[/green] {name} directory: {path}")
        except OSError as e:
            console.print(f"[red]✗[/red] {name} directory: {e}")
            errors.append(f"{name} directory: {e}")

    if config.connections:
        console.print(f"[green]✓[/green] {len(config.connections)} connections configured")
    else:
        console.print("[yellow]⚠[/yellow] No connections configured")

    for entry in config.connections:
        if not entry.sync_command:
            console.print(
                f"[yellow]⚠[/yellow] {entry.connection_id}: no sync_command configured",
            )

    for dependency_error in check_dependencies(config):
        console.print(f"[red]✗[/red] {dependency_error.message}")
        if dependency_error.details:
            console.print(f"    [dim]{dependency_error.details}[/dim]")
        errors.append(dependency_error.message)

    if errors:
        console.print(f"\n[red]Found {len(errors)} configuration errors[/red]")
        sys.exit(1)
    else:
        console.print("\n[green]Configuration is valid[/green]")


@config_cmd.command("init")
@click.option(
    "--path",
    "-p",
    type=click.Path(path_type=Path),
    default=Path.home() / ".config" / "syncloop" / "config.toml",
    help="Path for the configuration file",
)
def config_init(path: Path) -> None:
    """Create a sample configuration file."""
    try:
        create_sample_config(path)
        console.print(f"[green]Created sample configuration at {path}[/green]")
        console.print("Please edit the configuration file with your settings.")
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
@with_error_handling(ErrorCategory.FILESYSTEM)
def status(ctx: click.Context) -> None:
    """Show daemon status and the stored state of every connection."""
    config: SyncloopConfig = ctx.obj["config"]

    console.print("[bold]System Status[/bold]")

    pid = ProcessLock(config).owner_pid()
    if pid:
        console.print(f"🟢 Syncloop: [green]Running (PID {pid})[/green]")
    else:
        console.print("🔴 Syncloop: [red]Not running[/red]")

    if config.ntfy_topic:
        console.print("📱 Notifications: Configured")
    else:
        console.print("📱 Notifications: [yellow]Not configured[/yellow]")

    console.print("\n[bold]Connections[/bold]")
    stored = {row.connection_id: row for row in SnapshotStore(config).list_snapshots()}
    if not config.connections and not stored:
        console.print("No connections configured")
        return

    table = Table()
    table.add_column("ID")
    table.add_column("Phase")
    table.add_column("Job", justify="right")
    table.add_column("Flags")
    table.add_column("Updated")

    ids = sorted({entry.connection_id for entry in config.connections} | set(stored))
    for connection_id in ids:
        row = stored.get(connection_id)
        if row is None:
            table.add_row(connection_id, "never started", "-", "", "-")
            continue
        if row.deleted or row.snapshot is None:
            phase = "[red]deleted[/red]" if row.deleted else "unknown"
            table.add_row(connection_id, phase, "-", "", format_timestamp(row))
            continue

        snapshot = row.snapshot
        flags = [
            name
            for name, value in (("failed", snapshot.failed), ("cancelled", snapshot.cancelled))
            if value
        ]
        flags.extend(intent.value for intent in snapshot.intents)
        job = snapshot.job_information
        table.add_row(
            connection_id,
            snapshot.phase.value,
            "-" if job.is_idle else f"{job.job_id}/{job.attempt_id}",
            ", ".join(flags),
            format_timestamp(row),
        )

    console.print(table)


@cli.command()
@click.pass_context
def schedule(ctx: click.Context) -> None:
    """Show how long each connection waits before its next scheduled run."""
    config: SyncloopConfig = ctx.obj["config"]

    if not config.connections:
        console.print("No connections configured")
        return

    # History lives in the running daemon, so every wait is relative to no prior job
    scheduler = Scheduler(CatalogConfigApi(config, InMemoryJobTracker()))

    table = Table()
    table.add_column("ID")
    table.add_column("Schedule")
    table.add_column("Next run in", justify="right")

    for entry in config.connections:
        try:
            wait = scheduler.compute_wait_time(entry.connection_id)
        except SyncloopError as e:
            table.add_row(entry.connection_id, describe_schedule(entry), f"[red]{e.message}[/red]")
            continue
        if wait >= SUSPENDED_WAIT:
            remaining = "[dim]suspended[/dim]"
        else:
            remaining = format_duration(int(wait.total_seconds()))
        table.add_row(entry.connection_id, describe_schedule(entry), remaining)

    console.print(table)


@cli.command()
@click.pass_context
def start(ctx: click.Context) -> None:
    """Run the connection managers in the foreground."""
    config: SyncloopConfig = ctx.obj["config"]

    missing = check_dependencies(config)
    if missing:
        for dependency_error in missing:
            dependency_error.display_to_user()
        sys.exit(1)

    daemon = SyncloopDaemon(config)
    try:
        daemon.start_foreground()
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop the running Syncloop process."""
    config: SyncloopConfig = ctx.obj["config"]

    pid = ProcessLock(config).owner_pid()
    if not pid:
        console.print("[yellow]Syncloop is not running[/yellow]")
        return

    console.print(f"[blue]Stopping Syncloop (PID {pid})...[/blue]")

    if ProcessLock.stop_process(pid):
        console.print("[green]Syncloop stopped[/green]")
    else:
        console.print(f"[red]Failed to stop Syncloop process {pid}[/red]")
        sys.exit(1)


@cli.command("test-notify")
@click.pass_context
def test_notify(ctx: click.Context) -> None:
    """Send a test notification."""
    config: SyncloopConfig = ctx.obj["config"]
    notifier = NtfyNotifier(config)

    if notifier.test_notification():
        console.print("[green]Test notification sent successfully[/green]")
    else:
        console.print("[red]Failed to send test notification[/red]")


# CLI utility functions
def format_duration(seconds: int) -> str:
    """Format duration in seconds to human readable format."""
    if seconds < 60:
        return f"0:00:{seconds:02d}"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours}:{minutes:02d}:{secs:02d}"


def format_timestamp(row: StoredSnapshot) -> str:
    if row.updated_at is None:
        return "-"
    return row.updated_at.strftime("%Y-%m-%d %H:%M")


def describe_schedule(entry: ConnectionEntry) -> str:
    """Short human readable form of a connection schedule."""
    schedule = entry.schedule
    if schedule.schedule_type is ScheduleType.CRON:
        return f"cron {schedule.cron_expression} ({schedule.timezone})"
    if schedule.schedule_type is ScheduleType.MANUAL:
        return "manual"
    return f"every {schedule.units} {schedule.time_unit.value}"


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
