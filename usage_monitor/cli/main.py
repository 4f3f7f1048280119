"""
CLI interface for Usage Monitor.

Provides command-line access to syncing, status and history.
"""

import sys
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from usage_monitor.app import Application, build_application
from usage_monitor.config.loader import DatabaseConfig, Settings, load_settings
from usage_monitor.core.coordinator import SyncResult
from usage_monitor.core.errors import FetchError
from usage_monitor.core.pager import SyncProgress
from usage_monitor.logging_config import configure_logging
from usage_monitor.storage.models import AutoSyncConfig, SyncState
from usage_monitor.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

TOKEN_ENV_VAR = "USAGE_MONITOR_TOKEN"


@dataclass
class CliState:
    settings: Settings
    token: Optional[str] = None


def _state(ctx: typer.Context) -> CliState:
    return ctx.find_root().obj


def _build(ctx: typer.Context) -> Application:
    state = _state(ctx)
    return build_application(state.settings, token=state.token)


def _current_month() -> str:
    return datetime.now().strftime("%Y-%m")


def _format_time(moment: Optional[datetime]) -> str:
    if moment is None:
        return "-"
    return moment.strftime("%Y-%m-%d %H:%M:%S")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    token: Optional[str] = typer.Option(None, "--token", envvar=TOKEN_ENV_VAR, help="Metering API token"),
):
    """Usage Monitor CLI."""
    try:
        settings = load_settings(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if db:
        settings = replace(settings, database=DatabaseConfig(path=db))
    configure_logging(settings.logging.level, settings.logging.json)
    ctx.obj = CliState(settings=settings, token=token)

    if ctx.invoked_subcommand is None:
        console.print("Usage Monitor - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Usage Monitor database."""
    try:
        initialize_schema(_state(ctx).settings.database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def sync(
    ctx: typer.Context,
    month: Optional[str] = typer.Option(None, "--month", "-m", help="Billing month (YYYY-MM), defaults to the current month"),
    sync_type: Optional[str] = typer.Option(None, "--type", "-t", help="Sync type: full or incremental"),
    recent: Optional[int] = typer.Option(None, "--recent", "-r", help="Sync this many recent months instead of one"),
):
    """Fetch and store expense bills for a billing month."""
    application = _build(ctx)

    def show_progress(progress: SyncProgress) -> None:
        console.print(
            f"  page {progress.current_page}/{progress.total_pages} "
            f"synced {progress.synced_count} failed {progress.failed_count} "
            f"of {progress.total_count} ({progress.percent}%)"
        )

    try:
        if recent is not None:
            results = application.coordinator.sync_recent_months(
                recent, progress_callback=lambda _month, progress: show_progress(progress)
            )
        else:
            chosen_type = sync_type or application.settings.sync.default_sync_type
            results = [application.coordinator.start_sync(month or _current_month(), chosen_type, show_progress)]
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        application.shutdown()

    for result in results:
        _display_sync_result(result)

    sys.exit(EXIT_CODE_PASS if all(r.success for r in results) else EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show current sync status and auto-sync settings."""
    application = _build(ctx)
    try:
        sync_status = application.coordinator.get_sync_status()
        auto = application.auto_sync_config.get()
        stored = application.bills.count()
    finally:
        application.shutdown()

    color = "yellow" if sync_status.is_syncing else (
        "red" if sync_status.last_sync_status == SyncState.FAILED else "green"
    )
    console.print(f"\n[bold]Sync status:[/bold] [{color}]{sync_status.message}[/]")
    if sync_status.is_syncing:
        console.print(f"Progress: {sync_status.progress}%")
    console.print(f"Stored bills: {stored}")
    console.print(
        f"Auto-sync: {'enabled' if auto.enabled else 'disabled'} "
        f"(every {auto.frequency_seconds}s, {auto.sync_type})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    ctx: typer.Context,
    sync_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by sync type"),
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    size: int = typer.Option(20, "--size", "-s", help="Rows per page (max 100)"),
):
    """List past sync attempts, newest first."""
    application = _build(ctx)
    try:
        result = application.coordinator.get_history(sync_type, page, size)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        application.shutdown()

    if not result.items:
        console.print("[dim]No sync history found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Sync history (page {result.page_num}, {result.total} total)")
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Month")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Error")
    for item in result.items:
        table.add_row(
            str(item.id),
            item.sync_type,
            item.billing_month,
            _format_time(item.start_time),
            item.status.value,
            f"{item.records_synced}/{item.total_records}",
            str(item.failed_count),
            item.error_message or ""
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(ctx: typer.Context):
    """Mark every running sync as failed."""
    application = _build(ctx)
    try:
        count = application.coordinator.force_reset()
    finally:
        application.shutdown()
    console.print(f"[green]✓[/] Reset {count} running sync(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def wipe(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Delete every stored expense bill."""
    if not yes and not typer.confirm("Delete all stored expense bills?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_FAIL)

    application = _build(ctx)
    try:
        count = application.bills.delete_all()
    finally:
        application.shutdown()
    console.print(f"[green]✓[/] Deleted {count} bill(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def delete(ctx: typer.Context, bill_id: int = typer.Argument(..., help="Row id of the bill")):
    """Delete one expense bill by id."""
    application = _build(ctx)
    try:
        deleted = application.bills.delete_by_id(bill_id)
    finally:
        application.shutdown()

    if deleted:
        console.print(f"[green]✓[/] Deleted bill {bill_id}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Error:[/] bill {bill_id} not found")
    sys.exit(EXIT_CODE_FAIL)


@app.command("validate-token")
def validate_token(ctx: typer.Context):
    """Check that the API token is accepted by the metering API."""
    application = _build(ctx)
    if application.client is None:
        console.print(f"[red]Error:[/] no API token configured (use --token or {TOKEN_ENV_VAR})")
        sys.exit(EXIT_CODE_FAIL)
    try:
        application.client.validate_token()
    except FetchError as e:
        console.print(f"[red]Token validation failed:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        application.shutdown()

    console.print("[green]✓[/] API token is valid")
    sys.exit(EXIT_CODE_PASS)


@app.command("auto-config")
def auto_config(
    ctx: typer.Context,
    enable: Optional[bool] = typer.Option(None, "--enable/--disable", help="Turn auto-sync on or off"),
    frequency: Optional[int] = typer.Option(None, "--frequency", "-f", help="Interval in seconds (>= 60)"),
    sync_type: Optional[str] = typer.Option(None, "--type", "-t", help="Sync type: full or incremental"),
    month: Optional[str] = typer.Option(None, "--month", "-m", help="Fixed billing month; empty string for current"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retries after a failed sync"),
    retry_delay: Optional[int] = typer.Option(None, "--retry-delay", help="Seconds between retries"),
):
    """Show or update the stored auto-sync settings."""
    changes = {}
    if enable is not None:
        changes["enabled"] = enable
    if frequency is not None:
        changes["frequency_seconds"] = frequency
    if sync_type is not None:
        changes["sync_type"] = sync_type
    if month is not None:
        changes["billing_month"] = month or None
    if max_retries is not None:
        changes["max_retries"] = max_retries
    if retry_delay is not None:
        changes["retry_delay"] = retry_delay

    application = _build(ctx)
    try:
        current = application.auto_sync_config.get()
        if changes:
            try:
                updated = replace(current, **changes)
            except ValueError as e:
                console.print(f"[red]Error:[/] {str(e)}")
                sys.exit(EXIT_CODE_FAIL)
            application.auto_sync_config.save(updated)
            current = application.auto_sync_config.get()
            console.print("[green]✓[/] Auto-sync settings saved")
    finally:
        application.shutdown()

    _display_auto_config(current)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def watch(
    ctx: typer.Context,
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Override the stored interval in seconds"),
):
    """Run the auto-sync scheduler in the foreground until interrupted."""
    application = _build(ctx)
    application.startup()
    try:
        if interval is not None:
            application.scheduler.stop()
            application.scheduler.start(interval)
        if not application.scheduler.running:
            console.print("[yellow]Auto-sync is disabled.[/] Enable it with `usage-monitor auto-config --enable` or pass --interval")
            sys.exit(EXIT_CODE_FAIL)

        console.print(f"Auto-sync running every {application.scheduler.interval_seconds}s (Ctrl+C to stop)")
        while application.scheduler.running:
            application.scheduler.join(timeout=1.0)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except KeyboardInterrupt:
        console.print("\nStopping auto-sync")
    finally:
        application.shutdown()
    sys.exit(EXIT_CODE_PASS)


def _display_sync_result(result: SyncResult) -> None:
    """Display one sync outcome."""
    console.print(f"\n[bold]Billing month:[/bold] {result.billing_month}")
    if result.already_running:
        console.print(f"[yellow]Skipped:[/] {result.error_message}")
        return
    if not result.success:
        console.print(f"[red]✗ Sync failed:[/] {result.error_message}")
        return

    console.print(f"[green]✓[/] {result.message}")
    console.print(f"Pages: {result.pages_synced}/{result.total_pages}")
    console.print(f"Synced: {result.synced_items}")
    console.print(f"Failed: {result.failed_items} ({result.skipped_items} rejected at write)")
    console.print(f"Duration: {result.duration_seconds:.1f}s")


def _display_auto_config(config: AutoSyncConfig) -> None:
    table = Table(title="Auto-sync settings", show_header=False)
    table.add_row("Enabled", "yes" if config.enabled else "no")
    table.add_row("Frequency", f"{config.frequency_seconds}s")
    table.add_row("Sync type", config.sync_type)
    table.add_row("Billing month", config.billing_month or "current")
    table.add_row("Max retries", str(config.max_retries))
    table.add_row("Retry delay", f"{config.retry_delay}s")
    console.print(table)


if __name__ == "__main__":
    app()
