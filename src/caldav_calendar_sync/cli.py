"""
Command-line interface for CalDAV Calendar Sync.
"""

import logging
import os
import time
from collections.abc import Mapping
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from caldav_calendar_sync.db import query_status
from caldav_calendar_sync.directory import DEFAULT_CALENDARS
from caldav_calendar_sync.directory import CalendarDirectory
from caldav_calendar_sync.gateway import MultiCalendarGateway
from caldav_calendar_sync.models import DEFAULT_CONFIG
from caldav_calendar_sync.models import DEFAULT_ROW_RETENTION_DAYS
from caldav_calendar_sync.models import DEFAULT_STATE_DB
from caldav_calendar_sync.models import DEFAULT_SYNC_INTERVAL_MINUTES
from caldav_calendar_sync.models import DEFAULT_TOMBSTONE_RETENTION_DAYS
from caldav_calendar_sync.models import CalDAVCredentials
from caldav_calendar_sync.models import CalendarSyncError
from caldav_calendar_sync.models import ConfigError
from caldav_calendar_sync.models import SyncConfig
from caldav_calendar_sync.sync import CalendarSyncService
from caldav_calendar_sync.transport import CalDAVTransport

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Cache-first synchronisation of CalDAV calendars into a local SQLite store.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"Cache DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _read_config_file(config_path: Path) -> ConfigParser:
    parser = ConfigParser(interpolation=None)
    if config_path.exists():
        parser.read(config_path)
    return parser


def load_config(
    config_path: Path,
    state_db: Path | None = None,
    verbose: bool = False,
    environ: Mapping[str, str] | None = None,
) -> SyncConfig:
    """Build a SyncConfig from the INI file, with CALDAV_* environment overrides.

    Raises ConfigError when username, password or hostname is missing.
    """
    environ = os.environ if environ is None else environ
    parser = _read_config_file(config_path)
    caldav = parser["caldav"] if parser.has_section("caldav") else {}
    sync = parser["sync"] if parser.has_section("sync") else {}

    username = environ.get("CALDAV_USERNAME") or caldav.get("username")
    password = environ.get("CALDAV_PASSWORD") or caldav.get("password")
    hostname = environ.get("CALDAV_HOSTNAME") or caldav.get("hostname")
    base_path = environ.get("CALDAV_PATH") or caldav.get("base_path") or ""

    missing = [
        name
        for name, value in (("username", username), ("password", password), ("hostname", hostname))
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing CalDAV credentials: {', '.join(missing)}")

    if parser.has_section("calendars") and parser.items("calendars"):
        calendars = list(CalendarDirectory.from_mapping(dict(parser.items("calendars"))))
    else:
        calendars = list(DEFAULT_CALENDARS)

    if state_db is None:
        db_value = sync.get("db_path")
        state_db = Path(db_value).expanduser() if db_value else DEFAULT_STATE_DB

    try:
        interval = int(sync.get("interval_minutes", DEFAULT_SYNC_INTERVAL_MINUTES))
        row_days = int(sync.get("row_retention_days", DEFAULT_ROW_RETENTION_DAYS))
        tombstone_days = int(sync.get("tombstone_retention_days", DEFAULT_TOMBSTONE_RETENTION_DAYS))
        timeout = sync.get("request_timeout")
        timeout = float(timeout) if timeout else None
    except ValueError as e:
        raise ConfigError(f"Invalid sync setting: {e}") from e
    if interval <= 0:
        raise ConfigError("interval_minutes must be positive")

    default_calendar = sync.get("default_calendar", "shared")
    if default_calendar not in {c.name for c in calendars}:
        raise ConfigError(f"default_calendar '{default_calendar}' is not a configured calendar")

    return SyncConfig(
        credentials=CalDAVCredentials(
            username=username,
            password=password,
            hostname=hostname,
            collections_base_path=base_path,
        ),
        db_path=state_db,
        calendars=calendars,
        sync_interval_minutes=interval,
        default_calendar=default_calendar,
        row_retention_days=row_days,
        tombstone_retention_days=tombstone_days,
        request_timeout=timeout,
        verbose=verbose,
    )


def _load_or_exit() -> SyncConfig:
    try:
        return load_config(state.config_path, state.state_db, state.verbose)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/] {e}")
        console.print(
            f"[dim]Set credentials in {state.config_path} ([cyan]\\[caldav][/cyan] section) "
            "or via CALDAV_USERNAME / CALDAV_PASSWORD / CALDAV_HOSTNAME.[/dim]"
        )
        raise typer.Exit(1) from None


def _format_ts(ts) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "—"


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------


@app.command()
def sync() -> None:
    """Run one reconciliation pass now."""
    cfg = _load_or_exit()

    info = Text()
    info.append("  Server:   ", style="bold")
    info.append(f"{cfg.credentials.hostname}{cfg.credentials.collections_base_path}\n")
    info.append("  Cache DB: ", style="bold")
    info.append(f"{cfg.db_path}\n")
    info.append("  Calendars: ", style="bold")
    info.append(", ".join(c.name for c in cfg.calendars))
    console.print(Panel(info, title="[bold]CalDAV Calendar Sync[/bold]"))

    try:
        with CalendarSyncService(cfg) as service:
            report = service.force_sync()
    except CalendarSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    if report is None:
        console.print("[yellow]Another sync is already running.[/]")
        return

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    for name, count in report.calendar_counts.items():
        results.add_row(
            f"  {name}",
            Text("failed", style="bold red") if count < 0 else Text(str(count)),
        )
    results.add_row("Merged", str(report.merged))
    results.add_row("Pushed", str(report.writes_pushed))
    results.add_row("Deleted remotely", str(report.deletions_pushed))
    results.add_row("Removed (gone remotely)", str(report.remote_deleted))
    if report.write_failures:
        results.add_row("Push failures", Text(str(report.write_failures), style="yellow"))
    error_val = Text(str(report.errors))
    if report.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if report.errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and cache summary."""
    parser = _read_config_file(state.config_path)
    db_path = state.state_db
    if db_path is None:
        db_value = parser.get("sync", "db_path", fallback=None)
        db_path = Path(db_value).expanduser() if db_value else DEFAULT_STATE_DB

    config_exists = state.config_path.exists()
    db_exists = db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  Cache DB: ", style="bold")
    cfg_info.append(str(db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    console.print(Panel(cfg_info, title="[bold]CalDAV Calendar Sync — Status[/bold]"))

    summary = query_status(db_path)
    if not summary:
        console.print(
            "[yellow]No cache yet; run[/] [cyan]caldav-calendar-sync sync[/] "
            "[yellow]to create it.[/]"
        )
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Calendar")
    table.add_column("Cached", justify="right")
    for name, count in summary["calendars"].items():
        table.add_row(name, str(count))
    console.print(Panel(table, title="[bold]Cached events[/bold]", expand=False))

    totals = Table.grid(padding=(0, 2))
    totals.add_column(style="bold")
    totals.add_column(justify="right")
    pending = summary["pending_writes"]
    totals.add_row(
        "Pending writes", Text(str(pending), style="yellow" if pending else "green")
    )
    totals.add_row("Unsynced deletions", str(summary["unsynced_tombstones"]))
    totals.add_row("Last sync", _format_ts(summary["last_sync_at"]))
    console.print(totals)


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """Show the remote event count of every configured calendar."""
    cfg = _load_or_exit()
    directory = CalendarDirectory(cfg.calendars)
    gateway = MultiCalendarGateway(
        CalDAVTransport(cfg.credentials, timeout=cfg.request_timeout), directory
    )

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Display name")
    table.add_column("Path", style="dim")
    table.add_column("Events", justify="right")
    for calendar in directory:
        count = gateway.count(calendar.name)
        table.add_row(
            calendar.name,
            calendar.display_name,
            calendar.path,
            Text("error", style="bold red") if count < 0 else Text(str(count)),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


@app.command()
def run() -> None:
    """Keep the cache in sync on a timer until interrupted."""
    cfg = _load_or_exit()
    service = CalendarSyncService(cfg)
    console.print(
        f"[green]Syncing every {cfg.sync_interval_minutes} minute(s).[/] "
        "[dim]Press Ctrl-C to stop.[/dim]"
    )
    try:
        service.start()
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("[yellow]Stopping...[/]")
    finally:
        service.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
