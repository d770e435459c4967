"""
Command-line interface for EDS Graph Sync.
"""

import asyncio
import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from eds_graph_sync.db import IdentityMapStore
from eds_graph_sync.db import query_status
from eds_graph_sync.models import CURRENT_DATA_VERSION
from eds_graph_sync.models import DEFAULT_CONFIG
from eds_graph_sync.models import DEFAULT_STATE_DIR
from eds_graph_sync.models import CalendarSyncError
from eds_graph_sync.models import SyncConfig
from eds_graph_sync.models import SyncStats
from eds_graph_sync.sync import CalendarSynchronizer

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="One-way sync from an EDS calendar to a Microsoft Graph calendar.",
)

console = Console()

_SECTION = "calendar-sync"


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_dir: Annotated[
        Path,
        typer.Option("--state-dir", help=f"Mapping database directory (default: {DEFAULT_STATE_DIR})"),
    ] = DEFAULT_STATE_DIR,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_dir = state_dir
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if _SECTION not in parser:
        return {}
    return dict(parser[_SECTION])


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    try:
        return ConfigParser.BOOLEAN_STATES[value.strip().lower()]
    except KeyError:
        raise typer.BadParameter(f"Not a boolean in {state.config_path}: {value!r}") from None


def _as_int(value: str | None, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise typer.BadParameter(f"{name} must be an integer, got {value!r}") from None


def _build_config(
    source_calendar: str | None = None,
    destination_calendar: str | None = None,
    full: bool = False,
    interval: int | None = None,
    require_source: bool = True,
) -> SyncConfig:
    config_file = _load_config_file(state.config_path)
    source_id = source_calendar or config_file.get("source_calendar_id")
    destination_id = destination_calendar or config_file.get("destination_calendar_id")

    if require_source and not source_id:
        console.print(
            "[bold red]Error:[/] The local calendar UID must be provided via "
            "[cyan]--source[/] or [cyan]source_calendar_id[/] in the config file."
        )
        raise typer.Exit(1)

    return SyncConfig(
        user=config_file.get("user") or "me",
        source_calendar_id=source_id or "",
        destination_calendar_id=destination_id,
        destination_calendar_name=config_file.get("destination_calendar_name") or None,
        state_dir=state.state_dir,
        data_version=config_file.get("data_version") or CURRENT_DATA_VERSION,
        force_full_resync=full,
        skip_old_appointments=_as_bool(config_file.get("skip_old_appointments"), True),
        retention_days=_as_int(config_file.get("retention_days"), 30, "retention_days"),
        purge_aged_out=_as_bool(config_file.get("purge_aged_out"), False),
        strict_recurring_times=_as_bool(config_file.get("strict_recurring_times"), False),
        time_zone=config_file.get("time_zone") or None,
        sync_interval_minutes=(
            interval
            if interval is not None
            else _as_int(config_file.get("sync_interval_minutes"), 15, "sync_interval_minutes")
        ),
        access_token=config_file.get("access_token") or None,
        verbose=state.verbose,
    )


def _print_info_panel(cfg: SyncConfig, operation: Text) -> None:
    from eds_graph_sync.eds_client import get_calendar_display_info

    name, account, uid = get_calendar_display_info(cfg.source_calendar_id)
    local_display = name + (f" ({account})" if account else "")

    info = Text()
    info.append("  Local:     ", style="bold")
    info.append(f"{local_display}\n")
    info.append(f"             {uid}\n", style="dim")
    info.append("  Remote:    ", style="bold")
    info.append(f"{cfg.destination_calendar_name or cfg.destination_calendar_id}")
    info.append(f" [{cfg.user}]\n", style="dim")
    info.append("  Operation: ", style="bold")
    info.append_text(operation)
    if cfg.skip_old_appointments:
        info.append("\n  Window:    ", style="bold")
        info.append(f"skip items ended more than {cfg.retention_days} days ago")

    console.print(Panel(info, title="[bold]EDS Graph Sync[/bold]"))


def _preflight(cfg: SyncConfig) -> None:
    from eds_graph_sync.preflight import run_preflight_checks

    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)


def _print_results(stats: SyncStats) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created / updated", str(stats.synced))
    results.add_row("Deleted", str(stats.deleted))
    results.add_row("Unchanged", str(stats.unchanged))
    results.add_row("Skipped (old)", str(stats.skipped_old))
    results.add_row(
        "Exceptions", f"{stats.exceptions_synced} synced, {stats.exceptions_unchanged} unchanged"
    )
    error_val = Text(str(stats.errors))
    if stats.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)
    results.add_row("Elapsed", f"{stats.elapsed:.1f}s")

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


def _run(coro):
    """Run a coroutine, mapping failures onto exit codes."""
    try:
        return asyncio.run(coro)
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


_SOURCE_OPT = Annotated[
    str | None,
    typer.Option("--source", "-s", help="Local EDS calendar UID (overrides config)"),
]
_DEST_OPT = Annotated[
    str | None,
    typer.Option("--calendar", "-d", help="Remote calendar id (overrides config)"),
]


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


@app.command()
def sync(
    source: _SOURCE_OPT = None,
    calendar: _DEST_OPT = None,
    full: Annotated[
        bool, typer.Option("--full", help="Ignore the unchanged fast path for every item")
    ] = False,
) -> None:
    """Run one synchronization pass."""
    cfg = _build_config(source, calendar, full=full)
    _preflight(cfg)
    op_line = Text("FULL SYNC", style="bold yellow") if full else Text("SYNC", style="bold green")
    _print_info_panel(cfg, op_line)

    stats = _run(CalendarSynchronizer(cfg).run(full=full))
    _print_results(stats)
    if stats.errors:
        raise typer.Exit(1)


@app.command()
def watch(
    source: _SOURCE_OPT = None,
    calendar: _DEST_OPT = None,
    interval: Annotated[
        int | None,
        typer.Option("--interval", "-i", min=1, help="Minutes between passes (overrides config)"),
    ] = None,
) -> None:
    """Run passes periodically until interrupted."""
    cfg = _build_config(source, calendar, interval=interval)
    _preflight(cfg)
    _print_info_panel(
        cfg, Text(f"WATCH (every {cfg.sync_interval_minutes} min)", style="bold cyan")
    )
    _run(CalendarSynchronizer(cfg).watch())


@app.command()
def status(calendar: _DEST_OPT = None) -> None:
    """Show the configuration and the identity map summary."""
    cfg = _build_config(destination_calendar=calendar, require_source=False)
    db_path = IdentityMapStore(cfg.state_dir, cfg.user, cfg.mapping_calendar).db_path
    config_exists = state.config_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  Mapping:  ", style="bold")
    cfg_info.append(str(db_path) + " ")
    cfg_info.append(
        "✓" if db_path.exists() else "(not found)",
        style="green" if db_path.exists() else "yellow",
    )
    if cfg.source_calendar_id:
        cfg_info.append("\n  Local:    ", style="bold")
        cfg_info.append(cfg.source_calendar_id, style="dim")
    cfg_info.append("\n  Remote:   ", style="bold")
    cfg_info.append(cfg.mapping_calendar or "(not configured)")
    cfg_info.append("\n  Token:    ", style="bold")
    cfg_info.append(
        "configured" if cfg.access_token else "from environment / missing",
        style="green" if cfg.access_token else "yellow",
    )
    console.print(Panel(cfg_info, title="[bold]EDS Graph Sync · Status[/bold]"))

    summary = query_status(db_path)
    if summary is None:
        console.print(
            "[yellow]No mapping database yet, run[/] [cyan]eds-graph-sync sync[/] "
            "[yellow]to create it.[/]"
        )
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Tracked appointments", justify="right")
    table.add_column("Exceptions", justify="right")
    table.add_column("Deleted occurrences", justify="right")
    table.add_column("Data version")
    version = summary["data_version"] or "-"
    version_cell = Text(str(version))
    if version != CURRENT_DATA_VERSION:
        version_cell.append(" (full sync pending)", style="yellow")
    table.add_row(
        str(summary["entries"]),
        str(summary["exceptions"]),
        str(summary["deleted_exceptions"]),
        version_cell,
    )
    console.print(Panel(table, title="[bold]Identity map[/bold]", expand=False))


@app.command()
def delete(
    destination_id: Annotated[str, typer.Argument(help="Remote event id to delete")],
    calendar: _DEST_OPT = None,
) -> None:
    """Delete one synced remote event and forget its mapping."""
    cfg = _build_config(destination_calendar=calendar, require_source=False)
    was_mapped = _run(CalendarSynchronizer(cfg).delete_event(destination_id))
    if was_mapped:
        console.print(f"[green]Deleted[/] {destination_id} and removed its mapping.")
    else:
        console.print(f"[yellow]Deleted[/] {destination_id} [yellow](it was not in the mapping)[/]")


@app.command()
def clear(
    calendar: _DEST_OPT = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
) -> None:
    """Delete every remote event created by this tool."""
    cfg = _build_config(destination_calendar=calendar, require_source=False)
    if not yes:
        typer.confirm(
            f"Delete all synced events from [{cfg.mapping_calendar}]?", abort=True
        )
    stats = _run(CalendarSynchronizer(cfg).clear())
    _print_results(stats)
    if stats.errors:
        raise typer.Exit(1)


@app.command()
def calendars() -> None:
    """List local EDS calendars and, with a token, the remote calendars."""
    from eds_graph_sync.eds_client import list_local_calendars
    from eds_graph_sync.graph_client import GraphCalendarClient

    local = Table(show_header=True, header_style="bold cyan", title="Local (EDS)")
    local.add_column("Display Name / UID", min_width=36, overflow="fold")
    local.add_column("Account")
    try:
        entries = list_local_calendars()
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        entries = []
    for name, account, uid in entries:
        cell = Text()
        cell.append(name, style="bold")
        cell.append("\n")
        cell.append(uid, style="dim")
        local.add_row(cell, account)
    console.print(local)

    cfg = _build_config(require_source=False)
    client = GraphCalendarClient(access_token=cfg.access_token)
    if not client.is_authenticated():
        console.print("[yellow]No access token, skipping remote calendars.[/]")
        return

    async def _remote():
        async with client:
            return await client.list_calendars()

    remote = Table(show_header=True, header_style="bold cyan", title="Remote (Microsoft Graph)")
    remote.add_column("Name", style="bold")
    remote.add_column("Id", style="dim", overflow="fold")
    for entry in _run(_remote()):
        remote.add_row(entry.get("name") or "(unnamed)", entry.get("id") or "")
    console.print(remote)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
