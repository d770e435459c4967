"""
Checks run before ``sync`` and ``watch`` so misconfiguration is reported as a
single readable panel instead of a failed pass.
"""

import logging
import sqlite3
from typing import NamedTuple

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from eds_graph_sync.db import IdentityMapStore
from eds_graph_sync.graph_client import TOKEN_ENV
from eds_graph_sync.models import SyncConfig

logger = logging.getLogger(__name__)

# Substrings of EDS connect errors that point at an offline online-account.
_OFFLINE_HINTS = (
    "offline",
    "network",
    "unreachable",
    "not connected",
    "no route",
    "authentication failed",
    "connection refused",
    "temporary failure",
)


class Issue(NamedTuple):
    label: str
    detail: str
    hint: str


def _mapping_db_issue(cfg: SyncConfig) -> Issue | None:
    db_path = IdentityMapStore(cfg.state_dir, cfg.user, cfg.mapping_calendar).db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"State directory {db_path.parent} cannot be created: {e}")
        return Issue("Mapping database", str(e), f"Check permissions on {db_path.parent}")

    if not db_path.exists():
        return None
    conn = None
    try:
        conn = sqlite3.connect(db_path)
        # Fails when the journal file cannot be created next to the DB.
        conn.execute("BEGIN IMMEDIATE")
        conn.rollback()
    except sqlite3.Error as e:
        logger.error(f"Mapping database {db_path} is not writable: {e}")
        return Issue(
            "Mapping database",
            f"{db_path}: {e}",
            f"Both {db_path.name} and its journal must be writable in {db_path.parent}",
        )
    finally:
        if conn is not None:
            conn.close()
    return None


def collect_config_issues(cfg: SyncConfig) -> list[Issue]:
    """Checks that need neither EDS nor the network."""
    issues = []
    if not cfg.destination_calendar_id:
        issues.append(
            Issue(
                "Remote calendar",
                "No remote calendar selected",
                "Set destination_calendar_id in the config file or pass --calendar",
            )
        )
    if not cfg.access_token:
        issues.append(
            Issue(
                "Access token",
                "No Microsoft Graph access token",
                f"Set access_token in the config file or export {TOKEN_ENV}",
            )
        )
    db_issue = _mapping_db_issue(cfg)
    if db_issue is not None:
        issues.append(db_issue)
    return issues


def _local_calendar_issues(cfg: SyncConfig) -> list[Issue]:
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    from eds_graph_sync.eds_client import _parent_display_name

    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error(f"EDS registry unreachable: {e.message}")
        return [Issue("EDS registry", e.message or str(e), "Is evolution-data-server running?")]

    source = registry.ref_source(cfg.source_calendar_id)
    if source is None:
        logger.error(f"No EDS calendar with UID {cfg.source_calendar_id}")
        return [
            Issue(
                "Local calendar",
                f"UID not found: {cfg.source_calendar_id}",
                "List the available UIDs with: eds-graph-sync calendars",
            )
        ]

    try:
        ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
    except GLib.Error as e:
        message = e.message or str(e)
        logger.error(f"Local calendar {cfg.source_calendar_id} refused the connection: {message}")
        hint = message
        if any(word in message.lower() for word in _OFFLINE_HINTS):
            account = _parent_display_name(registry, source)
            who = f"Account '{account}'" if account else "The calendar"
            hint = f"{who} looks offline, check GNOME Online Accounts"
        return [Issue("Local calendar", f"Connection failed: {message}", hint)]
    return []


def run_preflight_checks(cfg: SyncConfig, console: Console) -> bool:
    """Print a panel and return False when a pass cannot succeed."""
    issues = _local_calendar_issues(cfg) + collect_config_issues(cfg)
    if issues:
        _print_issues(issues, console)
        return False
    return True


def _print_issues(issues: list[Issue], console: Console) -> None:
    body = Text()
    for n, issue in enumerate(issues):
        if n:
            body.append("\n")
        body.append(f"  ✗  {issue.label}: {issue.detail}", style="bold red")
        body.append(f"\n       → {issue.hint}", style="yellow")
    console.print(Panel(body, title="[bold red]Cannot start sync[/bold red]"))
