# Author: PB
# Maintainer: PB
# Original date: 2025.05.10
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/cli.py

"""
Command-line entry point.

[bold green]Backup:[/bold green] run
[bold magenta]History:[/bold magenta] history
[bold red]Validation:[/bold red] validate-config
"""

# Standard library imports
from functools import partial
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Optional

# Third-party imports
import orjson
import typer
from rich.console import Console

# Local imports
from snapmirror.config.manager import BackupConfig, validate_config
from snapmirror.core.driver import run_backups
from snapmirror.core.reconciler import Reconciler
from snapmirror.storage.factory import create_oracle
from snapmirror.storage.history import HistoryStore
from snapmirror.storage.transfer import RsyncTransfer
from snapmirror.system.display import EventPrinter, display_summary, history_to_table
from snapmirror.system.exceptions import ConfigError, HistoryStoreError, ToolMissingError
from snapmirror.system.execution import check_tool_installed
from snapmirror.system.logging_setup import setup_logging

# Initialize Typer app
app = typer.Typer(
    help="""snapmirror - Mirror ZFS and restic snapshots into plain directories

[bold green]Backup:[/bold green] run
[bold magenta]History:[/bold magenta] history
[bold red]Validation:[/bold red] validate-config
""",
    rich_markup_mode="rich"
)

console = Console()

_state = {"debug": False}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        try:
            pkg_version = version("snapmirror")
        except PackageNotFoundError:
            pkg_version = "unknown"
        console.print(f"snapmirror version {pkg_version}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True,
        help="Show version and exit"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """snapmirror - incremental snapshot mirroring onto plain directories."""
    _state["debug"] = debug
    setup_logging(debug=debug)


def load_config_with_console(config_path: Optional[Path]) -> BackupConfig:
    """Load configuration, or print the problem and exit 1."""
    try:
        return BackupConfig.load(config_path)
    except ConfigError as e:
        console.print(f"[red]✗[/red] Configuration error: {e}")
        raise typer.Exit(1)


def open_history_with_console(db_path: Path) -> HistoryStore:
    try:
        return HistoryStore.open(db_path)
    except HistoryStoreError as e:
        console.print(f"[red]✗[/red] Error initializing database '{db_path}': {e}")
        raise typer.Exit(1)


# =============================================================================
# BACKUP
# =============================================================================

@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
    database: Optional[Path] = typer.Option(None, "--database", "-d", help="Path to backup history database"),
    only: Optional[list[str]] = typer.Option(None, "--only", help="Only back up the named source (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan transfers without changing the target or history"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show every reconciliation step"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress output"),
    to_json: bool = typer.Option(False, "--json", help="Output results as JSON")
) -> Any:
    """[bold green]Backup[/bold green]: Mirror the newest snapshot of every configured source."""
    cfg = load_config_with_console(config)
    setup_logging(cfg.local_log, debug=_state["debug"])

    for tool, version_arg in cfg.required_tools():
        try:
            check_tool_installed(tool, version_arg)
        except ToolMissingError as e:
            console.print(f"[red]✗[/red] Error: {e}")
            raise typer.Exit(1)

    store = open_history_with_console(database or cfg.database)
    with store:
        reconciler = Reconciler(
            store,
            RsyncTransfer(verbose=verbose),
            oracle_factory=partial(create_oracle, mount_base=cfg.mount_base,
                                   mount_timeout=cfg.mount_timeout),
            on_event=EventPrinter(console, verbose=verbose, quiet=quiet or to_json),
            dry_run=dry_run,
        )
        summary = run_backups(cfg, reconciler, only=only)

    if to_json:
        typer.echo(orjson.dumps(summary.to_dict(), option=orjson.OPT_INDENT_2).decode())
    elif not quiet:
        display_summary(console, summary)

    if summary.failed:
        raise typer.Exit(1)
    return summary


# =============================================================================
# HISTORY
# =============================================================================

@app.command()
def history(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
    database: Optional[Path] = typer.Option(None, "--database", "-d", help="Path to backup history database"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Only show this dataset or repository"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
    to_json: bool = typer.Option(False, "--json", help="Output results as JSON")
) -> Any:
    """[bold magenta]History[/bold magenta]: Show recorded backups, most recent first."""
    db_path = database or load_config_with_console(config).database
    store = open_history_with_console(db_path)
    with store:
        records = store.list_all()

    if source:
        records = [r for r in records if r.source_name == source]
    records = records[:limit]

    if to_json:
        payload = [
            {
                "kind": r.source_kind.value,
                "source": r.source_name,
                "snapshot": r.snapshot_id,
                "target_dir": str(r.target_dir),
                "recorded_at": r.recorded_at.isoformat(),
            }
            for r in records
        ]
        typer.echo(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())
    elif records:
        console.print(history_to_table(records))
    else:
        console.print("No backups recorded yet")
    return records


# =============================================================================
# VALIDATION
# =============================================================================

@app.command(name="validate-config")
def validate_config_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
    check_tools: bool = typer.Option(True, "--check-tools/--no-check-tools",
                                     help="Also check that rsync/zfs/restic are installed"),
) -> None:
    """[bold red]Validation[/bold red]: Validate the configuration file."""
    errors = validate_config(config, check_tools=check_tools)
    if errors:
        console.print("[red]✗[/red] Configuration has errors:")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)
    console.print("[green]✓[/green] Configuration is valid")


# =============================================================================
# ENTRY POINT
# =============================================================================

def main() -> None:  # pragma: no cover - entry point
    """Entry point for the snapmirror CLI application."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
