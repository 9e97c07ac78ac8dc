# Author: PB
# Maintainer: PB
# Original date: 2025.05.17
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/system/display.py

# Standard library imports
from datetime import datetime, UTC
from typing import Optional

# Third-party imports
import humanize
from rich.console import Console
from rich.table import Table

# Local imports
from snapmirror.core.driver import RunSummary
from snapmirror.core.models import BackupRecord, ReconcileEvent, ReconcileMode

# Stages printed without --verbose
_DEFAULT_STAGES = frozenset({"start", "mode", "plan", "recorded", "baseline_check_failed"})

_MODE_STYLES = {
    ReconcileMode.FULL: "[bold cyan]full[/bold cyan]",
    ReconcileMode.INCREMENTAL: "[green]incremental[/green]",
    ReconcileMode.SKIP: "[dim]unchanged[/dim]",
}


class EventPrinter:
    """Render reconciler events as console lines."""

    def __init__(self, console: Console, verbose: bool = False, quiet: bool = False) -> None:
        self.console = console
        self.verbose = verbose
        self.quiet = quiet

    def __call__(self, event: ReconcileEvent) -> None:
        if self.quiet:
            return
        if event.stage == "start":
            self.console.print(f"\n[bold]=== {event.message} ===[/bold]")
        elif event.stage == "baseline_check_failed":
            self.console.print(f"[yellow]![/yellow] {event.message}")
        elif self.verbose or event.stage in _DEFAULT_STAGES:
            self.console.print(f"  {event.message}")


def summary_to_table(summary: RunSummary) -> Table:
    """Convert a run summary to a rich Table for display."""
    table = Table(title="Backup summary")
    table.add_column("Source")
    table.add_column("Kind")
    table.add_column("Result")
    table.add_column("Snapshot")

    for result in summary.results:
        if result.ok:
            outcome = result.outcome
            status = _MODE_STYLES[outcome.mode]
            if outcome.dry_run and outcome.mode is not ReconcileMode.SKIP:
                status += " [dim](dry run)[/dim]"
            snapshot = outcome.head
        else:
            status = f"[red]✗ {result.error_kind}[/red]"
            snapshot = result.error_message or ""
        table.add_row(result.source_name, result.source_kind.value, status, snapshot)

    return table


def display_summary(console: Console, summary: RunSummary) -> None:
    console.print()
    console.print(summary_to_table(summary))
    line = (f"{summary.succeeded} backed up, {summary.skipped} unchanged, "
            f"{summary.failed} failed")
    if summary.failed:
        console.print(f"[red]✗[/red] {line}")
    else:
        console.print(f"[green]✓[/green] {line}")


def history_to_table(records: list[BackupRecord], now: Optional[datetime] = None) -> Table:
    """Convert backup history records to a rich Table for display."""
    now = now or datetime.now(UTC)
    table = Table(title="Backup history")
    table.add_column("Recorded")
    table.add_column("Kind")
    table.add_column("Source")
    table.add_column("Snapshot")
    table.add_column("Target")

    for record in records:
        recorded_at = record.recorded_at
        if recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=UTC)
        when = (f"{recorded_at:%Y-%m-%d %H:%M:%S} "
                f"[dim]({humanize.naturaltime(now - recorded_at)})[/dim]")
        table.add_row(when, record.source_kind.value, record.source_name,
                      record.snapshot_id, str(record.target_dir))

    return table
