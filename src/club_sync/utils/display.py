"""
Rich Terminal Display Components.

Provides console UI for:
- Live per-entity-type progress
- Run summary tables
- Tracking status and pending changes
- Status messages
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
)
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from club_sync.connectors.tracking import FieldChange, TrackingCounts
    from club_sync.core.engine import RunResult
    from club_sync.core.field_changes import DetectionResult
    from club_sync.core.reconciler import SyncResult


console = Console()


class ProgressDisplay:
    """
    Live progress of a forward run, one bar per entity type.

    Example:
        with ProgressDisplay() as display:
            display.start(["team", "member"])
            result = await engine.run(on_progress=display.update)
    """

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description:<18}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            console=console,
        )
        self._live: Live | None = None
        self._tasks: dict[str, Any] = {}
        self._current = ""
        self._failed: dict[str, int] = {}

    def start(self, entity_types: list[str]) -> None:
        for name in entity_types:
            self._tasks[name] = self.progress.add_task(name, total=None)

        self._live = Live(self._build_display(), console=console, refresh_per_second=4)
        self._live.start()

    def stop(self) -> None:
        if self._live:
            self._live.stop()
            self._live = None

    def update(self, result: SyncResult) -> None:
        """Progress callback for the reconciler."""
        task_id = self._tasks.get(result.entity_type)
        if task_id is None:
            task_id = self._tasks[result.entity_type] = self.progress.add_task(
                result.entity_type, total=None
            )

        to_sync = result.total - result.skipped
        done = result.synced + result.failed
        self.progress.update(task_id, total=max(to_sync, 1), completed=done if to_sync else 1)
        self._current = result.entity_type
        self._failed[result.entity_type] = result.failed

        if self._live:
            self._live.update(self._build_display())

    def _build_display(self) -> Panel:
        status = Text()
        if self._current:
            status.append("Current: ", style="dim")
            status.append(self._current, style="bold cyan")
        failed = sum(self._failed.values())
        if failed:
            status.append(f"  failed: {failed}", style="red")

        return Panel(
            Group(self.progress, Text(), status),
            title="[bold white]Club Sync[/bold white]",
            border_style="blue",
            padding=(1, 2),
        )

    def __enter__(self) -> "ProgressDisplay":
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def print_summary(run: RunResult) -> None:
    """Print the per-entity-type results of a forward run."""
    table = Table(title="Sync Summary", border_style="green")

    table.add_column("Entity", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Time", justify="right")

    for name, result in run.results.items():
        failed = f"[red]{result.failed}[/red]" if result.failed else "0"
        table.add_row(
            name,
            f"{result.total:,}",
            f"{result.created:,}",
            f"{result.updated:,}",
            f"{result.skipped:,}",
            f"{result.deleted:,}",
            failed,
            format_duration(result.duration_seconds),
        )

    console.print(table)

    for orphan in run.untracked:
        if orphan.deleted or orphan.errors:
            print_info(f"{orphan.scope}: removed {orphan.deleted} untracked remote object(s)")
    if run.list_fields is not None:
        print_info(f"Captured {run.list_fields} mailing-list field definition(s)")
    if run.cancelled:
        print_warning("Run was cancelled; remaining entities stay pending")


def print_errors(run: RunResult, limit: int = 20) -> None:
    """Print entity errors, then warnings, in sync order."""
    errors = [(name, e) for name, r in run.results.items() for e in r.errors]
    errors += [(o.scope, e) for o in run.untracked for e in o.errors]

    for name, error in errors[:limit]:
        print_error(f"{name} {error}")
    if len(errors) > limit:
        print_error(f"... and {len(errors) - limit} more")

    for name, result in run.results.items():
        for warning in result.warnings:
            print_warning(f"{name} {warning}")


def print_status(counts: list[TrackingCounts]) -> None:
    table = Table(title="Tracking Status", border_style="blue")
    table.add_column("Entity", style="cyan")
    table.add_column("Tracked", justify="right")
    table.add_column("Synced", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Never synced", justify="right")

    for c in counts:
        table.add_row(
            c.entity_type,
            f"{c.total:,}",
            f"{c.synced:,}",
            f"{c.pending:,}",
            f"{c.never_synced:,}",
        )
    console.print(table)


def print_changes(changes: list[FieldChange], title: str = "Pending Changes") -> None:
    table = Table(title=title, border_style="yellow")
    table.add_column("Member", style="cyan")
    table.add_column("Field")
    table.add_column("Stage", style="dim")
    table.add_column("Old")
    table.add_column("New", style="green")
    table.add_column("Detected", style="dim")

    for change in changes:
        table.add_row(
            change.entity_key,
            change.field_name,
            change.target_stage,
            format_value(change.old_value),
            format_value(change.new_value),
            change.detected_at or "",
        )
    console.print(table)


def print_detection(result: DetectionResult) -> None:
    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="dim")
    summary.add_column(justify="right")
    summary.add_row("Run:", result.run_id)
    summary.add_row("People checked:", f"{result.checked:,}")
    summary.add_row("Not tracked:", f"{result.unmatched:,}")
    summary.add_row("Changes recorded:", f"{len(result.changes):,}")
    summary.add_row("Own writes skipped:", f"{result.skipped_own_writes:,}")
    summary.add_row("Duplicates skipped:", f"{result.skipped_duplicates:,}")
    console.print(Panel(summary, title="Change Detection", border_style="blue"))


def format_value(value: Any) -> str:
    if value is None:
        return "[dim]-[/dim]"
    return str(value)


def format_duration(seconds: float) -> str:
    """Format seconds as a short human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
