"""
Club Sync CLI - Command Line Interface.

Commands:
    sync             Sync the latest snapshot to every configured target
    import-snapshot  Validate and store a source snapshot
    detect-changes   Record directory edits that must go back to the source
    pending          List field changes waiting to be pushed
    status           Show tracking counts per entity type
    config           Manage configuration
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from club_sync import __version__
from club_sync.config import Settings, load_settings
from club_sync.connectors.tracking import TrackingStore
from club_sync.core.concurrency import install_signal_handlers
from club_sync.core.engine import RunResult, SyncEngine
from club_sync.core.field_changes import DetectionResult
from club_sync.core.reconciler import ProgressCallback
from club_sync.entities import ENTITY_TYPES, SYNC_ORDER
from club_sync.errors import SyncError
from club_sync.utils.display import (
    ProgressDisplay,
    print_changes,
    print_detection,
    print_error,
    print_errors,
    print_info,
    print_status,
    print_success,
    print_summary,
    print_warning,
)
from club_sync.utils.logger import setup_logging


app = typer.Typer(
    name="club-sync",
    help="Sync the member administration to the club directory, mailing list and helpdesk.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

_NOT_SET = "[dim]not set[/dim]"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]club-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Club Sync - member administration synchronization."""


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file (TOML or JSON).",
    exists=True,
    dir_okay=False,
)
TrackingDbOption = typer.Option(
    None,
    "--tracking-db",
    help="Path to the tracking store (overrides config).",
    dir_okay=False,
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Debug logging.")
QuietOption = typer.Option(False, "--quiet", "-q", help="Minimal output.")


# =============================================================================
# SYNC Command
# =============================================================================
@app.command()
def sync(
    entity: Optional[list[str]] = typer.Option(
        None,
        "--entity",
        "-e",
        help=f"Entity type to sync (can be repeated): {', '.join(SYNC_ORDER)}.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Sync every tracked entity even when nothing changed.",
    ),
    config_file: Optional[Path] = ConfigOption,
    tracking_db: Optional[Path] = TrackingDbOption,
    verbose: bool = VerboseOption,
    quiet: bool = QuietOption,
) -> None:
    """
    Sync the latest imported snapshot.

    Example:
        club-sync sync --entity member --entity parent
    """
    settings = _build_settings(config_file, tracking_db, verbose, quiet)
    display = ProgressDisplay() if not quiet and not verbose else None

    with TrackingStore(settings.tracking_db) as store:
        engine = SyncEngine(settings, store)
        try:
            if display:
                display.start(engine.select_entity_types(entity))
            result = asyncio.run(
                _run_sync(engine, entity, force, display.update if display else None)
            )
        except SyncError as e:
            print_error(e.message)
            raise typer.Exit(1)
        finally:
            if display:
                display.stop()

    if not quiet:
        console.print()
        print_summary(result)
    print_errors(result)

    if result.has_errors:
        print_warning(f"{result.error_count} error(s) occurred")
        raise typer.Exit(1)
    if not quiet:
        print_success("Sync completed successfully!")


async def _run_sync(
    engine: SyncEngine,
    entity: list[str] | None,
    force: bool,
    on_progress: ProgressCallback | None,
) -> RunResult:
    install_signal_handlers(engine.cancel_token)
    return await engine.run(entity_filter=entity, force=force, on_progress=on_progress)


# =============================================================================
# IMPORT-SNAPSHOT Command
# =============================================================================
@app.command("import-snapshot")
def import_snapshot(
    file: Path = typer.Argument(
        ...,
        help="Snapshot JSON document.",
        exists=True,
        dir_okay=False,
    ),
    config_file: Optional[Path] = ConfigOption,
    tracking_db: Optional[Path] = TrackingDbOption,
    verbose: bool = VerboseOption,
) -> None:
    """Validate a snapshot and store it as the latest."""
    settings = _build_settings(config_file, tracking_db, verbose, quiet=False)

    with TrackingStore(settings.tracking_db) as store:
        try:
            snapshot = SyncEngine(settings, store).import_snapshot(file.read_bytes())
        except SyncError as e:
            print_error(e.message)
            if verbose and isinstance(e.details, list):
                for detail in e.details[:10]:
                    print_info(f"{detail.get('loc')}: {detail.get('msg')}")
            raise typer.Exit(1)

    print_success(
        f"Imported {len(snapshot.members)} members, {len(snapshot.teams)} teams "
        f"and {len(snapshot.committees)} committees"
    )


# =============================================================================
# DETECT-CHANGES Command
# =============================================================================
@app.command("detect-changes")
def detect_changes(
    config_file: Optional[Path] = ConfigOption,
    tracking_db: Optional[Path] = TrackingDbOption,
    verbose: bool = VerboseOption,
    quiet: bool = QuietOption,
) -> None:
    """Record directory edits of reverse-synced fields as pending changes."""
    settings = _build_settings(config_file, tracking_db, verbose, quiet)

    with TrackingStore(settings.tracking_db) as store:
        try:
            result: DetectionResult = asyncio.run(SyncEngine(settings, store).detect_changes())
        except SyncError as e:
            print_error(e.message)
            raise typer.Exit(1)

    if not quiet:
        print_detection(result)
        if result.changes:
            print_changes(result.changes, title="New Changes")


# =============================================================================
# PENDING Command
# =============================================================================
@app.command()
def pending(
    member: Optional[str] = typer.Option(
        None,
        "--member",
        "-m",
        help="Only changes of this member id.",
    ),
    config_file: Optional[Path] = ConfigOption,
    tracking_db: Optional[Path] = TrackingDbOption,
) -> None:
    """List field changes waiting to be pushed to the source."""
    settings = _build_settings(config_file, tracking_db, verbose=False, quiet=True)

    with TrackingStore(settings.tracking_db) as store:
        changes = store.get_unsynced_changes(member)

    if not changes:
        print_info("No pending changes.")
        return
    print_changes(changes)


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    tracking_db: Optional[Path] = TrackingDbOption,
) -> None:
    """Show tracking counts per entity type."""
    settings = _build_settings(config_file, tracking_db, verbose=False, quiet=True)

    if not settings.tracking_db.exists():
        print_info("No tracking store found. Import a snapshot and run a sync first.")
        raise typer.Exit(0)

    with TrackingStore(settings.tracking_db) as store:
        counts = [store.counts(name) for name in SYNC_ORDER]
        unsynced = len(store.get_unsynced_changes())
        detected = store.last_detection_at()
        has_snapshot = store.latest_snapshot() is not None

    print_status(counts)
    if not has_snapshot:
        print_warning("No snapshot imported yet")
    print_info(f"Pending reverse-sync changes: {unsynced}")
    print_info(f"Last change detection: {detected or 'never'}")


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with defaults.",
    ),
    output: Path = typer.Option(
        Path("club-sync.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Manage configuration."""
    if init:
        if output.exists():
            print_error(f"{output} already exists")
            raise typer.Exit(1)
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        print_info("Secrets are written as placeholders; set them via CLUB_SYNC_* variables.")
        return

    if show:
        settings = load_settings(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Tracking store", str(settings.tracking_db))
        table.add_row("Directory", settings.directory.base_url or _NOT_SET)
        table.add_row("Directory user", settings.directory.username or _NOT_SET)
        table.add_row("Mailing list", settings.mailing_list.list_id or _NOT_SET)
        table.add_row("Helpdesk", settings.helpdesk.base_url or _NOT_SET)
        table.add_row("Source portal", settings.portal.base_url or _NOT_SET)
        table.add_row("Retry attempts", str(settings.retry.max_attempts))
        table.add_row(
            "Pause between entities",
            f"{settings.rate_limit.min_delay}-{settings.rate_limit.max_delay}s",
        )
        table.add_row("Delete untracked", str(settings.sync.delete_untracked))
        console.print(table)

        for target in ("directory", "mailing_list", "helpdesk", "portal"):
            missing = settings.validate_credentials([target])
            state = "[red]incomplete[/red]" if missing else "[green]configured[/green]"
            console.print(f"  {target}: {state}")
        return

    console.print("Use --show to view config or --init to create a config file.")
    console.print(f"Entity types: {', '.join(f'{n} ({t.target})' for n, t in ENTITY_TYPES.items())}")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None,
    tracking_db: Path | None,
    verbose: bool,
    quiet: bool,
) -> Settings:
    """Load settings and configure logging."""
    try:
        settings = load_settings(config_file, tracking_db=tracking_db)
    except (ValueError, FileNotFoundError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    level = None
    if verbose:
        level = "DEBUG"
    elif quiet:
        level = "WARNING"

    setup_logging(settings.logging, level=level)
    return settings


if __name__ == "__main__":
    app()
