"""
Ingestion CLI Commands
======================

CLI commands for running the announcement ingestion pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from civic_ingest.db.engine import get_session, session_scope
from civic_ingest.ingestion.geocoding.gtfs import import_gtfs_stops
from civic_ingest.ingestion.jobs import IngestOptions, IngestOrchestrator, RunSummary, log_summary
from civic_ingest.ingestion.registry import get_default_registry

logger = logging.getLogger(__name__)

console = Console()
ingest_app = typer.Typer(help="Ingestion pipeline commands")
localities_app = typer.Typer(help="Locality commands")

ingest_app.add_typer(localities_app, name="localities")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else get_default_registry().global_config.log_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


@ingest_app.command("run")
def run_ingestion(
    boundaries: Optional[Path] = typer.Option(
        None, "--boundaries", "-b", help="GeoJSON file with the service-area boundaries"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be ingested"),
    source_type: Optional[str] = typer.Option(None, "--source-type", "-t", help="Only ingest this source type"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum sources to load"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Ingest crawled source documents into messages.

    Examples:
        civic-ingest ingest run --boundaries=sofia.geojson --dry-run
        civic-ingest ingest run -t rayon-oborishte-bg -l 20
    """
    _configure_logging(verbose)

    if boundaries is not None and not boundaries.exists():
        rprint(f"[red]Error:[/red] Boundaries file not found: {boundaries}")
        raise typer.Exit(1)

    options = IngestOptions(
        boundaries_path=boundaries,
        dry_run=dry_run,
        source_type=source_type,
        limit=limit,
    )

    rprint("\n[bold]Starting ingestion[/bold]")
    if boundaries:
        rprint(f"  Boundaries: {boundaries}")
    if source_type:
        rprint(f"  Source type: {source_type}")
    if limit:
        rprint(f"  Limit: {limit}")
    if dry_run:
        rprint("  [yellow]Dry run: nothing will be written[/yellow]")

    try:
        with get_session() as session:
            orchestrator = IngestOrchestrator(session)
            summary = asyncio.run(orchestrator.run(options))
    except Exception as e:
        logger.exception("Ingestion run failed")
        rprint(f"\n[red]Error:[/red] Ingestion failed: {e}")
        raise typer.Exit(1)

    log_summary(summary)
    _display_summary(summary)


def _display_summary(summary: RunSummary) -> None:
    """Display the run summary in a formatted table."""
    table = Table(title="Ingestion Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")

    table.add_row("Total sources", str(summary.total))
    table.add_row("Too old", str(summary.too_old))
    table.add_row("Within bounds", str(summary.within_bounds))
    table.add_row("Outside bounds", str(summary.outside_bounds))
    table.add_row("Already ingested", str(summary.already_ingested))
    table.add_row("Max retries reached", str(summary.max_retries_reached))

    if summary.dry_run:
        table.add_row("Would ingest", f"[bold]{summary.would_ingest}[/bold]")
    else:
        table.add_row("Ingested", f"[green]{summary.ingested}[/green]")
        table.add_row("Messages created", str(summary.messages_created))
        table.add_row("Filtered", f"{summary.filtered} ({summary.filter_percentage}%)")
        table.add_row("Failed", f"[red]{summary.failed}[/red]" if summary.failed else "0")

    console.print()
    console.print(table)

    if summary.duration_seconds is not None:
        rprint(f"  Duration: {summary.duration_seconds:.1f}s")

    if summary.errors:
        rprint(f"\n[bold red]Errors ({len(summary.errors)}):[/bold red]")
        for error in summary.errors[:10]:
            rprint(f"  • {error['url']}: {error['error']}")
        if len(summary.errors) > 10:
            rprint(f"  ... and {len(summary.errors) - 10} more")


@ingest_app.command("import-gtfs")
def import_gtfs(
    stops_file: Path = typer.Argument(..., help="Path to a GTFS stops.txt file"),
) -> None:
    """
    Load bus stops from a GTFS stops.txt file.

    Examples:
        civic-ingest ingest import-gtfs data/gtfs/stops.txt
    """
    if not stops_file.exists():
        rprint(f"[red]Error:[/red] File not found: {stops_file}")
        raise typer.Exit(1)

    with session_scope() as session:
        count = import_gtfs_stops(session, stops_file)

    rprint(f"[green]Imported {count} stops[/green] from {stops_file}")


@localities_app.command("list")
def list_localities() -> None:
    """
    List configured localities.

    Examples:
        civic-ingest ingest localities list
    """
    registry = get_default_registry()

    table = Table(title="Localities")
    table.add_column("Code", style="cyan")
    table.add_column("City")
    table.add_column("Time zone")
    table.add_column("Bounds (S, W, N, E)")

    for locality in registry.list_localities():
        table.add_row(
            locality.code,
            f"{locality.city}, {locality.country}",
            locality.timezone,
            locality.overpass_bbox,
        )

    console.print(table)
    if registry.config_path:
        rprint(f"[dim]Loaded from {registry.config_path}[/dim]")
