"""
Feed CLI Commands
=================

CLI commands for feeds, runs, the scheduler and the worker.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.table import Table

from price_harvester.cli.common import colored, console, get_registry, open_database
from price_harvester.core.enums import FeedStatus, RunStatus, RunTrigger
from price_harvester.db.engine import Database
from price_harvester.db.repositories import FeedRepository, FeedRunRepository
from price_harvester.ingestion.config import HarvesterRegistry
from price_harvester.ingestion.errors import FeedError
from price_harvester.ingestion.fetcher import TransportFetcher
from price_harvester.ingestion.notifications import build_emitter
from price_harvester.ingestion.parser import FeedParser
from price_harvester.ingestion.queue import ArqWorkQueue
from price_harvester.ingestion.runner import FeedRunner, RunOutcome
from price_harvester.ingestion.scheduler import FeedScheduler, prune_runs
from price_harvester.ingestion.storage import get_default_storage
from price_harvester.services.feed_service import FeedNotFoundError, FeedService

feeds_app = typer.Typer(help="Feed management commands")
runs_app = typer.Typer(help="Feed run history commands")
scheduler_app = typer.Typer(help="Scheduler commands")


# Feeds subcommands


@feeds_app.command("sync")
def sync_feeds() -> None:
    """
    Create or update feeds declared in the configuration file.

    Examples:
        price-harvester feeds sync
    """
    registry = get_registry()
    definitions = registry.list_feeds()
    if not definitions:
        rprint("[yellow]No feeds declared[/yellow]")
        rprint("\nAdd feeds to config/harvester.yaml")
        return

    with open_database() as database, database.session() as session:
        result = FeedService(session).sync(definitions)
        session.commit()

    for name in result.retailers_created:
        rprint(f"  [green]+[/green] retailer {name}")
    for name in result.created:
        rprint(f"  [green]+[/green] feed {name}")
    for name in result.updated:
        rprint(f"  [blue]~[/blue] feed {name}")
    rprint(f"\n[bold]Synced {len(definitions)} feeds[/bold]")


@feeds_app.command("list")
def list_feeds(
    status: Optional[FeedStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
) -> None:
    """
    List feeds with their schedule and health.

    Examples:
        price-harvester feeds list
        price-harvester feeds list --status failed
    """
    with open_database() as database, database.session() as session:
        feeds = FeedRepository(session).list_all(status)

    if not feeds:
        rprint("[yellow]No feeds found[/yellow]")
        return

    table = Table(title="Feeds")
    table.add_column("Name", style="bold")
    table.add_column("Transport")
    table.add_column("Format")
    table.add_column("Status")
    table.add_column("Every")
    table.add_column("Next Run")
    table.add_column("Failures", justify="right")
    table.add_column("Last Success")

    for feed in feeds:
        next_run = feed.next_run_at.strftime("%Y-%m-%d %H:%M") if feed.next_run_at else "-"
        if feed.manual_run_pending:
            next_run += " [cyan](manual)[/cyan]"
        last_success = (
            feed.last_success_at.strftime("%Y-%m-%d %H:%M") if feed.last_success_at else "-"
        )
        table.add_row(
            feed.name,
            feed.transport.value,
            feed.format.value,
            colored(feed.status.value),
            f"{feed.schedule_frequency_hours}h",
            next_run,
            str(feed.consecutive_failures),
            last_success,
        )

    console.print(table)


@feeds_app.command("trigger")
def trigger_feed(
    name: str = typer.Argument(..., help="Feed name"),
    now: bool = typer.Option(False, "--now", help="Run inline instead of waiting for the worker"),
) -> None:
    """
    Request a manual run of a feed.

    Manual runs bypass the schedule and are allowed for paused,
    disabled and failed feeds.

    Examples:
        price-harvester feeds trigger acme-daily
        price-harvester feeds trigger acme-daily --now
    """
    registry = get_registry()
    with open_database() as database:
        with database.session() as session:
            try:
                feed = FeedService(session).request_manual_run(name)
            except FeedNotFoundError as e:
                rprint(f"[red]Error:[/red] {e}")
                raise typer.Exit(1)
            session.commit()

        if not now:
            rprint(f"[green]Manual run requested for {name}[/green]")
            rprint("\nThe worker picks it up on its next drain cycle.")
            return

        rprint(f"\n[bold]Running feed:[/bold] {name}\n")
        with console.status("[bold blue]Running...[/bold blue]"):
            outcome = asyncio.run(_run_inline(database, registry, feed.id))

    _display_outcome(outcome)
    if outcome.status == RunStatus.FAILED:
        raise typer.Exit(1)


async def _run_inline(database: Database, registry: HarvesterRegistry, feed_id: UUID) -> RunOutcome:
    emitter = build_emitter(
        registry.notifications.webhook_url, timeout=registry.notifications.webhook_timeout
    )
    runner = FeedRunner.from_registry(
        database,
        registry,
        upload_storage=get_default_storage(registry.fetch.upload_dir),
        emitter=emitter,
    )
    try:
        return await runner.run(feed_id, RunTrigger.MANUAL, attempt=1, max_attempts=1)
    finally:
        await emitter.close()


@feeds_app.command("test-fetch")
def test_fetch(
    name: str = typer.Argument(..., help="Feed name"),
) -> None:
    """
    Fetch a feed with the interactive timeout and preview the parse.

    Nothing is written to the database.

    Examples:
        price-harvester feeds test-fetch acme-daily
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        feed = FeedRepository(session).get_by_name(name)
    if feed is None:
        rprint(f"[red]Error:[/red] Feed '{name}' not found")
        raise typer.Exit(1)

    fetch = registry.fetch
    fetcher = TransportFetcher(
        user_agent=fetch.user_agent,
        timeout=fetch.scheduled_timeout,
        interactive_timeout=fetch.interactive_timeout,
        max_file_size_bytes=feed.max_file_size_bytes or fetch.max_file_size_bytes,
        upload_storage=get_default_storage(fetch.upload_dir),
    )

    try:
        with console.status(f"[bold blue]Fetching {name}...[/bold blue]"):
            result = asyncio.run(fetcher.test_fetch(feed))
    except FeedError as e:
        rprint(f"[red]Fetch failed:[/red] {e.code.value} ({e.kind.value}): {e}")
        raise typer.Exit(1)

    parsed = FeedParser(max_rows=feed.max_rows).parse(result.content, result.detected_format or feed.format)

    rprint("\n[bold]Fetch:[/bold]")
    rprint(f"  Size: {result.size_bytes} bytes")
    rprint(f"  Content type: {result.content_type or '-'}")
    rprint(f"  Detected format: {result.detected_format.value if result.detected_format else 'unknown'}")
    rprint(f"  Hash: {result.content_hash[:16]}")

    rprint("\n[bold]Parse preview:[/bold]")
    rprint(f"  Rows read: {parsed.rows_read}")
    rprint(f"  Rows parsed: {parsed.rows_parsed}")
    if parsed.errors:
        rprint(f"\n[bold red]Errors ({len(parsed.errors)}):[/bold red]")
        for error in parsed.errors[:10]:
            row = f"row {error.row_number}: " if error.row_number else ""
            rprint(f"  • {row}{error.code.value} {error.message}")
        if len(parsed.errors) > 10:
            rprint(f"  ... and {len(parsed.errors) - 10} more")

    if parsed.records:
        table = Table(title="First records")
        table.add_column("Row", justify="right")
        table.add_column("Name")
        table.add_column("Price", justify="right")
        table.add_column("UPC")
        table.add_column("SKU")
        for record in parsed.records[:5]:
            table.add_row(
                str(record.row_number),
                record.name[:50],
                f"{record.price} {record.currency}",
                record.upc or "-",
                record.sku or "-",
            )
        console.print(table)


@feeds_app.command("upload")
def upload_feed(
    name: str = typer.Argument(..., help="Feed name"),
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to upload"),
) -> None:
    """
    Store a file for an upload feed and request a manual run.

    Examples:
        price-harvester feeds upload acme-push ./acme.csv
    """
    registry = get_registry()
    storage = get_default_storage(registry.fetch.upload_dir)
    with open_database() as database, database.session() as session:
        try:
            metadata = FeedService(session).upload(name, file.name, file.read_bytes(), storage)
        except (FeedNotFoundError, ValueError) as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        session.commit()

    rprint(f"[green]Uploaded {metadata.filename}[/green] ({metadata.size_bytes} bytes)")
    rprint(f"  Stored at: {metadata.file_path}")
    rprint("  Manual run requested")


# Runs subcommands


@runs_app.command("list")
def list_runs(
    feed: Optional[str] = typer.Option(None, "--feed", "-f", help="Only runs of this feed"),
    status: Optional[RunStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to show"),
) -> None:
    """
    List recent feed runs.

    Examples:
        price-harvester runs list
        price-harvester runs list --feed acme-daily
    """
    with open_database() as database, database.session() as session:
        feed_names = {f.id: f.name for f in FeedRepository(session).list_all()}
        runs_repo = FeedRunRepository(session)
        if feed:
            feed_id = next((fid for fid, fname in feed_names.items() if fname == feed), None)
            if feed_id is None:
                rprint(f"[red]Error:[/red] Feed '{feed}' not found")
                raise typer.Exit(1)
            runs = [r for r in runs_repo.list_for_feed(feed_id, limit) if not status or r.status == status]
        else:
            runs = runs_repo.list_recent(limit, status)

    if not runs:
        rprint("[yellow]No runs found[/yellow]")
        return

    table = Table(title="Feed Runs")
    table.add_column("Started")
    table.add_column("Feed", style="bold")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Prices", justify="right")
    table.add_column("Quarantined", justify="right")
    table.add_column("Detail")

    for run in runs:
        if run.skipped_reason:
            detail = run.skipped_reason.value
        elif run.error_code:
            detail = run.error_code.value
        else:
            detail = ""
        table.add_row(
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            feed_names.get(run.feed_id, str(run.feed_id)[:8]),
            run.trigger.value,
            colored(run.status.value),
            str(run.row_count),
            str(run.prices_written),
            str(run.quarantined_count),
            detail,
        )

    console.print(table)


@runs_app.command("prune")
def prune(
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Retention in days"),
) -> None:
    """
    Delete finished runs older than the retention window.

    Examples:
        price-harvester runs prune
        price-harvester runs prune --days 7
    """
    registry = get_registry()
    retention = days if days is not None else registry.scheduler.retention_days
    with open_database() as database:
        deleted = prune_runs(database, retention, registry.scheduler.prune_batch_size)
    rprint(f"[green]Deleted {deleted} runs older than {retention} days[/green]")


# Scheduler subcommands


async def _with_scheduler(registry: HarvesterRegistry, database: Database, manual: bool) -> list:
    queue = await ArqWorkQueue.connect(registry.queue)
    try:
        scheduler = FeedScheduler(database, queue, registry.scheduler)
        if manual:
            return await scheduler.drain_manual_runs()
        return await scheduler.tick()
    finally:
        await queue.close()


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """
    Claim due feeds once and enqueue their runs.

    Examples:
        price-harvester scheduler tick
    """
    registry = get_registry()
    with open_database() as database:
        enqueued = asyncio.run(_with_scheduler(registry, database, manual=False))
    _display_enqueued(enqueued)


@scheduler_app.command("drain")
def scheduler_drain() -> None:
    """
    Enqueue pending manual runs once.

    Examples:
        price-harvester scheduler drain
    """
    registry = get_registry()
    with open_database() as database:
        enqueued = asyncio.run(_with_scheduler(registry, database, manual=True))
    _display_enqueued(enqueued)


def worker(
    burst: bool = typer.Option(False, "--burst", help="Run in burst mode (exit when queue empty)"),
) -> None:
    """
    Start the arq worker.

    The worker runs queued feed jobs and the periodic scheduler.

    Examples:
        price-harvester worker
        price-harvester worker --burst
    """
    from arq import run_worker

    from price_harvester.ingestion.jobs import WorkerSettings

    rprint("[bold]Starting harvester worker...[/bold]")
    rprint("Press Ctrl+C to stop\n")
    run_worker(WorkerSettings, burst=burst)


def _display_enqueued(enqueued: list) -> None:
    """Display runs handed to the queue."""
    if not enqueued:
        rprint("[dim]Nothing to enqueue[/dim]")
        return
    for run in enqueued:
        mark = "[green]enqueued[/green]" if run.enqueued else "[yellow]already queued[/yellow]"
        rprint(f"  {run.job_id}: {mark}")


def _display_outcome(outcome: RunOutcome) -> None:
    """Display a run outcome."""
    status = outcome.status.value if outcome.status else "skipped"

    rprint("[bold]Results:[/bold]")
    rprint(f"  Status: {colored(status)}")
    if outcome.run_id:
        rprint(f"  Run: {outcome.run_id}")
    if outcome.skipped_reason:
        rprint(f"  Skipped: {outcome.skipped_reason.value}")
    if outcome.skip_note:
        rprint(f"  Note: {outcome.skip_note}")
    if outcome.error_code:
        rprint(f"  [red]Error: {outcome.error_code.value}[/red] {outcome.error_message or ''}")

    rprint("\n[bold]Statistics:[/bold]")
    rprint(f"  Rows read: {outcome.rows_read}")
    rprint(f"  Rows parsed: {outcome.rows_parsed}")
    rprint(f"  Products upserted: {outcome.products_upserted}")
    rprint(f"  Prices written: {outcome.prices_written}")
    rprint(f"  Prices unchanged: {outcome.prices_unchanged}")
    rprint(f"  Quarantined: {outcome.quarantined}")
    rprint(f"  Resolved: {outcome.resolved}")
    if outcome.auto_disabled:
        rprint("\n[bold red]Feed auto-disabled after repeated failures[/bold red]")
