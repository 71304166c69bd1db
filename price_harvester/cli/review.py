"""
Review CLI Commands
===================

CLI commands for the quarantine correction workflow and the resolver.
"""

from __future__ import annotations

from typing import Optional

import typer
from rich import print as rprint
from rich.table import Table

from price_harvester.cli.common import colored, console, get_registry, open_database
from price_harvester.core.enums import BlockingErrorCode, QuarantineStatus
from price_harvester.db.repositories import (
    CatalogRepository,
    FeedRepository,
    SourceProductRepository,
)
from price_harvester.ingestion.quarantine import (
    BulkResult,
    QuarantineError,
    QuarantineFilter,
    QuarantineManager,
)
from price_harvester.ingestion.resolver import BatchResolution, ProductResolver

quarantine_app = typer.Typer(help="Quarantine correction workflow")
resolver_app = typer.Typer(help="Product resolution commands")


def _filters(session, feed: str | None, error_code: BlockingErrorCode | None) -> QuarantineFilter:
    """Build a filter, exiting if the named feed does not exist."""
    feed_id = None
    if feed:
        found = FeedRepository(session).get_by_name(feed)
        if found is None:
            rprint(f"[red]Error:[/red] Feed '{feed}' not found")
            raise typer.Exit(1)
        feed_id = found.id
    return QuarantineFilter(feed_id=feed_id, error_code=error_code)


@quarantine_app.command("list")
def list_quarantined(
    feed: Optional[str] = typer.Option(None, "--feed", "-f", help="Only records of this feed"),
    error_code: Optional[BlockingErrorCode] = typer.Option(
        None, "--code", "-c", help="Only records with this blocking error"
    ),
    status: QuarantineStatus = typer.Option(
        QuarantineStatus.QUARANTINED, "--status", "-s", help="Record status"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum records to show"),
    offset: int = typer.Option(0, "--offset", help="Records to skip"),
) -> None:
    """
    List quarantined records.

    Examples:
        price-harvester quarantine list
        price-harvester quarantine list --feed acme-daily --code missing_upc
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        records = manager.list_records(_filters(session, feed, error_code), status, limit, offset)

    if not records:
        rprint("[yellow]No records found[/yellow]")
        return

    table = Table(title="Quarantined Records")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Blocking Errors")
    table.add_column("Updated")

    for record in records:
        table.add_row(
            str(record.id),
            str(record.parsed_fields.get("name") or "-")[:40],
            colored(record.status.value),
            ", ".join(e.code.value for e in record.blocking_errors) or "-",
            record.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@quarantine_app.command("show")
def show_quarantined(
    record_id: str = typer.Argument(..., help="Quarantined record ID"),
) -> None:
    """
    Show a quarantined record with its corrections.

    Examples:
        price-harvester quarantine show 3f2c...
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        record = manager.repo.get_by_id(record_id)
        if record is None:
            rprint(f"[red]Error:[/red] Record '{record_id}' not found")
            raise typer.Exit(1)
        corrections = manager.repo.list_corrections(record.id)
        effective = manager.effective_fields(record)

    rprint(f"\n[bold]Record: {record.id}[/bold]")
    rprint(f"  Status: {colored(record.status.value)}")
    rprint(f"  Match key: {record.match_key}")
    if record.blocking_errors:
        rprint("\n[bold red]Blocking errors:[/bold red]")
        for error in record.blocking_errors:
            rprint(f"  • {error.code.value}: {error.message}")

    rprint("\n[bold]Effective fields:[/bold]")
    console.print_json(data=effective, default=str)

    if corrections:
        rprint("\n[bold]Corrections:[/bold]")
        for c in corrections:
            rprint(f"  #{c.sequence} {c.field_name}: {c.old_value!r} -> {c.new_value!r} ({c.author})")


@quarantine_app.command("correct")
def correct(
    record_id: str = typer.Argument(..., help="Quarantined record ID"),
    field_name: str = typer.Argument(..., help="Field to correct, e.g. upc or price"),
    value: str = typer.Argument(..., help="New value"),
    author: str = typer.Option("operator", "--author", "-a", help="Who made the correction"),
    reprocess: bool = typer.Option(False, "--reprocess", "-r", help="Reprocess after correcting"),
) -> None:
    """
    Record a field correction on a quarantined record.

    Examples:
        price-harvester quarantine correct 3f2c... upc 012345678905 --reprocess
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        try:
            correction = manager.apply_correction(record_id, field_name, value, author)
            result = manager.reprocess(record_id) if reprocess else None
        except QuarantineError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        if result is not None and result.resolved and result.source_product_id:
            ProductResolver(session, registry.resolver).resolve(result.source_product_id)
        session.commit()

    rprint(f"[green]Correction #{correction.sequence} recorded[/green] ({correction.field_name})")
    if result is not None:
        if result.resolved:
            rprint(f"[green]Resolved[/green] -> source product {result.source_product_id}")
        else:
            rprint("[yellow]Still quarantined:[/yellow]")
            for message in result.missing:
                rprint(f"  • {message}")


@quarantine_app.command("reprocess")
def reprocess(
    record_id: str = typer.Argument(..., help="Quarantined record ID"),
) -> None:
    """
    Re-validate a record with its corrections.

    Examples:
        price-harvester quarantine reprocess 3f2c...
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        try:
            result = manager.reprocess(record_id)
        except QuarantineError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        if result.resolved and not result.skipped and result.source_product_id:
            ProductResolver(session, registry.resolver).resolve(result.source_product_id)
        session.commit()

    if result.skipped:
        rprint(f"[dim]Record is already {result.status.value}[/dim]")
    elif result.resolved:
        created = "created" if result.created else "updated"
        rprint(f"[green]Resolved[/green] -> source product {result.source_product_id} ({created})")
    else:
        rprint("[yellow]Still quarantined:[/yellow]")
        for message in result.missing:
            rprint(f"  • {message}")
        raise typer.Exit(1)


@quarantine_app.command("reprocess-all")
def reprocess_all(
    feed: Optional[str] = typer.Option(None, "--feed", "-f", help="Only records of this feed"),
    error_code: Optional[BlockingErrorCode] = typer.Option(
        None, "--code", "-c", help="Only records with this blocking error"
    ),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum records to touch"),
) -> None:
    """
    Reprocess every quarantined record matching a filter.

    Examples:
        price-harvester quarantine reprocess-all --feed acme-daily
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        result = manager.reprocess_all(_filters(session, feed, error_code), limit)
        if result.resolved_product_ids:
            ProductResolver(session, registry.resolver).resolve_batch(result.resolved_product_ids)
        session.commit()

    _display_bulk("Resolved", result)


@quarantine_app.command("dismiss")
def dismiss(
    record_id: str = typer.Argument(..., help="Quarantined record ID"),
    note: str = typer.Option(..., "--note", help="Why the record is dismissed"),
    author: str = typer.Option("operator", "--author", "-a", help="Who dismissed it"),
) -> None:
    """
    Dismiss a quarantined record.

    Examples:
        price-harvester quarantine dismiss 3f2c... --note "Discontinued product"
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        try:
            dismissed = manager.dismiss(record_id, note, author)
        except QuarantineError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        session.commit()

    if dismissed:
        rprint("[green]Record dismissed[/green]")
    else:
        rprint("[dim]Record was already resolved or dismissed[/dim]")


@quarantine_app.command("dismiss-all")
def dismiss_all(
    note: str = typer.Option(..., "--note", help="Why the records are dismissed"),
    feed: Optional[str] = typer.Option(None, "--feed", "-f", help="Only records of this feed"),
    error_code: Optional[BlockingErrorCode] = typer.Option(
        None, "--code", "-c", help="Only records with this blocking error"
    ),
    author: str = typer.Option("operator", "--author", "-a", help="Who dismissed them"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum records to touch"),
) -> None:
    """
    Dismiss every quarantined record matching a filter.

    Examples:
        price-harvester quarantine dismiss-all --feed acme-daily --note "Retailer feed retired"
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        manager = QuarantineManager(session, registry.quarantine)
        try:
            result = manager.dismiss_all(note, author, _filters(session, feed, error_code), limit)
        except QuarantineError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        session.commit()

    _display_bulk("Dismissed", result)


def _display_bulk(verb: str, result: BulkResult) -> None:
    """Display a bulk operation result."""
    rprint(f"[bold]Matched:[/bold] {result.matched}")
    rprint(f"[bold]{verb}:[/bold] {result.affected}")
    if result.limit_applied:
        rprint("[yellow]Limit reached; run again to process the remaining records[/yellow]")


# Resolver subcommands


@resolver_app.command("run")
def run_resolver(
    feed: Optional[str] = typer.Option(None, "--feed", "-f", help="Resolve all products of this feed"),
    limit: int = typer.Option(1000, "--limit", "-n", help="Maximum products to resolve"),
) -> None:
    """
    Resolve source products to canonical products.

    Without --feed, re-resolves links made by other resolver versions.

    Examples:
        price-harvester resolver run
        price-harvester resolver run --feed acme-daily
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        resolver = ProductResolver(session, registry.resolver)
        if feed:
            found = FeedRepository(session).get_by_name(feed)
            if found is None:
                rprint(f"[red]Error:[/red] Feed '{feed}' not found")
                raise typer.Exit(1)
            ids = SourceProductRepository(session).list_ids(found.id, limit=limit)
            summary = resolver.resolve_batch(ids)
        else:
            summary = resolver.resolve_stale(limit)
        session.commit()

    _display_resolution(summary)


def _display_resolution(summary: BatchResolution) -> None:
    """Display a resolver batch summary."""
    table = Table(title=f"Resolver {summary.resolver_version}")
    table.add_column("Outcome", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("Total", str(summary.total))
    table.add_row(colored("matched"), str(summary.matched))
    table.add_row(colored("needs_review"), str(summary.needs_review))
    table.add_row(colored("unmatched"), str(summary.unmatched))
    table.add_row("Unchanged", str(summary.unchanged))
    table.add_row("Missing", str(len(summary.missing)))
    console.print(table)


@resolver_app.command("link")
def link_product(
    source_product_id: str = typer.Argument(..., help="Source product ID"),
    product_id: str = typer.Argument(..., help="Canonical product ID"),
    reason: str = typer.Option("operator", "--reason", "-r", help="Why the link was made"),
) -> None:
    """
    Pin a source product to a canonical product.

    Manual links are never replaced by later matching.

    Examples:
        price-harvester resolver link <source-product-id> <product-id> --reason "same box, new UPC"
    """
    registry = get_registry()
    with open_database() as database, database.session() as session:
        if SourceProductRepository(session).get_by_id(source_product_id) is None:
            rprint(f"[red]Error:[/red] Source product {source_product_id} not found")
            raise typer.Exit(1)
        product = CatalogRepository(session).get_by_id(product_id)
        if product is None:
            rprint(f"[red]Error:[/red] Canonical product {product_id} not found")
            raise typer.Exit(1)
        ProductResolver(session, registry.resolver).set_manual_link(
            source_product_id, product_id, reason
        )
        session.commit()

    rprint(f"[green]Linked[/green] {source_product_id} -> {product.name}")
