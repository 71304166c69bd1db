"""Shared helpers for CLI commands."""

from collections.abc import Generator
from contextlib import contextmanager

import typer
from rich import print as rprint
from rich.console import Console

from price_harvester.db.engine import Database
from price_harvester.ingestion.config import (
    ConfigurationError,
    HarvesterRegistry,
    load_registry,
)

console = Console()

STATUS_COLORS = {
    "enabled": "green",
    "succeeded": "green",
    "resolved": "green",
    "matched": "green",
    "running": "blue",
    "paused": "yellow",
    "skipped": "yellow",
    "quarantined": "yellow",
    "needs_review": "yellow",
    "disabled": "dim",
    "dismissed": "dim",
    "failed": "red",
    "unmatched": "red",
}


def colored(value: str | None) -> str:
    """Wrap a status value in its rich color markup."""
    if value is None:
        return "-"
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def get_registry() -> HarvesterRegistry:
    """Load configuration, exiting with a message on errors."""
    try:
        return load_registry()
    except (ConfigurationError, FileNotFoundError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@contextmanager
def open_database() -> Generator[Database, None, None]:
    """Database client from DATABASE_URL, disposed on exit."""
    database = Database.from_env()
    try:
        yield database
    finally:
        database.dispose()
