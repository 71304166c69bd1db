"""Price Harvester CLI using Typer."""

import logging
from pathlib import Path

import typer
from dotenv import load_dotenv

from price_harvester.cli.feeds import feeds_app, runs_app, scheduler_app, worker
from price_harvester.cli.review import quarantine_app, resolver_app

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

app = typer.Typer(
    name="price-harvester",
    help="Price Harvester - scheduled retailer feed ingestion and price history",
    add_completion=False,
)
app.add_typer(feeds_app, name="feeds")
app.add_typer(runs_app, name="runs")
app.add_typer(quarantine_app, name="quarantine")
app.add_typer(resolver_app, name="resolver")
app.add_typer(scheduler_app, name="scheduler")
app.command("worker")(worker)

__version__ = "0.1.0"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def init_db() -> None:
    """Initialize the database (create tables)."""
    from price_harvester.db.engine import Database

    typer.echo("Initializing database...")
    database = Database.from_env()
    try:
        database.create_all()
    finally:
        database.dispose()
    typer.echo("Database initialized successfully!")


@app.command()
def migrate() -> None:
    """Apply Alembic migrations up to the latest revision."""
    from price_harvester.db.engine import Database

    typer.echo("Running migrations...")
    database = Database.from_env()
    try:
        database.run_migrations()
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        database.dispose()
    typer.echo("Database is up to date!")


@app.command()
def version() -> None:
    """Show the Price Harvester version."""
    typer.echo(f"Price Harvester v{__version__}")


@app.command()
def check_config() -> None:
    """Check the current configuration status."""
    from price_harvester.db.engine import Database
    from price_harvester.ingestion.config import (
        ConfigurationError,
        default_config_path,
        load_registry,
    )

    typer.echo("Price Harvester Configuration")
    typer.echo("=" * 40)

    # Check .env file
    env_found = False
    for _env_path in _env_paths:
        if _env_path.exists():
            typer.echo(f"  .env file: {_env_path}")
            env_found = True
            break
    if not env_found:
        typer.echo("  .env file: Not found")

    # Check harvester config
    try:
        registry = load_registry()
    except (ConfigurationError, FileNotFoundError) as e:
        typer.echo(f"  Config: invalid ({e})", err=True)
        raise typer.Exit(1)
    if registry.config_path:
        typer.echo(f"  Config: {registry.config_path}")
    else:
        typer.echo(f"  Config: Not found at {default_config_path()} (using defaults)")
    typer.echo(f"  Feeds declared: {len(registry.list_feeds())}")
    typer.echo(f"  Redis: {registry.queue.redis_host}:{registry.queue.redis_port}/{registry.queue.redis_db}")
    typer.echo(f"  Webhook: {registry.notifications.webhook_url or 'Not configured (events are logged)'}")
    typer.echo(f"  Resolver version: {registry.resolver.version}")

    # Check database
    database = Database.from_env()
    try:
        typer.echo(f"  Database: {database.engine.url.render_as_string(hide_password=True)}")
    finally:
        database.dispose()


if __name__ == "__main__":
    app()
