"""Tests for the command line interface."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from price_harvester.cli.main import app
from price_harvester.db.engine import Database
from price_harvester.db.repositories import FeedRepository

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    """Point the CLI at a temporary database and config file."""
    config = tmp_path / "harvester.yaml"
    config.write_text(
        f"""
fetch:
  upload_dir: "{tmp_path / 'uploads'}"
feeds:
  - name: acme-daily
    retailer: Acme Ammo
    url: https://feeds.acme-ammo.com/products.csv
    format: csv
  - name: acme-push
    retailer: Acme Ammo
    transport: upload
"""
    )
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("HARVESTER_CONFIG_PATH", str(config))
    monkeypatch.setenv("DATABASE_URL", str(db_path))
    monkeypatch.delenv("HARVESTER_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("COLUMNS", "200")
    return db_path


class TestBasicCommands:
    """Tests for top-level commands."""

    def test_version(self) -> None:
        """The version command prints the package version."""
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "Price Harvester v0.1.0" in result.output

    def test_check_config(self, cli_env: Path) -> None:
        """The configuration summary names the config file and feed count."""
        result = runner.invoke(app, ["check-config"])

        assert result.exit_code == 0
        assert "harvester.yaml" in result.output
        assert "Feeds declared: 2" in result.output
        assert "Resolver version: 1.2.0" in result.output

    def test_init_db(self, cli_env: Path) -> None:
        """init-db creates the database file."""
        result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 0
        assert cli_env.exists()


class TestFeedCommands:
    """Tests for the feeds subcommands."""

    @pytest.fixture(autouse=True)
    def synced(self, cli_env: Path) -> None:
        assert runner.invoke(app, ["init-db"]).exit_code == 0
        result = runner.invoke(app, ["feeds", "sync"])
        assert result.exit_code == 0
        assert "Synced 2 feeds" in result.output

    def test_list(self) -> None:
        """Synced feeds are listed."""
        result = runner.invoke(app, ["feeds", "list"])

        assert result.exit_code == 0
        assert "acme-daily" in result.output
        assert "acme-push" in result.output

    def test_trigger(self, cli_env: Path) -> None:
        """Triggering flags a manual run for the worker."""
        result = runner.invoke(app, ["feeds", "trigger", "acme-daily"])

        assert result.exit_code == 0
        assert "Manual run requested" in result.output
        database = Database(f"sqlite:///{cli_env}")
        try:
            with database.session() as session:
                assert FeedRepository(session).get_by_name("acme-daily").manual_run_pending
        finally:
            database.dispose()

    def test_trigger_unknown_feed(self) -> None:
        """Unknown feeds exit with an error."""
        result = runner.invoke(app, ["feeds", "trigger", "nope"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_upload(self, tmp_path: Path) -> None:
        """Files are stored for upload feeds."""
        upload = tmp_path / "acme.csv"
        upload.write_text("name,url,price\n")

        result = runner.invoke(app, ["feeds", "upload", "acme-push", str(upload)])

        assert result.exit_code == 0
        assert "Uploaded acme.csv" in result.output
        assert list((tmp_path / "uploads").rglob("*__acme.csv.gz"))

    def test_upload_rejects_url_feed(self, tmp_path: Path) -> None:
        """URL feeds cannot take uploads."""
        upload = tmp_path / "acme.csv"
        upload.write_text("name,url,price\n")

        result = runner.invoke(app, ["feeds", "upload", "acme-daily", str(upload)])

        assert result.exit_code == 1

    def test_runs_list_empty(self) -> None:
        """No runs yet."""
        result = runner.invoke(app, ["runs", "list"])

        assert result.exit_code == 0
        assert "No runs found" in result.output


class TestResolverCommands:
    """Tests for the resolver subcommands."""

    @pytest.fixture(autouse=True)
    def initialized(self, cli_env: Path) -> None:
        assert runner.invoke(app, ["init-db"]).exit_code == 0

    def test_run_with_nothing_stale(self) -> None:
        """An empty database resolves nothing."""
        result = runner.invoke(app, ["resolver", "run"])

        assert result.exit_code == 0
        assert "Resolver 1.2.0" in result.output

    def test_link_unknown_product(self) -> None:
        """Linking a missing source product fails."""
        result = runner.invoke(
            app,
            ["resolver", "link", "00000000-0000-0000-0000-000000000000", "00000000-0000-0000-0000-000000000001"],
        )

        assert result.exit_code == 1
        assert "not found" in result.output
