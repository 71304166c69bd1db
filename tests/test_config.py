"""Tests for harvester configuration loading."""

from pathlib import Path

import pytest

from price_harvester.core.enums import Compression, FeedFormat, FeedStatus, FeedTransport
from price_harvester.ingestion.config import (
    ConfigurationError,
    FeedDefinition,
    HarvesterRegistry,
    default_config_path,
    load_registry,
)

CONFIG = """
scheduler:
  batch_size: 25
  retention_days: 14
fetch:
  interactive_timeout: 5
  max_file_size_bytes: 1048576
resolver:
  version: "2.0.0"
  match_tier: high
  thresholds:
    high: 0.9
failures:
  max_consecutive: 5
circuit_breaker:
  expiry_hours: 72
  max_expiry_percentage: 25
subscription:
  grace_days: 3
  exempt_tiers: [FOUNDING, PARTNER]
queue:
  redis_host: redis.internal
  backoff_base_seconds: 10
feeds:
  - name: acme-daily
    retailer: Acme Ammo
    url: https://feeds.acme-ammo.com/products.csv
    format: csv
  - name: bulk-ftp
    retailer: Bulk Rounds
    transport: ftp
    host: ftp.example.com
    path: /catalog.xml.gz
    username: bulk
    password: ${BULK_FTP_PASSWORD}
    compression: gzip
    schedule_frequency_hours: 12
    status: paused
"""


@pytest.fixture
def config_file(tmp_path) -> Path:
    path = tmp_path / "harvester.yaml"
    path.write_text(CONFIG)
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("REDIS_HOST", "REDIS_PORT", "REDIS_DB", "HARVESTER_WEBHOOK_URL", "HARVESTER_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)


class TestHarvesterRegistry:
    """Tests for loading a YAML file."""

    def test_defaults(self) -> None:
        """A registry without a file uses defaults."""
        registry = HarvesterRegistry()

        assert registry.scheduler.batch_size == 10
        assert registry.fetch.interactive_timeout == 10.0
        assert registry.quarantine.require_upc is True
        assert registry.resolver.version == "1.2.0"
        assert registry.max_consecutive_failures == 3
        assert registry.subscription.grace_days == 7
        assert registry.circuit_breaker.enabled is True
        assert registry.circuit_breaker.expiry_hours == 48
        assert registry.list_feeds() == []
        assert registry.config_path is None

    def test_load_sections(self, config_file: Path) -> None:
        """Given keys override defaults; missing keys keep them."""
        registry = load_registry(config_file)

        assert registry.config_path == config_file.resolve()
        assert registry.scheduler.batch_size == 25
        assert registry.scheduler.retention_days == 14
        assert registry.scheduler.prune_batch_size == 1000
        assert registry.fetch.max_file_size_bytes == 1048576
        assert registry.resolver.version == "2.0.0"
        assert registry.resolver.high_threshold == 0.9
        assert registry.resolver.medium_threshold == 0.70
        assert registry.resolver.match_tier == "high"
        assert registry.max_consecutive_failures == 5
        assert registry.circuit_breaker.expiry_hours == 72
        assert registry.circuit_breaker.max_expiry_percentage == 25.0
        assert registry.circuit_breaker.absolute_expiry_cap == 500
        assert registry.subscription.exempt_tiers == {"FOUNDING", "PARTNER"}
        assert registry.queue.redis_host == "redis.internal"
        assert registry.queue.backoff_base_seconds == 10

    def test_feed_definitions(self, config_file: Path, monkeypatch) -> None:
        """Feeds are parsed with enums and env-expanded passwords."""
        monkeypatch.setenv("BULK_FTP_PASSWORD", "hunter2")

        registry = load_registry(config_file)

        assert [f.name for f in registry.list_feeds()] == ["acme-daily", "bulk-ftp"]
        acme = registry.get_feed("acme-daily")
        assert acme.transport == FeedTransport.URL
        assert acme.format == FeedFormat.CSV
        assert acme.schedule_frequency_hours == 6
        bulk = registry.get_feed("bulk-ftp")
        assert bulk.transport == FeedTransport.FTP
        assert bulk.compression == Compression.GZIP
        assert bulk.status == FeedStatus.PAUSED
        assert bulk.password == "hunter2"
        assert registry.get_feed("missing") is None

    def test_environment_overrides(self, config_file: Path, monkeypatch) -> None:
        """REDIS_* and HARVESTER_WEBHOOK_URL win over the file."""
        monkeypatch.setenv("REDIS_HOST", "cache.example.com")
        monkeypatch.setenv("REDIS_PORT", "6380")
        monkeypatch.setenv("HARVESTER_WEBHOOK_URL", "https://hooks.example.com/x")

        registry = load_registry(config_file)

        assert registry.queue.redis_host == "cache.example.com"
        assert registry.queue.redis_port == 6380
        assert registry.notifications.webhook_url == "https://hooks.example.com/x"

    def test_config_path_from_env(self, config_file: Path, monkeypatch) -> None:
        """HARVESTER_CONFIG_PATH selects the file."""
        monkeypatch.setenv("HARVESTER_CONFIG_PATH", str(config_file))

        assert default_config_path() == config_file
        assert load_registry().scheduler.batch_size == 25


class TestConfigurationErrors:
    """Tests for malformed configuration."""

    def test_missing_explicit_file(self, tmp_path) -> None:
        """An explicit path must exist."""
        with pytest.raises(FileNotFoundError):
            load_registry(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path) -> None:
        """Syntax errors are configuration errors."""
        path = tmp_path / "bad.yaml"
        path.write_text("feeds: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_registry(path)

    def test_top_level_must_be_mapping(self, tmp_path) -> None:
        """A list at the top level is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_registry(path)

    def test_feed_missing_key(self) -> None:
        """Feeds need a name and a retailer."""
        with pytest.raises(ConfigurationError, match="missing required key"):
            FeedDefinition.from_dict({"name": "orphan"})

    def test_feed_bad_enum(self) -> None:
        """Unknown transports are rejected with the feed name."""
        with pytest.raises(ConfigurationError, match="orphan"):
            FeedDefinition.from_dict({"name": "orphan", "retailer": "X", "transport": "gopher"})
