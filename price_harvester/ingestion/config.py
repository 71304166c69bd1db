"""
Harvester Configuration Module
==============================

Loads pipeline settings and declarative feed definitions from a YAML file.
Every section is optional; missing keys fall back to defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from price_harvester.core.enums import Compression, FeedFormat, FeedStatus, FeedTransport
from price_harvester.core.subscription import SubscriptionPolicy


class ConfigurationError(Exception):
    """Raised when the configuration file is malformed."""


@dataclass
class SchedulerConfig:
    """Scheduler batch sizes and run retention."""

    batch_size: int = 10
    retention_days: int = 30
    prune_batch_size: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SchedulerConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            batch_size=int(data.get("batch_size", 10)),
            retention_days=int(data.get("retention_days", 30)),
            prune_batch_size=int(data.get("prune_batch_size", 1000)),
        )


@dataclass
class FetchConfig:
    """Transport fetch limits."""

    interactive_timeout: float = 10.0
    scheduled_timeout: float = 120.0
    max_file_size_bytes: int = 500 * 1024 * 1024
    user_agent: str = "PriceHarvester/0.1"
    upload_dir: str = "~/.price_harvester/uploads"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FetchConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            interactive_timeout=float(data.get("interactive_timeout", 10.0)),
            scheduled_timeout=float(data.get("scheduled_timeout", 120.0)),
            max_file_size_bytes=int(data.get("max_file_size_bytes", 500 * 1024 * 1024)),
            user_agent=data.get("user_agent", "PriceHarvester/0.1"),
            upload_dir=data.get("upload_dir", "~/.price_harvester/uploads"),
        )


@dataclass
class WriterConfig:
    """Price writer settings."""

    heartbeat_hours: int = 24

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> WriterConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(heartbeat_hours=int(data.get("heartbeat_hours", 24)))


@dataclass
class CircuitBreakerConfig:
    """Staleness circuit breaker thresholds."""

    enabled: bool = True
    expiry_hours: int = 48
    max_expiry_percentage: float = 30.0
    min_expiry_count: int = 10
    absolute_expiry_cap: int = 500
    max_url_hash_percentage: float = 50.0
    absolute_url_hash_cap: int = 1000
    min_active_for_percentage_check: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CircuitBreakerConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", True)),
            expiry_hours=int(data.get("expiry_hours", 48)),
            max_expiry_percentage=float(data.get("max_expiry_percentage", 30.0)),
            min_expiry_count=int(data.get("min_expiry_count", 10)),
            absolute_expiry_cap=int(data.get("absolute_expiry_cap", 500)),
            max_url_hash_percentage=float(data.get("max_url_hash_percentage", 50.0)),
            absolute_url_hash_cap=int(data.get("absolute_url_hash_cap", 1000)),
            min_active_for_percentage_check=int(data.get("min_active_for_percentage_check", 100)),
        )


@dataclass
class QuarantineConfig:
    """Quarantine validation and bulk operation limits."""

    require_upc: bool = True
    reprocess_limit: int = 1000
    dismiss_limit: int = 500
    min_note_length: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> QuarantineConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            require_upc=bool(data.get("require_upc", True)),
            reprocess_limit=int(data.get("reprocess_limit", 1000)),
            dismiss_limit=int(data.get("dismiss_limit", 500)),
            min_note_length=int(data.get("min_note_length", 10)),
        )


@dataclass
class ResolverConfig:
    """Resolver thresholds."""

    version: str = "1.2.0"
    upc_confidence: float = 0.95
    high_threshold: float = 0.85
    medium_threshold: float = 0.70
    low_threshold: float = 0.55
    match_tier: str = "medium"
    ambiguity_gap: float = 0.03
    hysteresis: float = 0.10
    max_candidates: int = 200

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ResolverConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        thresholds = data.get("thresholds", {})
        return cls(
            version=str(data.get("version", "1.2.0")),
            upc_confidence=float(data.get("upc_confidence", 0.95)),
            high_threshold=float(thresholds.get("high", 0.85)),
            medium_threshold=float(thresholds.get("medium", 0.70)),
            low_threshold=float(thresholds.get("low", 0.55)),
            match_tier=str(data.get("match_tier", "medium")).lower(),
            ambiguity_gap=float(data.get("ambiguity_gap", 0.03)),
            hysteresis=float(data.get("hysteresis", 0.10)),
            max_candidates=int(data.get("max_candidates", 200)),
        )


@dataclass
class QueueConfig:
    """Work queue and retry settings."""

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    max_tries: int = 3
    backoff_base_seconds: int = 30
    manual_priority_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> QueueConfig:
        """Create from dictionary. REDIS_* environment variables win."""
        data = data or {}
        return cls(
            redis_host=os.environ.get("REDIS_HOST", data.get("redis_host", "localhost")),
            redis_port=int(os.environ.get("REDIS_PORT", data.get("redis_port", 6379))),
            redis_db=int(os.environ.get("REDIS_DB", data.get("redis_db", 0))),
            max_tries=int(data.get("max_tries", 3)),
            backoff_base_seconds=int(data.get("backoff_base_seconds", 30)),
            manual_priority_seconds=int(data.get("manual_priority_seconds", 300)),
        )


@dataclass
class NotificationConfig:
    """Where pipeline events are delivered."""

    webhook_url: str | None = None
    webhook_timeout: float = 5.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> NotificationConfig:
        """Create from dictionary."""
        data = data or {}
        return cls(
            webhook_url=os.environ.get("HARVESTER_WEBHOOK_URL", data.get("webhook_url")),
            webhook_timeout=float(data.get("webhook_timeout", 5.0)),
        )


@dataclass
class FeedDefinition:
    """A feed declared in configuration, synced into the database by the CLI."""

    name: str
    retailer: str
    transport: FeedTransport = FeedTransport.URL
    url: str | None = None
    host: str | None = None
    port: int | None = None
    path: str | None = None
    username: str | None = None
    password: str | None = None
    format: FeedFormat = FeedFormat.AUTO
    compression: Compression = Compression.NONE
    schedule_frequency_hours: int = 6
    status: FeedStatus = FeedStatus.ENABLED
    max_rows: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedDefinition:
        """Create from dictionary. Passwords may reference env vars as ${VAR}."""
        try:
            return cls(
                name=data["name"],
                retailer=data["retailer"],
                transport=FeedTransport(data.get("transport", "url")),
                url=data.get("url"),
                host=data.get("host"),
                port=int(data["port"]) if data.get("port") is not None else None,
                path=data.get("path"),
                username=data.get("username"),
                password=_expand_env(data.get("password")),
                format=FeedFormat(data.get("format", "auto")),
                compression=Compression(data.get("compression", "none")),
                schedule_frequency_hours=int(data.get("schedule_frequency_hours", 6)),
                status=FeedStatus(data.get("status", "enabled")),
                max_rows=int(data["max_rows"]) if data.get("max_rows") is not None else None,
            )
        except KeyError as e:
            raise ConfigurationError(f"Feed definition missing required key {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Invalid feed definition '{data.get('name')}': {e}") from e


def _expand_env(value: str | None) -> str | None:
    if value and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1])
    return value


class HarvesterRegistry:
    """
    Registry for harvester configuration.

    Loads pipeline settings and feed definitions from a YAML file and
    exposes them as typed sections.
    """

    def __init__(self) -> None:
        self.scheduler = SchedulerConfig()
        self.fetch = FetchConfig()
        self.writer = WriterConfig()
        self.circuit_breaker = CircuitBreakerConfig()
        self.quarantine = QuarantineConfig()
        self.resolver = ResolverConfig()
        self.queue = QueueConfig.from_dict(None)
        self.notifications = NotificationConfig.from_dict(None)
        self.subscription = SubscriptionPolicy()
        self.max_consecutive_failures = 3
        self._feeds: dict[str, FeedDefinition] = {}
        self._config_path: Path | None = None

    @property
    def config_path(self) -> Path | None:
        """Path the configuration was loaded from, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the harvester.yaml file
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {config_path} must be a mapping")

        self._config_path = config_path
        self.scheduler = SchedulerConfig.from_dict(data.get("scheduler"))
        self.fetch = FetchConfig.from_dict(data.get("fetch"))
        self.writer = WriterConfig.from_dict(data.get("writer"))
        self.circuit_breaker = CircuitBreakerConfig.from_dict(data.get("circuit_breaker"))
        self.quarantine = QuarantineConfig.from_dict(data.get("quarantine"))
        self.resolver = ResolverConfig.from_dict(data.get("resolver"))
        self.queue = QueueConfig.from_dict(data.get("queue"))
        self.notifications = NotificationConfig.from_dict(data.get("notifications"))

        subscription = data.get("subscription") or {}
        self.subscription = SubscriptionPolicy(
            grace_days=int(subscription.get("grace_days", 7)),
            exempt_tiers=set(subscription.get("exempt_tiers", ["FOUNDING"])),
            notice_interval_hours=int(subscription.get("notice_interval_hours", 24)),
        )
        failures = data.get("failures") or {}
        self.max_consecutive_failures = int(failures.get("max_consecutive", 3))

        # Load feeds
        self._feeds.clear()
        for feed_data in data.get("feeds", []) or []:
            feed = FeedDefinition.from_dict(feed_data)
            self._feeds[feed.name] = feed

    def get_feed(self, name: str) -> FeedDefinition | None:
        """
        Get a feed definition by name.

        Args:
            name: Feed name

        Returns:
            FeedDefinition if found, None otherwise
        """
        return self._feeds.get(name)

    def list_feeds(self) -> list[FeedDefinition]:
        """Get all declared feeds."""
        return list(self._feeds.values())


def default_config_path() -> Path:
    """
    Resolve the configuration path.

    HARVESTER_CONFIG_PATH wins; otherwise config/harvester.yaml at the
    project root.
    """
    config_path = os.environ.get("HARVESTER_CONFIG_PATH")
    if config_path:
        return Path(config_path)
    return Path(__file__).resolve().parent.parent.parent / "config" / "harvester.yaml"


def load_registry(path: Path | str | None = None) -> HarvesterRegistry:
    """
    Build a registry, loading the config file when it exists.

    Args:
        path: Explicit config path; defaults to default_config_path()

    Returns:
        A new HarvesterRegistry
    """
    registry = HarvesterRegistry()
    config_path = Path(path) if path is not None else default_config_path()
    if config_path.exists():
        registry.load_config(config_path)
    elif path is not None:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    return registry
