"""Feed service for operator actions on feeds.

This service provides business logic for:
- Syncing declarative feed definitions into the database
- Requesting manual runs
- Storing pushed files for upload feeds
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from price_harvester.core.enums import FeedStatus, FeedTransport
from price_harvester.core.schema import Feed, Retailer, utc_now
from price_harvester.db.repositories import FeedRepository, RetailerRepository
from price_harvester.ingestion.config import FeedDefinition
from price_harvester.ingestion.storage import UploadMetadata, UploadStorage

logger = logging.getLogger(__name__)


class FeedNotFoundError(Exception):
    """Raised when an operator names a feed that does not exist."""


@dataclass
class SyncResult:
    """Outcome of syncing feed definitions."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    retailers_created: list[str] = field(default_factory=list)


class FeedService:
    """Service for feed configuration and manual runs."""

    def __init__(self, session: Session):
        """
        Initialize the feed service.

        Args:
            session: SQLAlchemy session; the caller commits
        """
        self.session = session
        self.feeds = FeedRepository(session)
        self.retailers = RetailerRepository(session)

    # =========================================================================
    # Sync
    # =========================================================================

    def sync(self, definitions: list[FeedDefinition]) -> SyncResult:
        """
        Create or update feeds from configuration.

        Scheduling state (next run, failures, change detection) is kept
        for existing feeds. New enabled feeds are due immediately.

        Args:
            definitions: Feed definitions from the registry

        Returns:
            SyncResult listing created and updated feed names
        """
        result = SyncResult()
        now = utc_now()

        for definition in definitions:
            retailer = self.retailers.get_by_name(definition.retailer)
            if retailer is None:
                retailer = self.retailers.create(Retailer(name=definition.retailer))
                result.retailers_created.append(retailer.name)

            existing = self.feeds.get_by_name(definition.name)
            if existing is None:
                feed = Feed(
                    name=definition.name,
                    retailer_id=retailer.id,
                    next_run_at=now if definition.status == FeedStatus.ENABLED else None,
                    **self._settings(definition),
                )
                self.feeds.create(feed)
                result.created.append(feed.name)
                continue

            reenabled = (
                definition.status == FeedStatus.ENABLED and existing.status != FeedStatus.ENABLED
            )
            feed = existing.model_copy(
                update={"retailer_id": retailer.id, **self._settings(definition)}
            )
            if reenabled:
                feed.consecutive_failures = 0
                feed.next_run_at = feed.next_run_at or now
            self.feeds.update(feed)
            result.updated.append(feed.name)

        logger.info(
            f"Synced feeds: {len(result.created)} created, {len(result.updated)} updated"
        )
        return result

    @staticmethod
    def _settings(definition: FeedDefinition) -> dict:
        return {
            "transport": definition.transport,
            "url": definition.url,
            "host": definition.host,
            "port": definition.port,
            "path": definition.path,
            "username": definition.username,
            "password": definition.password,
            "format": definition.format,
            "compression": definition.compression,
            "schedule_frequency_hours": definition.schedule_frequency_hours,
            "status": definition.status,
            "max_rows": definition.max_rows,
        }

    # =========================================================================
    # Operator Actions
    # =========================================================================

    def get(self, name: str) -> Feed:
        """Get a feed by name, raising FeedNotFoundError if absent."""
        feed = self.feeds.get_by_name(name)
        if feed is None:
            raise FeedNotFoundError(f"Feed '{name}' not found")
        return feed

    def request_manual_run(self, name: str) -> Feed:
        """
        Flag a feed for a manual run.

        Manual runs are allowed for paused, disabled and failed feeds.
        """
        feed = self.get(name)
        self.feeds.request_manual_run(feed.id)
        logger.info(f"Manual run requested for feed {feed.name}")
        return feed

    def upload(
        self, name: str, filename: str, content: bytes, storage: UploadStorage
    ) -> UploadMetadata:
        """
        Store a pushed file for an upload feed and request a manual run.

        Args:
            name: Feed name
            filename: Original file name
            content: File bytes
            storage: Upload storage

        Returns:
            Metadata of the stored upload
        """
        feed = self.get(name)
        if feed.transport != FeedTransport.UPLOAD:
            raise ValueError(f"Feed '{name}' uses {feed.transport.value} transport, not upload")
        metadata = storage.save_upload(feed.id, filename, content)
        self.feeds.request_manual_run(feed.id)
        return metadata
