"""Application services for Price Harvester."""

from price_harvester.services.feed_service import (
    FeedNotFoundError,
    FeedService,
    SyncResult,
)

__all__ = [
    "FeedNotFoundError",
    "FeedService",
    "SyncResult",
]
