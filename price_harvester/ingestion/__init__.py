"""
Price Harvester Ingestion Framework
===================================

This package provides the feed ingestion pipeline, from scheduled fetch to
catalog resolution.

Pipeline Stages:
1. Schedule - Claim due feeds atomically and enqueue one run per feed
2. Fetch - Retrieve feed bytes over HTTP(S), FTP/FTPS or pushed uploads
3. Parse - Map CSV/TSV/XML/JSON rows onto a fixed logical schema
4. Identify - Derive identity keys and price signatures
5. Validate - Admit records or quarantine them for correction
6. Write - Append price observations, presence and seen facts idempotently
7. Resolve - Link source products to canonical products with a confidence tier
"""

from price_harvester.ingestion.config import (
    ConfigurationError,
    FeedDefinition,
    HarvesterRegistry,
    load_registry,
)
from price_harvester.ingestion.errors import FeedError, classify_exception
from price_harvester.ingestion.storage import (
    LocalUploadStorage,
    UploadMetadata,
    UploadStorage,
)
from price_harvester.ingestion.fetcher import (
    ChangeState,
    FetchResult,
    TransportFetcher,
    sniff_format,
)
from price_harvester.ingestion.parser import (
    FeedParser,
    ParsedRecord,
    ParseError,
    ParseResult,
)
from price_harvester.ingestion.identity import (
    Identity,
    derive_identity,
    price_signature,
    signature_hash,
)
from price_harvester.ingestion.quarantine import (
    BulkResult,
    QuarantineError,
    QuarantineFilter,
    QuarantineManager,
    ReprocessResult,
    ValidationResult,
)
from price_harvester.ingestion.writer import PriceWriter, WriteResult
from price_harvester.ingestion.resolver import BatchResolution, ProductResolver
from price_harvester.ingestion.notifications import (
    CompositeEmitter,
    FeedEvent,
    LoggingEmitter,
    NotificationEmitter,
    WebhookEmitter,
)
from price_harvester.ingestion.queue import ArqWorkQueue, EnqueuedRun, WorkQueue
from price_harvester.ingestion.scheduler import FeedScheduler
from price_harvester.ingestion.runner import FeedRunner, RunOutcome

__all__ = [
    # Config
    "ConfigurationError",
    "FeedDefinition",
    "HarvesterRegistry",
    "load_registry",
    # Errors
    "FeedError",
    "classify_exception",
    # Storage
    "LocalUploadStorage",
    "UploadMetadata",
    "UploadStorage",
    # Fetcher
    "ChangeState",
    "FetchResult",
    "TransportFetcher",
    "sniff_format",
    # Parser
    "FeedParser",
    "ParsedRecord",
    "ParseError",
    "ParseResult",
    # Identity
    "Identity",
    "derive_identity",
    "price_signature",
    "signature_hash",
    # Quarantine
    "BulkResult",
    "QuarantineError",
    "QuarantineFilter",
    "QuarantineManager",
    "ReprocessResult",
    "ValidationResult",
    # Writer
    "PriceWriter",
    "WriteResult",
    # Resolver
    "BatchResolution",
    "ProductResolver",
    # Notifications
    "CompositeEmitter",
    "FeedEvent",
    "LoggingEmitter",
    "NotificationEmitter",
    "WebhookEmitter",
    # Queue and scheduling
    "ArqWorkQueue",
    "EnqueuedRun",
    "WorkQueue",
    "FeedScheduler",
    "FeedRunner",
    "RunOutcome",
]
