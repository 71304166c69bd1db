"""Pydantic v2 domain models for the price harvester.

These models define the entities the pipeline passes between stages:
- Retailer, Merchant, MerchantRetailerRelationship (account entities)
- Feed, FeedRun, RunError (ingestion entities)
- QuarantinedRecord, BlockingError, FeedCorrection (quarantine entities)
- SourceProduct, PriceObservation (price history)
- CanonicalProduct, ProductLink (catalog matching)

All timestamps are naive UTC, matching what the database hands back.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from price_harvester.core.enums import (
    BlockingErrorCode,
    Compression,
    ConfidenceTier,
    ExpiryBlockReason,
    FeedErrorCode,
    FeedFormat,
    FeedStatus,
    FeedTransport,
    IdentityType,
    LinkStatus,
    ListingStatus,
    MatchType,
    PriceType,
    QuarantineStatus,
    RelationshipStatus,
    RetailerEligibility,
    RunStatus,
    RunTrigger,
    SkipReason,
    SubscriptionStatus,
)


def utc_now() -> datetime:
    """Return current UTC datetime without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


# ============================================================================
# Account Entities
# ============================================================================


class Retailer(BaseModel):
    """A retailer whose prices are harvested."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    website: str = ""
    eligibility: RetailerEligibility = RetailerEligibility.ELIGIBLE
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()


class Merchant(BaseModel):
    """A merchant account that owns feeds and pays for a subscription."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    tier: str = "STANDARD"
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    subscription_expires_at: datetime | None = None
    last_subscription_notice_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class MerchantRetailerRelationship(BaseModel):
    """Link between a merchant account and a retailer."""

    id: UUID = Field(default_factory=uuid4)
    merchant_id: UUID
    retailer_id: UUID
    status: RelationshipStatus = RelationshipStatus.ACTIVE
    listing_status: ListingStatus = ListingStatus.LISTED


# ============================================================================
# Feeds and Runs
# ============================================================================


class Feed(BaseModel):
    """
    A configured, schedulable ingestion source tied to one retailer.

    Transport settings cover both URL feeds (url, username, password) and
    file-transfer feeds (host, port, path, username, password).
    """

    id: UUID = Field(default_factory=uuid4)
    name: str
    retailer_id: UUID
    merchant_id: UUID | None = None
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
    next_run_at: datetime | None = None
    manual_run_pending: bool = False
    status: FeedStatus = FeedStatus.ENABLED
    max_file_size_bytes: int | None = None
    max_rows: int | None = None
    consecutive_failures: int = 0
    last_content_hash: str | None = None
    last_remote_mtime: datetime | None = None
    last_remote_size: int | None = None
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("schedule_frequency_hours")
    @classmethod
    def positive_frequency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("schedule_frequency_hours must be at least 1")
        return v


class RunError(BaseModel):
    """A row-level problem recorded against a run."""

    row_number: int | None = None
    code: str
    message: str
    raw_row: dict[str, Any] | None = None


class FeedRun(BaseModel):
    """One execution attempt of a feed."""

    id: UUID = Field(default_factory=uuid4)
    feed_id: UUID
    trigger: RunTrigger = RunTrigger.SCHEDULED
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    duration_ms: int | None = None
    rows_read: int = 0
    rows_parsed: int = 0
    row_count: int = 0
    products_upserted: int = 0
    prices_written: int = 0
    prices_unchanged: int = 0
    quarantined_count: int = 0
    error_count: int = 0
    skipped_reason: SkipReason | None = None
    error_code: FeedErrorCode | None = None
    error_message: str | None = None
    # Staleness circuit breaker
    active_count_before: int = 0
    seen_success_count: int = 0
    would_expire_count: int = 0
    url_hash_fallback_count: int = 0
    expiry_blocked: bool = False
    expiry_blocked_reason: ExpiryBlockReason | None = None


# ============================================================================
# Quarantine
# ============================================================================


class BlockingError(BaseModel):
    """A coded validation failure on a quarantined record."""

    code: BlockingErrorCode
    message: str


class QuarantinedRecord(BaseModel):
    """A source record that failed validation."""

    id: UUID = Field(default_factory=uuid4)
    feed_id: UUID
    retailer_id: UUID
    run_id: UUID | None = None
    match_key: str
    status: QuarantineStatus = QuarantineStatus.QUARANTINED
    raw_data: dict[str, Any] = Field(default_factory=dict)
    parsed_fields: dict[str, Any] = Field(default_factory=dict)
    blocking_errors: list[BlockingError] = Field(default_factory=list)
    source_product_id: UUID | None = None
    dismissed_by: str | None = None
    dismiss_note: str | None = None
    resolved_at: datetime | None = None
    dismissed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class FeedCorrection(BaseModel):
    """A single field-level fix applied to a quarantined record."""

    id: UUID = Field(default_factory=uuid4)
    quarantined_record_id: UUID
    sequence: int = 1
    field_name: str
    old_value: str | None = None
    new_value: str
    author: str = "system"
    created_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# Source Products and Prices
# ============================================================================


class SourceProduct(BaseModel):
    """The retailer-side identity a price observation attaches to."""

    id: UUID = Field(default_factory=uuid4)
    feed_id: UUID
    retailer_id: UUID
    identity_type: IdentityType
    identity_key: str
    record_hash: str | None = None
    title: str
    url: str
    url_hash: str | None = None
    upc: str | None = None
    sku: str | None = None
    network_item_id: str | None = None
    brand: str | None = None
    category: str | None = None
    image_url: str | None = None
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PriceObservation(BaseModel):
    """An accepted, persisted price fact. Immutable once written."""

    id: UUID = Field(default_factory=uuid4)
    source_product_id: UUID
    retailer_id: UUID
    price: Decimal
    currency: str = "USD"
    original_price: Decimal | None = None
    price_type: PriceType = PriceType.REGULAR
    in_stock: bool = True
    price_signature: str
    run_trigger: RunTrigger
    run_id: UUID
    observed_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# Catalog Matching
# ============================================================================


class CanonicalProduct(BaseModel):
    """A deduplicated catalog entry."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    brand: str | None = None
    upc: str | None = None
    caliber: str | None = None
    grain_weight: int | None = None
    round_count: int | None = None
    created_at: datetime = Field(default_factory=utc_now)


class ProductLink(BaseModel):
    """Association between a source product and a canonical product."""

    source_product_id: UUID
    product_id: UUID | None = None
    status: LinkStatus = LinkStatus.UNMATCHED
    match_type: MatchType = MatchType.NONE
    confidence: float = 0.0
    tier: ConfidenceTier = ConfidenceTier.NONE
    resolver_version: str
    reason_code: str | None = None
    evidence: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("confidence")
    @classmethod
    def valid_confidence(cls, v: float) -> float:
        if v < 0.0 or v > 1.0:
            raise ValueError("confidence must be between 0.0 and 1.0")
        return v
