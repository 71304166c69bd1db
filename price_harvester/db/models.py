"""SQLAlchemy ORM models for the price harvester database.

These models define the tables behind the ingestion pipeline:
- RetailerDB, MerchantDB, MerchantRetailerDB (account entities)
- FeedDB, FeedRunDB, FeedRunErrorDB (ingestion entities)
- QuarantinedRecordDB, FeedCorrectionDB (quarantine entities)
- SourceProductDB, SourceProductPresenceDB, SourceProductSeenDB, PriceDB (price history)
- CanonicalProductDB, ProductLinkDB (catalog matching)
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from price_harvester.core.schema import utc_now


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Account Entities
# ============================================================================


class RetailerDB(Base):
    """Database model for retailers."""

    __tablename__ = "retailers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    website: Mapped[str] = mapped_column(String(500), default="")
    eligibility: Mapped[str] = mapped_column(String(20), default="eligible", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    relationships: Mapped[list["MerchantRetailerDB"]] = relationship(
        "MerchantRetailerDB", back_populates="retailer"
    )

    def __repr__(self) -> str:
        return f"<RetailerDB(id={self.id}, name='{self.name}')>"


class MerchantDB(Base):
    """Database model for merchant accounts."""

    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tier: Mapped[str] = mapped_column(String(30), default="STANDARD")
    subscription_status: Mapped[str] = mapped_column(String(20), default="active")
    subscription_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_subscription_notice_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<MerchantDB(id={self.id}, name='{self.name}')>"


class MerchantRetailerDB(Base):
    """Database model for merchant-retailer relationships."""

    __tablename__ = "merchant_retailers"
    __table_args__ = (UniqueConstraint("merchant_id", "retailer_id", name="uq_merchant_retailer"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    merchant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("merchants.id"), nullable=False, index=True
    )
    retailer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("retailers.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="active")
    listing_status: Mapped[str] = mapped_column(String(20), default="listed")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    retailer: Mapped["RetailerDB"] = relationship("RetailerDB", back_populates="relationships")

    def __repr__(self) -> str:
        return (
            f"<MerchantRetailerDB(merchant={self.merchant_id}, retailer={self.retailer_id}, "
            f"status='{self.status}', listing='{self.listing_status}')>"
        )


# ============================================================================
# Feeds and Runs
# ============================================================================


class FeedDB(Base):
    """
    Database model for configured feeds.

    The scheduler claims rows from this table; next_run_at and
    manual_run_pending drive which feeds are due.
    """

    __tablename__ = "feeds"
    __table_args__ = (Index("ix_feeds_due", "status", "next_run_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    retailer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("retailers.id"), nullable=False, index=True
    )
    merchant_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("merchants.id"), nullable=True, index=True
    )
    # Transport
    transport: Mapped[str] = mapped_column(String(20), default="url")
    url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    format: Mapped[str] = mapped_column(String(10), default="auto")
    compression: Mapped[str] = mapped_column(String(10), default="none")
    max_file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Scheduling
    schedule_frequency_hours: Mapped[int] = mapped_column(Integer, default=6)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    manual_run_pending: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="enabled")
    # Health and change detection
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_remote_mtime: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_remote_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    runs: Mapped[list["FeedRunDB"]] = relationship("FeedRunDB", back_populates="feed")

    def __repr__(self) -> str:
        return f"<FeedDB(id={self.id}, name='{self.name}', status='{self.status}')>"


class FeedRunDB(Base):
    """Database model for feed runs."""

    __tablename__ = "feed_runs"
    __table_args__ = (Index("ix_feed_runs_status_finished", "status", "finished_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    feed_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("feeds.id"), nullable=False, index=True
    )
    trigger: Mapped[str] = mapped_column(String(20), default="scheduled")
    status: Mapped[str] = mapped_column(String(20), default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Counters
    rows_read: Mapped[int] = mapped_column(Integer, default=0)
    rows_parsed: Mapped[int] = mapped_column(Integer, default=0)
    row_count: Mapped[int] = mapped_column(Integer, default=0)
    products_upserted: Mapped[int] = mapped_column(Integer, default=0)
    prices_written: Mapped[int] = mapped_column(Integer, default=0)
    prices_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    quarantined_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    # Outcome
    skipped_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Staleness circuit breaker
    active_count_before: Mapped[int] = mapped_column(Integer, default=0)
    seen_success_count: Mapped[int] = mapped_column(Integer, default=0)
    would_expire_count: Mapped[int] = mapped_column(Integer, default=0)
    url_hash_fallback_count: Mapped[int] = mapped_column(Integer, default=0)
    expiry_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    expiry_blocked_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)

    feed: Mapped["FeedDB"] = relationship("FeedDB", back_populates="runs")
    errors: Mapped[list["FeedRunErrorDB"]] = relationship(
        "FeedRunErrorDB", back_populates="run", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<FeedRunDB(id={self.id}, feed={self.feed_id}, status='{self.status}')>"


class FeedRunErrorDB(Base):
    """Database model for row-level errors recorded against a run."""

    __tablename__ = "feed_run_errors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("feed_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    row_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    message: Mapped[str] = mapped_column(Text, default="")
    raw_row_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    run: Mapped["FeedRunDB"] = relationship("FeedRunDB", back_populates="errors")


# ============================================================================
# Quarantine
# ============================================================================


class QuarantinedRecordDB(Base):
    """Database model for records that failed validation."""

    __tablename__ = "quarantined_records"
    __table_args__ = (UniqueConstraint("feed_id", "match_key", name="uq_quarantine_feed_match_key"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    feed_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("feeds.id"), nullable=False, index=True
    )
    retailer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    match_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="quarantined", index=True)
    raw_data_json: Mapped[str] = mapped_column(Text, default="{}")
    parsed_fields_json: Mapped[str] = mapped_column(Text, default="{}")
    blocking_errors_json: Mapped[str] = mapped_column(Text, default="[]")
    # Denormalized first blocking code for filtering
    primary_error_code: Mapped[str | None] = mapped_column(String(30), nullable=True, index=True)
    source_product_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    dismissed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dismiss_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    corrections: Mapped[list["FeedCorrectionDB"]] = relationship(
        "FeedCorrectionDB", back_populates="record", order_by="FeedCorrectionDB.sequence"
    )

    def __repr__(self) -> str:
        return f"<QuarantinedRecordDB(id={self.id}, feed={self.feed_id}, status='{self.status}')>"


class FeedCorrectionDB(Base):
    """Database model for field-level corrections. Append-only."""

    __tablename__ = "feed_corrections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    quarantined_record_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("quarantined_records.id"), nullable=False, index=True
    )
    # Per-record ordering; latest sequence wins per field
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    field_name: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(String(255), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    record: Mapped["QuarantinedRecordDB"] = relationship(
        "QuarantinedRecordDB", back_populates="corrections"
    )


# ============================================================================
# Source Products and Prices
# ============================================================================


class SourceProductDB(Base):
    """Database model for retailer-side product identities."""

    __tablename__ = "source_products"
    __table_args__ = (
        UniqueConstraint("feed_id", "identity_key", name="uq_source_product_identity"),
        Index("ix_source_products_record_hash", "feed_id", "record_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    feed_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("feeds.id"), nullable=False, index=True
    )
    retailer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    identity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    identity_key: Mapped[str] = mapped_column(String(600), nullable=False)
    record_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    url_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    upc: Mapped[str | None] = mapped_column(String(14), nullable=True, index=True)
    sku: Mapped[str | None] = mapped_column(String(255), nullable=True)
    network_item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    brand: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<SourceProductDB(id={self.id}, key='{self.identity_key}')>"


class SourceProductPresenceDB(Base):
    """
    Last sighting of a source product. One row per product, overwritten.

    last_seen_at moves on every run that sees the product;
    last_seen_success_at only when the run passes the staleness circuit
    breaker.
    """

    __tablename__ = "source_product_presence"

    source_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("source_products.id"), primary_key=True
    )
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen_success_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class SourceProductSeenDB(Base):
    """Which run saw which source product. Insert-or-ignore."""

    __tablename__ = "source_product_seen"

    run_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source_product_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    seen_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class PriceDB(Base):
    """
    Database model for price observations.

    Rows are append-only. The unique constraint on
    (source_product_id, run_id, price_signature) makes retried writes no-ops.
    """

    __tablename__ = "prices"
    __table_args__ = (
        UniqueConstraint(
            "source_product_id", "run_id", "price_signature", name="uq_price_product_run_signature"
        ),
        Index("ix_prices_product_observed", "source_product_id", "observed_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("source_products.id"), nullable=False
    )
    retailer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    original_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    price_type: Mapped[str] = mapped_column(String(10), default="regular")
    in_stock: Mapped[bool] = mapped_column(Boolean, default=True)
    price_signature: Mapped[str] = mapped_column(String(64), nullable=False)
    # Provenance
    run_trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<PriceDB(product={self.source_product_id}, price={self.price} {self.currency})>"


# ============================================================================
# Catalog Matching
# ============================================================================


class CanonicalProductDB(Base):
    """Database model for canonical catalog products."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    brand: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    upc: Mapped[str | None] = mapped_column(String(14), nullable=True, index=True)
    caliber: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    grain_weight: Mapped[int | None] = mapped_column(Integer, nullable=True)
    round_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<CanonicalProductDB(id={self.id}, name='{self.name}')>"


class ProductLinkDB(Base):
    """Resolver output linking a source product to a canonical product."""

    __tablename__ = "product_links"

    source_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("source_products.id"), primary_key=True
    )
    product_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="unmatched", index=True)
    match_type: Mapped[str] = mapped_column(String(20), default="none")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    tier: Mapped[str] = mapped_column(String(10), default="none")
    resolver_version: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    reason_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    evidence_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return (
            f"<ProductLinkDB(source={self.source_product_id}, product={self.product_id}, "
            f"status='{self.status}')>"
        )
