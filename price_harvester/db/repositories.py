"""Repository classes for price harvester database operations.

The ingestion pipeline only talks to storage through these classes. Two
transactional guarantees callers may rely on:

- FeedRepository.claim_due locks due rows with FOR UPDATE SKIP LOCKED and
  advances next_run_at with a conditional update in the same transaction,
  so concurrent schedulers never claim the same feed, even on backends
  that ignore row locks.
- PriceRepository.insert_observations is idempotent: a row that conflicts
  on (source product, run, signature) is silently skipped, so a partially
  failed write may be retried as a whole.

Repositories flush but never commit; the caller owns the transaction.
"""

import json
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

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
from price_harvester.core.schema import (
    BlockingError,
    CanonicalProduct,
    Feed,
    FeedCorrection,
    FeedRun,
    Merchant,
    MerchantRetailerRelationship,
    PriceObservation,
    ProductLink,
    QuarantinedRecord,
    Retailer,
    RunError,
    SourceProduct,
    utc_now,
)
from price_harvester.core.visibility import (
    RelationshipState,
    is_retailer_visible,
    visible_retailer_clause,
)
from price_harvester.db.models import (
    CanonicalProductDB,
    FeedCorrectionDB,
    FeedDB,
    FeedRunDB,
    FeedRunErrorDB,
    MerchantDB,
    MerchantRetailerDB,
    PriceDB,
    ProductLinkDB,
    QuarantinedRecordDB,
    RetailerDB,
    SourceProductDB,
    SourceProductPresenceDB,
    SourceProductSeenDB,
)


def _dialect_insert(session: Session, table: Any) -> Any:
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Conflict-safe inserts are not supported on {dialect}")


def _opt_uuid(value: str | None) -> UUID | None:
    return UUID(value) if value else None


def next_run_after(previous: datetime | None, frequency_hours: int, now: datetime) -> datetime:
    """
    Advance a schedule by one interval.

    Keeps the feed on its cadence when it is on time; if the feed fell
    behind by more than one interval, restart the cadence from now.
    """
    interval = timedelta(hours=frequency_hours)
    if previous is not None:
        candidate = previous + interval
        if candidate > now:
            return candidate
    return now + interval


# ============================================================================
# Account Repositories
# ============================================================================


class RetailerRepository:
    """Repository for retailers and their merchant relationships."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, retailer: Retailer) -> Retailer:
        """Create a new retailer."""
        db_item = RetailerDB(
            id=str(retailer.id),
            name=retailer.name,
            website=retailer.website,
            eligibility=retailer.eligibility.value,
            created_at=retailer.created_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, retailer_id: UUID | str) -> Retailer | None:
        """Get a retailer by ID."""
        db_item = self.session.get(RetailerDB, str(retailer_id))
        return self._to_domain(db_item) if db_item else None

    def get_by_name(self, name: str) -> Retailer | None:
        """Get a retailer by exact name."""
        stmt = select(RetailerDB).where(RetailerDB.name == name)
        db_item = self.session.execute(stmt).scalars().first()
        return self._to_domain(db_item) if db_item else None

    def set_eligibility(self, retailer_id: UUID | str, eligibility: RetailerEligibility) -> Retailer:
        """Change a retailer's eligibility."""
        db_item = self.session.get(RetailerDB, str(retailer_id))
        if db_item is None:
            raise ValueError(f"Retailer with id {retailer_id} not found")
        db_item.eligibility = eligibility.value
        self.session.flush()
        return self._to_domain(db_item)

    def relationship_states(self, retailer_id: UUID | str) -> list[RelationshipState]:
        """Get the visibility-relevant state of every relationship of a retailer."""
        stmt = select(MerchantRetailerDB).where(MerchantRetailerDB.retailer_id == str(retailer_id))
        return [
            RelationshipState(
                status=RelationshipStatus(r.status),
                listing_status=ListingStatus(r.listing_status),
            )
            for r in self.session.execute(stmt).scalars().all()
        ]

    def is_visible(self, retailer_id: UUID | str) -> bool:
        """Evaluate the visibility predicate for one retailer."""
        db_item = self.session.get(RetailerDB, str(retailer_id))
        if db_item is None:
            return False
        return is_retailer_visible(
            RetailerEligibility(db_item.eligibility),
            self.relationship_states(retailer_id),
        )

    def list_visible(self) -> list[Retailer]:
        """List retailers whose prices may be shown publicly."""
        stmt = select(RetailerDB).where(visible_retailer_clause()).order_by(RetailerDB.name)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def _to_domain(self, db_item: RetailerDB) -> Retailer:
        """Convert DB model to domain model."""
        return Retailer(
            id=UUID(db_item.id),
            name=db_item.name,
            website=db_item.website,
            eligibility=RetailerEligibility(db_item.eligibility),
            created_at=db_item.created_at,
        )


class MerchantRepository:
    """Repository for merchant accounts and relationships."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, merchant: Merchant) -> Merchant:
        """Create a new merchant."""
        db_item = MerchantDB(
            id=str(merchant.id),
            name=merchant.name,
            tier=merchant.tier,
            subscription_status=merchant.subscription_status.value,
            subscription_expires_at=merchant.subscription_expires_at,
            last_subscription_notice_at=merchant.last_subscription_notice_at,
            created_at=merchant.created_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, merchant_id: UUID | str) -> Merchant | None:
        """Get a merchant by ID."""
        db_item = self.session.get(MerchantDB, str(merchant_id))
        return self._to_domain(db_item) if db_item else None

    def record_subscription_notice(self, merchant_id: UUID | str, at: datetime) -> None:
        """Remember when the last expiry notice was sent."""
        db_item = self.session.get(MerchantDB, str(merchant_id))
        if db_item is None:
            raise ValueError(f"Merchant with id {merchant_id} not found")
        db_item.last_subscription_notice_at = at
        self.session.flush()

    def add_relationship(
        self, relationship: MerchantRetailerRelationship
    ) -> MerchantRetailerRelationship:
        """Create a merchant-retailer relationship."""
        db_item = MerchantRetailerDB(
            id=str(relationship.id),
            merchant_id=str(relationship.merchant_id),
            retailer_id=str(relationship.retailer_id),
            status=relationship.status.value,
            listing_status=relationship.listing_status.value,
        )
        self.session.add(db_item)
        self.session.flush()
        return relationship

    def _to_domain(self, db_item: MerchantDB) -> Merchant:
        """Convert DB model to domain model."""
        return Merchant(
            id=UUID(db_item.id),
            name=db_item.name,
            tier=db_item.tier,
            subscription_status=SubscriptionStatus(db_item.subscription_status),
            subscription_expires_at=db_item.subscription_expires_at,
            last_subscription_notice_at=db_item.last_subscription_notice_at,
            created_at=db_item.created_at,
        )


# ============================================================================
# Feed and Run Repositories
# ============================================================================


class FeedRepository:
    """Repository for feed configuration and scheduling state."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, feed: Feed) -> Feed:
        """Create a new feed."""
        db_item = FeedDB(id=str(feed.id))
        self._apply(db_item, feed)
        db_item.created_at = feed.created_at
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, feed_id: UUID | str) -> Feed | None:
        """Get a feed by ID."""
        db_item = self.session.get(FeedDB, str(feed_id))
        return self._to_domain(db_item) if db_item else None

    def get_by_name(self, name: str) -> Feed | None:
        """Get a feed by its unique name."""
        stmt = select(FeedDB).where(FeedDB.name == name)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def list_all(self, status: FeedStatus | None = None) -> list[Feed]:
        """List feeds, optionally filtered by status."""
        stmt = select(FeedDB).order_by(FeedDB.name)
        if status is not None:
            stmt = stmt.where(FeedDB.status == status.value)
        return [self._to_domain(f) for f in self.session.execute(stmt).scalars().all()]

    def update(self, feed: Feed) -> Feed:
        """Update an existing feed."""
        db_item = self.session.get(FeedDB, str(feed.id))
        if db_item is None:
            raise ValueError(f"Feed with id {feed.id} not found")
        self._apply(db_item, feed)
        db_item.updated_at = utc_now()
        self.session.flush()
        return self._to_domain(db_item)

    def claim_due(self, now: datetime, limit: int = 10) -> list[Feed]:
        """
        Claim enabled feeds whose next run is due and advance their schedule.

        Rows are read with FOR UPDATE SKIP LOCKED, so a concurrent caller
        in another transaction skips them instead of blocking. Each feed is
        then advanced with an update conditioned on the next_run_at that
        was read; a feed another caller advanced first is not claimed. The
        claim only becomes durable when the caller commits.

        Args:
            now: Reference time
            limit: Maximum number of feeds to claim

        Returns:
            Claimed feeds with their advanced next_run_at
        """
        stmt = (
            select(FeedDB)
            .where(
                FeedDB.status == FeedStatus.ENABLED.value,
                FeedDB.next_run_at.is_not(None),
                FeedDB.next_run_at <= now,
                FeedDB.manual_run_pending.is_(False),
            )
            .order_by(FeedDB.next_run_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidates = list(self.session.execute(stmt).scalars().all())

        claimed: list[Feed] = []
        for db_item in candidates:
            previous = db_item.next_run_at
            advanced = next_run_after(previous, db_item.schedule_frequency_hours, now)
            result = self.session.execute(
                update(FeedDB)
                .where(FeedDB.id == db_item.id, FeedDB.next_run_at == previous)
                .values(next_run_at=advanced, updated_at=now),
                execution_options={"synchronize_session": False},
            )
            if result.rowcount != 1:
                continue
            feed = self._to_domain(db_item)
            feed.next_run_at = advanced
            feed.updated_at = now
            claimed.append(feed)
            self.session.expire(db_item, ["next_run_at", "updated_at"])
        return claimed

    def list_manual_pending(self, limit: int = 10) -> list[Feed]:
        """List feeds with a pending manual run, regardless of pause/disable."""
        stmt = (
            select(FeedDB)
            .where(
                FeedDB.manual_run_pending.is_(True),
                FeedDB.status.in_(
                    [
                        FeedStatus.ENABLED.value,
                        FeedStatus.PAUSED.value,
                        FeedStatus.DISABLED.value,
                        FeedStatus.FAILED.value,
                    ]
                ),
            )
            .order_by(FeedDB.updated_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [self._to_domain(f) for f in self.session.execute(stmt).scalars().all()]

    def request_manual_run(self, feed_id: UUID | str) -> bool:
        """Flag a feed for a manual run. Returns False if the feed does not exist."""
        db_item = self.session.get(FeedDB, str(feed_id))
        if db_item is None:
            return False
        db_item.manual_run_pending = True
        db_item.updated_at = utc_now()
        self.session.flush()
        return True

    def clear_manual_run(self, feed_id: UUID | str) -> None:
        """Clear the manual-run flag once the run has started."""
        db_item = self.session.get(FeedDB, str(feed_id))
        if db_item is not None and db_item.manual_run_pending:
            db_item.manual_run_pending = False
            self.session.flush()

    def _apply(self, db_item: FeedDB, feed: Feed) -> None:
        """Copy domain fields onto a DB row."""
        db_item.name = feed.name
        db_item.retailer_id = str(feed.retailer_id)
        db_item.merchant_id = str(feed.merchant_id) if feed.merchant_id else None
        db_item.transport = feed.transport.value
        db_item.url = feed.url
        db_item.host = feed.host
        db_item.port = feed.port
        db_item.path = feed.path
        db_item.username = feed.username
        db_item.password = feed.password
        db_item.format = feed.format.value
        db_item.compression = feed.compression.value
        db_item.max_file_size_bytes = feed.max_file_size_bytes
        db_item.max_rows = feed.max_rows
        db_item.schedule_frequency_hours = feed.schedule_frequency_hours
        db_item.next_run_at = feed.next_run_at
        db_item.manual_run_pending = feed.manual_run_pending
        db_item.status = feed.status.value
        db_item.consecutive_failures = feed.consecutive_failures
        db_item.last_content_hash = feed.last_content_hash
        db_item.last_remote_mtime = feed.last_remote_mtime
        db_item.last_remote_size = feed.last_remote_size
        db_item.last_run_at = feed.last_run_at
        db_item.last_success_at = feed.last_success_at
        db_item.last_failure_at = feed.last_failure_at

    def _to_domain(self, db_item: FeedDB) -> Feed:
        """Convert DB model to domain model."""
        return Feed(
            id=UUID(db_item.id),
            name=db_item.name,
            retailer_id=UUID(db_item.retailer_id),
            merchant_id=_opt_uuid(db_item.merchant_id),
            transport=FeedTransport(db_item.transport),
            url=db_item.url,
            host=db_item.host,
            port=db_item.port,
            path=db_item.path,
            username=db_item.username,
            password=db_item.password,
            format=FeedFormat(db_item.format),
            compression=Compression(db_item.compression),
            max_file_size_bytes=db_item.max_file_size_bytes,
            max_rows=db_item.max_rows,
            schedule_frequency_hours=db_item.schedule_frequency_hours,
            next_run_at=db_item.next_run_at,
            manual_run_pending=db_item.manual_run_pending,
            status=FeedStatus(db_item.status),
            consecutive_failures=db_item.consecutive_failures,
            last_content_hash=db_item.last_content_hash,
            last_remote_mtime=db_item.last_remote_mtime,
            last_remote_size=db_item.last_remote_size,
            last_run_at=db_item.last_run_at,
            last_success_at=db_item.last_success_at,
            last_failure_at=db_item.last_failure_at,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )


class FeedRunRepository:
    """Repository for feed runs and their row-level errors."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, run: FeedRun) -> FeedRun:
        """Create a new run."""
        db_item = FeedRunDB(id=str(run.id), feed_id=str(run.feed_id))
        self._apply(db_item, run)
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, run_id: UUID | str) -> FeedRun | None:
        """Get a run by ID."""
        db_item = self.session.get(FeedRunDB, str(run_id))
        return self._to_domain(db_item) if db_item else None

    def update(self, run: FeedRun) -> FeedRun:
        """Update an existing run."""
        db_item = self.session.get(FeedRunDB, str(run.id))
        if db_item is None:
            raise ValueError(f"Feed run with id {run.id} not found")
        self._apply(db_item, run)
        self.session.flush()
        return self._to_domain(db_item)

    def list_for_feed(self, feed_id: UUID | str, limit: int = 20) -> list[FeedRun]:
        """List the most recent runs of a feed."""
        stmt = (
            select(FeedRunDB)
            .where(FeedRunDB.feed_id == str(feed_id))
            .order_by(FeedRunDB.started_at.desc())
            .limit(limit)
        )
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def list_recent(self, limit: int = 20, status: RunStatus | None = None) -> list[FeedRun]:
        """List the most recent runs across all feeds."""
        stmt = select(FeedRunDB).order_by(FeedRunDB.started_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(FeedRunDB.status == status.value)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def count(self, feed_id: UUID | str | None = None) -> int:
        """Count runs, optionally for one feed."""
        stmt = select(func.count()).select_from(FeedRunDB)
        if feed_id is not None:
            stmt = stmt.where(FeedRunDB.feed_id == str(feed_id))
        return self.session.execute(stmt).scalar() or 0

    def add_errors(self, run_id: UUID | str, errors: Iterable[RunError]) -> int:
        """Record row-level errors against a run."""
        count = 0
        for error in errors:
            self.session.add(
                FeedRunErrorDB(
                    run_id=str(run_id),
                    row_number=error.row_number,
                    code=error.code,
                    message=error.message,
                    raw_row_json=json.dumps(error.raw_row, default=str) if error.raw_row else None,
                )
            )
            count += 1
        self.session.flush()
        return count

    def list_errors(self, run_id: UUID | str) -> list[RunError]:
        """List the row-level errors of a run in row order."""
        stmt = (
            select(FeedRunErrorDB)
            .where(FeedRunErrorDB.run_id == str(run_id))
            .order_by(FeedRunErrorDB.row_number)
        )
        return [
            RunError(
                row_number=e.row_number,
                code=e.code,
                message=e.message,
                raw_row=json.loads(e.raw_row_json) if e.raw_row_json else None,
            )
            for e in self.session.execute(stmt).scalars().all()
        ]

    def delete_terminal_before(self, cutoff: datetime, batch_size: int = 1000) -> int:
        """
        Delete one batch of finished runs older than cutoff.

        RUNNING runs are never selected. Errors and seen rows of the
        deleted runs go with them.

        Returns:
            Number of runs deleted in this batch
        """
        stmt = (
            select(FeedRunDB.id)
            .where(
                FeedRunDB.status.in_([RunStatus.SUCCEEDED.value, RunStatus.FAILED.value]),
                FeedRunDB.finished_at.is_not(None),
                FeedRunDB.finished_at < cutoff,
            )
            .order_by(FeedRunDB.finished_at)
            .limit(batch_size)
        )
        run_ids = list(self.session.execute(stmt).scalars().all())
        if not run_ids:
            return 0

        self.session.execute(delete(FeedRunErrorDB).where(FeedRunErrorDB.run_id.in_(run_ids)))
        self.session.execute(
            delete(SourceProductSeenDB).where(SourceProductSeenDB.run_id.in_(run_ids))
        )
        self.session.execute(
            delete(FeedRunDB).where(FeedRunDB.id.in_(run_ids)),
            execution_options={"synchronize_session": False},
        )
        self.session.flush()
        return len(run_ids)

    def _apply(self, db_item: FeedRunDB, run: FeedRun) -> None:
        """Copy domain fields onto a DB row."""
        db_item.trigger = run.trigger.value
        db_item.status = run.status.value
        db_item.started_at = run.started_at
        db_item.finished_at = run.finished_at
        db_item.duration_ms = run.duration_ms
        db_item.rows_read = run.rows_read
        db_item.rows_parsed = run.rows_parsed
        db_item.row_count = run.row_count
        db_item.products_upserted = run.products_upserted
        db_item.prices_written = run.prices_written
        db_item.prices_unchanged = run.prices_unchanged
        db_item.quarantined_count = run.quarantined_count
        db_item.error_count = run.error_count
        db_item.skipped_reason = run.skipped_reason.value if run.skipped_reason else None
        db_item.error_code = run.error_code.value if run.error_code else None
        db_item.error_message = run.error_message
        db_item.active_count_before = run.active_count_before
        db_item.seen_success_count = run.seen_success_count
        db_item.would_expire_count = run.would_expire_count
        db_item.url_hash_fallback_count = run.url_hash_fallback_count
        db_item.expiry_blocked = run.expiry_blocked
        db_item.expiry_blocked_reason = (
            run.expiry_blocked_reason.value if run.expiry_blocked_reason else None
        )

    def _to_domain(self, db_item: FeedRunDB) -> FeedRun:
        """Convert DB model to domain model."""
        return FeedRun(
            id=UUID(db_item.id),
            feed_id=UUID(db_item.feed_id),
            trigger=RunTrigger(db_item.trigger),
            status=RunStatus(db_item.status),
            started_at=db_item.started_at,
            finished_at=db_item.finished_at,
            duration_ms=db_item.duration_ms,
            rows_read=db_item.rows_read,
            rows_parsed=db_item.rows_parsed,
            row_count=db_item.row_count,
            products_upserted=db_item.products_upserted,
            prices_written=db_item.prices_written,
            prices_unchanged=db_item.prices_unchanged,
            quarantined_count=db_item.quarantined_count,
            error_count=db_item.error_count,
            skipped_reason=SkipReason(db_item.skipped_reason) if db_item.skipped_reason else None,
            error_code=FeedErrorCode(db_item.error_code) if db_item.error_code else None,
            error_message=db_item.error_message,
            active_count_before=db_item.active_count_before or 0,
            seen_success_count=db_item.seen_success_count or 0,
            would_expire_count=db_item.would_expire_count or 0,
            url_hash_fallback_count=db_item.url_hash_fallback_count or 0,
            expiry_blocked=bool(db_item.expiry_blocked),
            expiry_blocked_reason=(
                ExpiryBlockReason(db_item.expiry_blocked_reason)
                if db_item.expiry_blocked_reason
                else None
            ),
        )


# ============================================================================
# Quarantine Repository
# ============================================================================


class QuarantineRepository:
    """Repository for quarantined records and their corrections."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, record_id: UUID | str) -> QuarantinedRecord | None:
        """Get a quarantined record by ID."""
        db_item = self.session.get(QuarantinedRecordDB, str(record_id))
        return self._to_domain(db_item) if db_item else None

    def get_by_match_key(self, feed_id: UUID | str, match_key: str) -> QuarantinedRecord | None:
        """Get a quarantined record by its per-feed dedup key."""
        stmt = select(QuarantinedRecordDB).where(
            QuarantinedRecordDB.feed_id == str(feed_id),
            QuarantinedRecordDB.match_key == match_key,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def upsert(self, record: QuarantinedRecord) -> tuple[QuarantinedRecord, bool]:
        """
        Insert a quarantined record or refresh the existing one for the same key.

        Records already resolved or dismissed keep their terminal status.

        Returns:
            (record, created)
        """
        stmt = select(QuarantinedRecordDB).where(
            QuarantinedRecordDB.feed_id == str(record.feed_id),
            QuarantinedRecordDB.match_key == record.match_key,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        if db_item is not None:
            if db_item.status == QuarantineStatus.QUARANTINED.value:
                db_item.run_id = str(record.run_id) if record.run_id else db_item.run_id
                db_item.raw_data_json = json.dumps(record.raw_data, default=str)
                db_item.parsed_fields_json = json.dumps(record.parsed_fields, default=str)
                self._set_errors(db_item, record.blocking_errors)
                db_item.updated_at = utc_now()
                self.session.flush()
            return self._to_domain(db_item), False

        db_item = QuarantinedRecordDB(
            id=str(record.id),
            feed_id=str(record.feed_id),
            retailer_id=str(record.retailer_id),
            run_id=str(record.run_id) if record.run_id else None,
            match_key=record.match_key,
            status=record.status.value,
            raw_data_json=json.dumps(record.raw_data, default=str),
            parsed_fields_json=json.dumps(record.parsed_fields, default=str),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        self._set_errors(db_item, record.blocking_errors)
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item), True

    def update(self, record: QuarantinedRecord) -> QuarantinedRecord:
        """Persist status and outcome fields of a record."""
        db_item = self.session.get(QuarantinedRecordDB, str(record.id))
        if db_item is None:
            raise ValueError(f"Quarantined record with id {record.id} not found")
        db_item.status = record.status.value
        db_item.parsed_fields_json = json.dumps(record.parsed_fields, default=str)
        self._set_errors(db_item, record.blocking_errors)
        db_item.source_product_id = (
            str(record.source_product_id) if record.source_product_id else None
        )
        db_item.dismissed_by = record.dismissed_by
        db_item.dismiss_note = record.dismiss_note
        db_item.resolved_at = record.resolved_at
        db_item.dismissed_at = record.dismissed_at
        db_item.updated_at = utc_now()
        self.session.flush()
        return self._to_domain(db_item)

    def add_correction(self, correction: FeedCorrection) -> FeedCorrection:
        """Append a correction; sequence is assigned per record."""
        stmt = select(func.max(FeedCorrectionDB.sequence)).where(
            FeedCorrectionDB.quarantined_record_id == str(correction.quarantined_record_id)
        )
        sequence = (self.session.execute(stmt).scalar() or 0) + 1
        db_item = FeedCorrectionDB(
            id=str(correction.id),
            quarantined_record_id=str(correction.quarantined_record_id),
            sequence=sequence,
            field_name=correction.field_name,
            old_value=correction.old_value,
            new_value=correction.new_value,
            author=correction.author,
            created_at=correction.created_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._correction_to_domain(db_item)

    def list_corrections(self, record_id: UUID | str) -> list[FeedCorrection]:
        """List corrections of a record, oldest first."""
        stmt = (
            select(FeedCorrectionDB)
            .where(FeedCorrectionDB.quarantined_record_id == str(record_id))
            .order_by(FeedCorrectionDB.sequence)
        )
        return [self._correction_to_domain(c) for c in self.session.execute(stmt).scalars().all()]

    def list_filtered(
        self,
        status: QuarantineStatus | None = QuarantineStatus.QUARANTINED,
        feed_id: UUID | str | None = None,
        retailer_id: UUID | str | None = None,
        error_code: BlockingErrorCode | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QuarantinedRecord]:
        """List records matching a filter, oldest first."""
        stmt = self._filtered(status, feed_id, retailer_id, error_code)
        stmt = stmt.order_by(QuarantinedRecordDB.created_at, QuarantinedRecordDB.id)
        stmt = stmt.limit(limit).offset(offset)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def count_filtered(
        self,
        status: QuarantineStatus | None = QuarantineStatus.QUARANTINED,
        feed_id: UUID | str | None = None,
        retailer_id: UUID | str | None = None,
        error_code: BlockingErrorCode | None = None,
    ) -> int:
        """Count records matching a filter."""
        subquery = self._filtered(status, feed_id, retailer_id, error_code).subquery()
        stmt = select(func.count()).select_from(subquery)
        return self.session.execute(stmt).scalar() or 0

    def _filtered(
        self,
        status: QuarantineStatus | None,
        feed_id: UUID | str | None,
        retailer_id: UUID | str | None,
        error_code: BlockingErrorCode | None,
    ) -> Any:
        stmt = select(QuarantinedRecordDB)
        if status is not None:
            stmt = stmt.where(QuarantinedRecordDB.status == status.value)
        if feed_id is not None:
            stmt = stmt.where(QuarantinedRecordDB.feed_id == str(feed_id))
        if retailer_id is not None:
            stmt = stmt.where(QuarantinedRecordDB.retailer_id == str(retailer_id))
        if error_code is not None:
            stmt = stmt.where(QuarantinedRecordDB.primary_error_code == error_code.value)
        return stmt

    def _set_errors(self, db_item: QuarantinedRecordDB, errors: list[BlockingError]) -> None:
        db_item.blocking_errors_json = json.dumps([e.model_dump(mode="json") for e in errors])
        db_item.primary_error_code = errors[0].code.value if errors else None

    def _to_domain(self, db_item: QuarantinedRecordDB) -> QuarantinedRecord:
        """Convert DB model to domain model."""
        return QuarantinedRecord(
            id=UUID(db_item.id),
            feed_id=UUID(db_item.feed_id),
            retailer_id=UUID(db_item.retailer_id),
            run_id=_opt_uuid(db_item.run_id),
            match_key=db_item.match_key,
            status=QuarantineStatus(db_item.status),
            raw_data=json.loads(db_item.raw_data_json),
            parsed_fields=json.loads(db_item.parsed_fields_json),
            blocking_errors=[
                BlockingError.model_validate(e) for e in json.loads(db_item.blocking_errors_json)
            ],
            source_product_id=_opt_uuid(db_item.source_product_id),
            dismissed_by=db_item.dismissed_by,
            dismiss_note=db_item.dismiss_note,
            resolved_at=db_item.resolved_at,
            dismissed_at=db_item.dismissed_at,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )

    def _correction_to_domain(self, db_item: FeedCorrectionDB) -> FeedCorrection:
        return FeedCorrection(
            id=UUID(db_item.id),
            quarantined_record_id=UUID(db_item.quarantined_record_id),
            sequence=db_item.sequence,
            field_name=db_item.field_name,
            old_value=db_item.old_value,
            new_value=db_item.new_value,
            author=db_item.author,
            created_at=db_item.created_at,
        )


# ============================================================================
# Source Product and Price Repositories
# ============================================================================


class SourceProductRepository:
    """Repository for retailer-side product identities."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, product_id: UUID | str) -> SourceProduct | None:
        """Get a source product by ID."""
        db_item = self.session.get(SourceProductDB, str(product_id))
        return self._to_domain(db_item) if db_item else None

    def get_by_identity_keys(
        self, feed_id: UUID | str, keys: Sequence[str]
    ) -> dict[str, SourceProduct]:
        """Look up source products of a feed by identity key."""
        if not keys:
            return {}
        stmt = select(SourceProductDB).where(
            SourceProductDB.feed_id == str(feed_id),
            SourceProductDB.identity_key.in_(list(keys)),
        )
        return {
            p.identity_key: self._to_domain(p) for p in self.session.execute(stmt).scalars().all()
        }

    def upsert_many(self, products: Sequence[SourceProduct]) -> list[tuple[SourceProduct, bool]]:
        """
        Upsert source products keyed by (feed, identity key).

        Descriptive fields are refreshed on existing rows; ids are stable.

        Returns:
            (product, created) per input, in input order
        """
        results: list[tuple[SourceProduct, bool]] = []
        by_feed: dict[str, list[SourceProduct]] = {}
        for product in products:
            by_feed.setdefault(str(product.feed_id), []).append(product)

        existing: dict[tuple[str, str], SourceProductDB] = {}
        for feed_id, feed_products in by_feed.items():
            stmt = select(SourceProductDB).where(
                SourceProductDB.feed_id == feed_id,
                SourceProductDB.identity_key.in_([p.identity_key for p in feed_products]),
            )
            for db_item in self.session.execute(stmt).scalars().all():
                existing[(feed_id, db_item.identity_key)] = db_item

        for product in products:
            key = (str(product.feed_id), product.identity_key)
            db_item = existing.get(key)
            created = db_item is None
            if db_item is None:
                db_item = SourceProductDB(
                    id=str(product.id),
                    feed_id=str(product.feed_id),
                    retailer_id=str(product.retailer_id),
                    identity_type=product.identity_type.value,
                    identity_key=product.identity_key,
                    created_at=product.created_at,
                )
                self.session.add(db_item)
                existing[key] = db_item
            self._apply(db_item, product)
            results.append((product, created))

        self.session.flush()
        return [(self._to_domain(existing[(str(p.feed_id), p.identity_key)]), c) for p, c in results]

    def upsert_by_record_hash(self, product: SourceProduct) -> tuple[SourceProduct, bool]:
        """
        Upsert a source product keyed by its record hash.

        Falls back to the identity key so a promoted record merges with a
        product the feed already produced.

        Returns:
            (product, created)
        """
        if not product.record_hash:
            raise ValueError("record_hash is required")

        stmt = select(SourceProductDB).where(
            SourceProductDB.feed_id == str(product.feed_id),
            SourceProductDB.record_hash == product.record_hash,
        )
        db_item = self.session.execute(stmt).scalars().first()
        if db_item is None:
            stmt = select(SourceProductDB).where(
                SourceProductDB.feed_id == str(product.feed_id),
                SourceProductDB.identity_key == product.identity_key,
            )
            db_item = self.session.execute(stmt).scalar_one_or_none()

        created = db_item is None
        if db_item is None:
            db_item = SourceProductDB(
                id=str(product.id),
                feed_id=str(product.feed_id),
                retailer_id=str(product.retailer_id),
                identity_type=product.identity_type.value,
                identity_key=product.identity_key,
                created_at=product.created_at,
            )
            self.session.add(db_item)
        self._apply(db_item, product)
        db_item.record_hash = product.record_hash
        self.session.flush()
        return self._to_domain(db_item), created

    def list_ids(
        self, feed_id: UUID | str | None = None, limit: int = 1000, offset: int = 0
    ) -> list[str]:
        """List source product IDs in a stable order for batch processing."""
        stmt = select(SourceProductDB.id).order_by(SourceProductDB.id).limit(limit).offset(offset)
        if feed_id is not None:
            stmt = stmt.where(SourceProductDB.feed_id == str(feed_id))
        return list(self.session.execute(stmt).scalars().all())

    def count(self, feed_id: UUID | str | None = None) -> int:
        """Count source products, optionally for one feed."""
        stmt = select(func.count()).select_from(SourceProductDB)
        if feed_id is not None:
            stmt = stmt.where(SourceProductDB.feed_id == str(feed_id))
        return self.session.execute(stmt).scalar() or 0

    def _apply(self, db_item: SourceProductDB, product: SourceProduct) -> None:
        db_item.title = product.title
        db_item.url = product.url
        db_item.url_hash = product.url_hash
        db_item.upc = product.upc
        db_item.sku = product.sku
        db_item.network_item_id = product.network_item_id
        db_item.brand = product.brand
        db_item.category = product.category
        db_item.image_url = product.image_url
        db_item.description = product.description
        db_item.updated_at = utc_now()

    def _to_domain(self, db_item: SourceProductDB) -> SourceProduct:
        """Convert DB model to domain model."""
        return SourceProduct(
            id=UUID(db_item.id),
            feed_id=UUID(db_item.feed_id),
            retailer_id=UUID(db_item.retailer_id),
            identity_type=IdentityType(db_item.identity_type),
            identity_key=db_item.identity_key,
            record_hash=db_item.record_hash,
            title=db_item.title,
            url=db_item.url,
            url_hash=db_item.url_hash,
            upc=db_item.upc,
            sku=db_item.sku,
            network_item_id=db_item.network_item_id,
            brand=db_item.brand,
            category=db_item.category,
            image_url=db_item.image_url,
            description=db_item.description,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )


class PriceRepository:
    """
    Repository for price history, presence and seen facts.

    insert_observations, upsert_presence and mark_seen are all safe to
    repeat with the same arguments.
    """

    def __init__(self, session: Session):
        self.session = session

    def latest_signatures(
        self, product_ids: Sequence[UUID | str]
    ) -> dict[str, tuple[str, datetime]]:
        """
        Get the most recent (signature, observed_at) per source product.

        Products without any observation are absent from the result.
        """
        ids = [str(p) for p in product_ids]
        if not ids:
            return {}
        latest = (
            select(
                PriceDB.source_product_id.label("product_id"),
                func.max(PriceDB.observed_at).label("observed_at"),
            )
            .where(PriceDB.source_product_id.in_(ids))
            .group_by(PriceDB.source_product_id)
            .subquery()
        )
        stmt = select(PriceDB.source_product_id, PriceDB.price_signature, PriceDB.observed_at).join(
            latest,
            (PriceDB.source_product_id == latest.c.product_id)
            & (PriceDB.observed_at == latest.c.observed_at),
        )
        return {
            product_id: (signature, observed_at)
            for product_id, signature, observed_at in self.session.execute(stmt).all()
        }

    def insert_observations(self, observations: Iterable[PriceObservation]) -> int:
        """
        Append price observations, skipping any that already exist.

        A row conflicting on (source_product_id, run_id, price_signature)
        is a no-op, never an error.

        Returns:
            Number of rows actually inserted
        """
        inserted = 0
        for obs in observations:
            stmt = (
                _dialect_insert(self.session, PriceDB.__table__)
                .values(
                    id=str(obs.id),
                    source_product_id=str(obs.source_product_id),
                    retailer_id=str(obs.retailer_id),
                    price=obs.price,
                    currency=obs.currency,
                    original_price=obs.original_price,
                    price_type=obs.price_type.value,
                    in_stock=obs.in_stock,
                    price_signature=obs.price_signature,
                    run_trigger=obs.run_trigger.value,
                    run_id=str(obs.run_id),
                    observed_at=obs.observed_at,
                    created_at=utc_now(),
                )
                .on_conflict_do_nothing(
                    index_elements=["source_product_id", "run_id", "price_signature"]
                )
            )
            inserted += self.session.execute(stmt).rowcount or 0
        return inserted

    def upsert_presence(
        self, product_ids: Iterable[UUID | str], seen_at: datetime, run_id: UUID | str | None = None
    ) -> int:
        """Record last-seen-at for each product, overwriting any previous value."""
        count = 0
        for product_id in product_ids:
            insert_stmt = _dialect_insert(self.session, SourceProductPresenceDB.__table__).values(
                source_product_id=str(product_id),
                last_seen_at=seen_at,
                last_run_id=str(run_id) if run_id else None,
                updated_at=seen_at,
            )
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=["source_product_id"],
                set_={
                    "last_seen_at": insert_stmt.excluded.last_seen_at,
                    "last_run_id": insert_stmt.excluded.last_run_id,
                    "updated_at": insert_stmt.excluded.updated_at,
                },
            )
            self.session.execute(stmt)
            count += 1
        return count

    def mark_seen(
        self, run_id: UUID | str, product_ids: Iterable[UUID | str], seen_at: datetime
    ) -> int:
        """
        Record that a run saw each product. Insert-or-ignore.

        Returns:
            Number of new seen rows
        """
        inserted = 0
        for product_id in product_ids:
            stmt = (
                _dialect_insert(self.session, SourceProductSeenDB.__table__)
                .values(run_id=str(run_id), source_product_id=str(product_id), seen_at=seen_at)
                .on_conflict_do_nothing(index_elements=["run_id", "source_product_id"])
            )
            inserted += self.session.execute(stmt).rowcount or 0
        return inserted

    def get_presence(self, product_id: UUID | str) -> datetime | None:
        """Get the last-seen-at of a product."""
        db_item = self.session.get(SourceProductPresenceDB, str(product_id))
        return db_item.last_seen_at if db_item else None

    def count_seen(self, run_id: UUID | str) -> int:
        """Count products seen by a run."""
        stmt = (
            select(func.count())
            .select_from(SourceProductSeenDB)
            .where(SourceProductSeenDB.run_id == str(run_id))
        )
        return self.session.execute(stmt).scalar() or 0

    def count_active(
        self, feed_id: UUID | str, since: datetime, run_id: UUID | str | None = None
    ) -> int:
        """
        Count a feed's products promoted at or after `since`.

        With run_id, only products that run also saw are counted.
        Products never promoted are excluded.
        """
        stmt = (
            select(func.count())
            .select_from(SourceProductPresenceDB)
            .join(SourceProductDB, SourceProductDB.id == SourceProductPresenceDB.source_product_id)
            .where(
                SourceProductDB.feed_id == str(feed_id),
                SourceProductPresenceDB.last_seen_success_at.is_not(None),
                SourceProductPresenceDB.last_seen_success_at >= since,
            )
        )
        if run_id is not None:
            stmt = stmt.join(
                SourceProductSeenDB,
                (SourceProductSeenDB.source_product_id == SourceProductPresenceDB.source_product_id)
                & (SourceProductSeenDB.run_id == str(run_id)),
            )
        return self.session.execute(stmt).scalar() or 0

    def promote_seen(self, run_id: UUID | str, promoted_at: datetime) -> int:
        """
        Set last_seen_success_at for every product the run saw.

        Returns:
            Number of presence rows promoted
        """
        seen = select(SourceProductSeenDB.source_product_id).where(
            SourceProductSeenDB.run_id == str(run_id)
        )
        result = self.session.execute(
            update(SourceProductPresenceDB)
            .where(SourceProductPresenceDB.source_product_id.in_(seen))
            .values(last_seen_success_at=promoted_at, updated_at=promoted_at),
            execution_options={"synchronize_session": False},
        )
        return result.rowcount or 0

    def get_last_success(self, product_id: UUID | str) -> datetime | None:
        """Get when a product was last promoted, if ever."""
        stmt = select(SourceProductPresenceDB.last_seen_success_at).where(
            SourceProductPresenceDB.source_product_id == str(product_id)
        )
        return self.session.execute(stmt).scalar()

    def list_for_product(self, product_id: UUID | str) -> list[PriceObservation]:
        """List a product's observations, oldest first."""
        stmt = (
            select(PriceDB)
            .where(PriceDB.source_product_id == str(product_id))
            .order_by(PriceDB.observed_at)
        )
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def count(
        self, product_id: UUID | str | None = None, run_id: UUID | str | None = None
    ) -> int:
        """Count observations, optionally per product and/or run."""
        stmt = select(func.count()).select_from(PriceDB)
        if product_id is not None:
            stmt = stmt.where(PriceDB.source_product_id == str(product_id))
        if run_id is not None:
            stmt = stmt.where(PriceDB.run_id == str(run_id))
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: PriceDB) -> PriceObservation:
        """Convert DB model to domain model."""
        return PriceObservation(
            id=UUID(db_item.id),
            source_product_id=UUID(db_item.source_product_id),
            retailer_id=UUID(db_item.retailer_id),
            price=db_item.price,
            currency=db_item.currency,
            original_price=db_item.original_price,
            price_type=PriceType(db_item.price_type),
            in_stock=db_item.in_stock,
            price_signature=db_item.price_signature,
            run_trigger=RunTrigger(db_item.run_trigger),
            run_id=UUID(db_item.run_id),
            observed_at=db_item.observed_at,
        )


# ============================================================================
# Catalog Repositories
# ============================================================================


class CatalogRepository:
    """Repository for canonical catalog products."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, product: CanonicalProduct) -> CanonicalProduct:
        """Create a new canonical product."""
        db_item = CanonicalProductDB(
            id=str(product.id),
            name=product.name,
            brand=product.brand,
            upc=product.upc,
            caliber=product.caliber,
            grain_weight=product.grain_weight,
            round_count=product.round_count,
            created_at=product.created_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, product_id: UUID | str) -> CanonicalProduct | None:
        """Get a canonical product by ID."""
        db_item = self.session.get(CanonicalProductDB, str(product_id))
        return self._to_domain(db_item) if db_item else None

    def find_by_upc(self, upc: str) -> list[CanonicalProduct]:
        """Find canonical products with a normalized UPC."""
        stmt = select(CanonicalProductDB).where(CanonicalProductDB.upc == upc)
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def find_candidates(
        self, brand: str | None, caliber: str | None, limit: int = 200
    ) -> list[CanonicalProduct]:
        """Find fingerprint candidates sharing brand or caliber."""
        conditions = []
        if brand:
            conditions.append(func.lower(CanonicalProductDB.brand) == brand.lower())
        if caliber:
            conditions.append(func.lower(CanonicalProductDB.caliber) == caliber.lower())
        if not conditions:
            return []
        stmt = (
            select(CanonicalProductDB)
            .where(or_(*conditions))
            .order_by(CanonicalProductDB.name)
            .limit(limit)
        )
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def _to_domain(self, db_item: CanonicalProductDB) -> CanonicalProduct:
        """Convert DB model to domain model."""
        return CanonicalProduct(
            id=UUID(db_item.id),
            name=db_item.name,
            brand=db_item.brand,
            upc=db_item.upc,
            caliber=db_item.caliber,
            grain_weight=db_item.grain_weight,
            round_count=db_item.round_count,
            created_at=db_item.created_at,
        )


class ProductLinkRepository:
    """Repository for resolver output. One link per source product."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, source_product_id: UUID | str) -> ProductLink | None:
        """Get the link for a source product."""
        db_item = self.session.get(ProductLinkDB, str(source_product_id))
        return self._to_domain(db_item) if db_item else None

    def upsert(self, link: ProductLink) -> ProductLink:
        """Insert or replace the link for a source product."""
        db_item = self.session.get(ProductLinkDB, str(link.source_product_id))
        if db_item is None:
            db_item = ProductLinkDB(
                source_product_id=str(link.source_product_id),
                created_at=link.created_at,
            )
            self.session.add(db_item)
        db_item.product_id = str(link.product_id) if link.product_id else None
        db_item.status = link.status.value
        db_item.match_type = link.match_type.value
        db_item.confidence = link.confidence
        db_item.tier = link.tier.value
        db_item.resolver_version = link.resolver_version
        db_item.reason_code = link.reason_code
        db_item.evidence_json = json.dumps(link.evidence, default=str)
        db_item.updated_at = utc_now()
        self.session.flush()
        return self._to_domain(db_item)

    def count_by_status(self) -> dict[LinkStatus, int]:
        """Count links per status."""
        stmt = select(ProductLinkDB.status, func.count()).group_by(ProductLinkDB.status)
        return {LinkStatus(status): count for status, count in self.session.execute(stmt).all()}

    def list_stale_ids(self, resolver_version: str, limit: int = 1000) -> list[str]:
        """List source product IDs whose link was produced by another resolver version."""
        stmt = (
            select(ProductLinkDB.source_product_id)
            .where(
                ProductLinkDB.resolver_version != resolver_version,
                ProductLinkDB.match_type != MatchType.MANUAL.value,
            )
            .order_by(ProductLinkDB.source_product_id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    def _to_domain(self, db_item: ProductLinkDB) -> ProductLink:
        """Convert DB model to domain model."""
        return ProductLink(
            source_product_id=UUID(db_item.source_product_id),
            product_id=_opt_uuid(db_item.product_id),
            status=LinkStatus(db_item.status),
            match_type=MatchType(db_item.match_type),
            confidence=db_item.confidence,
            tier=ConfidenceTier(db_item.tier),
            resolver_version=db_item.resolver_version,
            reason_code=db_item.reason_code,
            evidence=json.loads(db_item.evidence_json),
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )
