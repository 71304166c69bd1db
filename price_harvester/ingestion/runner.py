"""
Feed Runner Module
==================

Executes one feed run as a unit of work:

    subscription check -> fetch -> parse -> identity -> validate/quarantine
    -> write -> circuit breaker -> promote -> resolve

The run row is committed as RUNNING before any network I/O and no
transaction is held while fetching. Transport failures are classified:
retryable ones with attempts left are re-raised for the queue to retry,
everything else fails the run and counts toward auto-disable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from price_harvester.core.enums import (
    EventKind,
    ExpiryBlockReason,
    FailureKind,
    FeedErrorCode,
    FeedStatus,
    RunStatus,
    RunTrigger,
    SkipReason,
)
from price_harvester.core.schema import Feed, FeedRun, RunError, utc_now
from price_harvester.core.subscription import SubscriptionPolicy
from price_harvester.db.engine import Database
from price_harvester.db.repositories import FeedRepository, FeedRunRepository, MerchantRepository
from price_harvester.ingestion.circuit_breaker import evaluate_circuit_breaker, promote_products
from price_harvester.ingestion.config import (
    CircuitBreakerConfig,
    HarvesterRegistry,
    QuarantineConfig,
    ResolverConfig,
    WriterConfig,
)
from price_harvester.ingestion.errors import FeedError, classify_exception
from price_harvester.ingestion.fetcher import ChangeState, FetchResult, TransportFetcher
from price_harvester.ingestion.notifications import FeedEvent, LoggingEmitter, NotificationEmitter
from price_harvester.ingestion.parser import FeedParser, ParseResult
from price_harvester.ingestion.quarantine import QuarantineManager
from price_harvester.ingestion.resolver import ProductResolver
from price_harvester.ingestion.storage import UploadStorage
from price_harvester.ingestion.writer import PriceWriter

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Result of FeedRunner.run."""

    feed_id: UUID
    run_id: UUID | None = None
    status: RunStatus | None = None
    skipped_reason: SkipReason | None = None
    skip_note: str | None = None
    rows_read: int = 0
    rows_parsed: int = 0
    products_upserted: int = 0
    prices_written: int = 0
    prices_unchanged: int = 0
    quarantined: int = 0
    error_count: int = 0
    resolved: int = 0
    error_code: FeedErrorCode | None = None
    error_message: str | None = None
    auto_disabled: bool = False
    expiry_blocked_reason: ExpiryBlockReason | None = None
    events: list[EventKind] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "feed_id": str(self.feed_id),
            "run_id": str(self.run_id) if self.run_id else None,
            "status": self.status.value if self.status else None,
            "skipped_reason": self.skipped_reason.value if self.skipped_reason else None,
            "skip_note": self.skip_note,
            "rows_read": self.rows_read,
            "rows_parsed": self.rows_parsed,
            "products_upserted": self.products_upserted,
            "prices_written": self.prices_written,
            "prices_unchanged": self.prices_unchanged,
            "quarantined": self.quarantined,
            "error_count": self.error_count,
            "resolved": self.resolved,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": self.error_message,
            "auto_disabled": self.auto_disabled,
            "expiry_blocked_reason": (
                self.expiry_blocked_reason.value if self.expiry_blocked_reason else None
            ),
            "events": [e.value for e in self.events],
        }


class FeedRunner:
    """
    Runs the ingestion pipeline for one feed.

    Every stage opens its own short session from the injected Database.
    """

    def __init__(
        self,
        database: Database,
        fetcher: TransportFetcher,
        emitter: NotificationEmitter | None = None,
        quarantine_config: QuarantineConfig | None = None,
        writer_config: WriterConfig | None = None,
        resolver_config: ResolverConfig | None = None,
        subscription: SubscriptionPolicy | None = None,
        max_consecutive_failures: int = 3,
        circuit_breaker_config: CircuitBreakerConfig | None = None,
    ) -> None:
        """
        Initialize the runner.

        Args:
            database: Database client
            fetcher: Transport fetcher
            emitter: Event sink; logs only when omitted
            quarantine_config: Validation settings
            writer_config: Price writer settings
            resolver_config: Resolver settings
            subscription: Merchant subscription policy
            max_consecutive_failures: Failures before a feed is auto-disabled
            circuit_breaker_config: Staleness circuit breaker thresholds
        """
        self.database = database
        self.fetcher = fetcher
        self.emitter = emitter or LoggingEmitter()
        self.quarantine_config = quarantine_config or QuarantineConfig()
        self.writer_config = writer_config or WriterConfig()
        self.resolver_config = resolver_config or ResolverConfig()
        self.subscription = subscription or SubscriptionPolicy()
        self.max_consecutive_failures = max_consecutive_failures
        self.circuit_breaker_config = circuit_breaker_config or CircuitBreakerConfig()

    @classmethod
    def from_registry(
        cls,
        database: Database,
        registry: HarvesterRegistry,
        upload_storage: UploadStorage | None = None,
        emitter: NotificationEmitter | None = None,
    ) -> FeedRunner:
        """Create a runner from configuration."""
        fetch = registry.fetch
        fetcher = TransportFetcher(
            user_agent=fetch.user_agent,
            timeout=fetch.scheduled_timeout,
            interactive_timeout=fetch.interactive_timeout,
            max_file_size_bytes=fetch.max_file_size_bytes,
            upload_storage=upload_storage,
        )
        return cls(
            database=database,
            fetcher=fetcher,
            emitter=emitter,
            quarantine_config=registry.quarantine,
            writer_config=registry.writer,
            resolver_config=registry.resolver,
            subscription=registry.subscription,
            max_consecutive_failures=registry.max_consecutive_failures,
            circuit_breaker_config=registry.circuit_breaker,
        )

    async def run(
        self,
        feed_id: UUID | str,
        trigger: RunTrigger = RunTrigger.SCHEDULED,
        attempt: int = 1,
        max_attempts: int = 3,
    ) -> RunOutcome:
        """
        Run one feed end to end.

        Args:
            feed_id: Feed to run
            trigger: Why the run was started
            attempt: 1-based attempt number from the queue
            max_attempts: Attempts the queue will make in total

        Returns:
            RunOutcome

        Raises:
            FeedError: A retryable transport failure with attempts left
            ValueError: If the feed does not exist
        """
        feed_uuid = UUID(str(feed_id))
        outcome = RunOutcome(feed_id=feed_uuid)
        pending_events: list[FeedEvent] = []

        # Stage 1: subscription gate and run creation
        with self.database.session() as session:
            feeds = FeedRepository(session)
            feed = feeds.get_by_id(feed_uuid)
            if feed is None:
                raise ValueError(f"Feed {feed_id} not found")

            now = utc_now()
            if trigger == RunTrigger.MANUAL:
                feeds.clear_manual_run(feed.id)
                feed.manual_run_pending = False

            skip = self._check_subscription(session, feed, now, pending_events)
            if skip is None and trigger != RunTrigger.MANUAL and feed.status != FeedStatus.ENABLED:
                skip = f"feed is {feed.status.value}"
            if skip is not None:
                session.commit()
                outcome.skip_note = skip
                logger.info(f"Skipping feed '{feed.name}': {skip}")
                await self._emit_all(pending_events, outcome)
                return outcome

            run = FeedRun(
                feed_id=feed.id,
                trigger=RunTrigger.RETRY if attempt > 1 else trigger,
                started_at=now,
            )
            run = FeedRunRepository(session).create(run)
            feed.last_run_at = now
            feeds.update(feed)
            session.commit()

        outcome.run_id = run.id
        await self._emit_all(pending_events, outcome)
        logger.info(f"Run {run.id} started for feed '{feed.name}' ({run.trigger.value}, attempt {attempt})")

        # Stage 2: fetch, outside any transaction
        try:
            fetched = await self.fetcher.fetch(feed, previous=ChangeState.from_feed(feed))
        except Exception as e:
            error = classify_exception(e)
            return await self._fail(feed.id, run, error, outcome, attempt, max_attempts)

        if fetched.unchanged:
            had_failures = self._succeed_unchanged(feed.id, run, fetched, outcome)
            if had_failures:
                await self._emit(
                    FeedEvent.for_feed(EventKind.FEED_RECOVERED, feed, run_id=run.id), outcome
                )
            return outcome

        # Stage 3: parse (CPU-bound, off the event loop)
        parser = FeedParser(max_rows=feed.max_rows)
        parsed = await asyncio.to_thread(parser.parse, fetched.content, fetched.detected_format)
        if parsed.document_error is not None and parsed.rows_read == 0:
            error = FeedError(
                FeedErrorCode.INVALID_FORMAT,
                parsed.document_error.message,
                FailureKind.PERMANENT,
            )
            return await self._fail(feed.id, run, error, outcome, attempt, max_attempts)

        # Stage 4: validate, quarantine, write
        try:
            changed_ids, had_failures = self._persist(feed.id, run, fetched, parsed, outcome)
        except SQLAlchemyError as e:
            logger.exception(f"Database error while writing run {run.id}")
            error = FeedError(FeedErrorCode.DATABASE_ERROR, str(e), FailureKind.TRANSIENT)
            return await self._fail(feed.id, run, error, outcome, attempt, max_attempts)

        if had_failures:
            await self._emit(
                FeedEvent.for_feed(EventKind.FEED_RECOVERED, feed, run_id=run.id), outcome
            )
        if outcome.expiry_blocked_reason is not None:
            await self._emit(
                FeedEvent.for_feed(
                    EventKind.EXPIRY_BLOCKED,
                    feed,
                    run_id=run.id,
                    error_code=outcome.expiry_blocked_reason.value,
                    message="Promotion withheld by the staleness circuit breaker",
                    active_count_before=run.active_count_before,
                    would_expire_count=run.would_expire_count,
                    url_hash_fallback_count=run.url_hash_fallback_count,
                ),
                outcome,
            )

        # Stage 5: resolve new or changed products
        if changed_ids:
            outcome.resolved = self._resolve(changed_ids)

        logger.info(
            f"Run {run.id} succeeded: read={outcome.rows_read} parsed={outcome.rows_parsed} "
            f"written={outcome.prices_written} quarantined={outcome.quarantined} "
            f"errors={outcome.error_count}"
        )
        return outcome

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _check_subscription(
        self, session: Session, feed: Feed, now: datetime, events: list[FeedEvent]
    ) -> str | None:
        """Return a skip note if the merchant's subscription blocks the run."""
        if feed.merchant_id is None:
            return None

        merchants = MerchantRepository(session)
        merchant = merchants.get_by_id(feed.merchant_id)
        decision = self.subscription.evaluate(merchant, now)
        if merchant is None or not (decision.should_skip or decision.in_grace):
            return None

        if self.subscription.should_notify(merchant.last_subscription_notice_at, now):
            merchants.record_subscription_notice(merchant.id, now)
            if decision.should_skip:
                events.append(
                    FeedEvent.for_feed(
                        EventKind.SUBSCRIPTION_SKIP,
                        feed,
                        message=f"Merchant subscription expired ({decision.reason})",
                        expires_at=decision.expires_at.isoformat() if decision.expires_at else None,
                    )
                )
            else:
                events.append(
                    FeedEvent.for_feed(
                        EventKind.FEED_WARNING,
                        feed,
                        message="Merchant subscription expired; running in grace period",
                        grace_ends_at=decision.grace_ends_at.isoformat() if decision.grace_ends_at else None,
                    )
                )

        if decision.should_skip:
            return f"subscription {decision.reason}"
        return None

    def _persist(
        self,
        feed_id: UUID,
        run: FeedRun,
        fetched: FetchResult,
        parsed: ParseResult,
        outcome: RunOutcome,
    ) -> tuple[list[UUID], bool]:
        """Write one run's results in a single transaction."""
        with self.database.session() as session:
            feeds = FeedRepository(session)
            runs = FeedRunRepository(session)
            feed = feeds.get_by_id(feed_id)
            if feed is None:
                raise ValueError(f"Feed {feed_id} disappeared during run {run.id}")

            manager = QuarantineManager(session, self.quarantine_config)
            accepted = []
            for record in parsed.records:
                validation = manager.validate(record)
                if validation.accepted:
                    accepted.append(record)
                else:
                    manager.quarantine(feed, run.id, record, validation.blocking_errors)
                    outcome.quarantined += 1

            written = PriceWriter(session, self.writer_config.heartbeat_hours).write_prices(
                run, feed, accepted
            )

            breaker = evaluate_circuit_breaker(
                session,
                feed.id,
                run.id,
                run.started_at,
                url_hash_fallback_count=written.url_hash_fallbacks,
                products_processed=written.products_upserted,
                config=self.circuit_breaker_config,
            )
            run.active_count_before = breaker.metrics.active_count_before
            run.seen_success_count = breaker.metrics.seen_success_count
            run.would_expire_count = breaker.metrics.would_expire_count
            run.url_hash_fallback_count = breaker.metrics.url_hash_fallback_count
            if breaker.passed:
                promote_products(session, run.id, run.started_at)
            else:
                run.expiry_blocked = True
                run.expiry_blocked_reason = breaker.reason
                outcome.expiry_blocked_reason = breaker.reason

            runs.add_errors(
                run.id,
                [
                    RunError(
                        row_number=e.row_number,
                        code=e.code.value,
                        message=e.message,
                        raw_row=e.raw,
                    )
                    for e in parsed.errors
                ],
            )

            outcome.rows_read = parsed.rows_read
            outcome.rows_parsed = parsed.rows_parsed
            outcome.products_upserted = written.products_upserted
            outcome.prices_written = written.prices_written
            outcome.prices_unchanged = written.prices_unchanged
            outcome.error_count = len(parsed.errors)

            run.rows_read = parsed.rows_read
            run.rows_parsed = parsed.rows_parsed
            run.row_count = parsed.rows_read
            run.products_upserted = written.products_upserted
            run.prices_written = written.prices_written
            run.prices_unchanged = written.prices_unchanged
            run.quarantined_count = outcome.quarantined
            run.error_count = outcome.error_count
            self._finish(run, RunStatus.SUCCEEDED)
            runs.update(run)

            had_failures = self._mark_success(feed, fetched)
            feeds.update(feed)
            session.commit()

        outcome.status = RunStatus.SUCCEEDED
        return written.changed_product_ids, had_failures

    def _succeed_unchanged(
        self, feed_id: UUID, run: FeedRun, fetched: FetchResult, outcome: RunOutcome
    ) -> bool:
        """
        Close a run whose content did not change since the last success.

        Returns:
            True if the feed had failures before this run
        """
        had_failures = False
        with self.database.session() as session:
            feeds = FeedRepository(session)
            feed = feeds.get_by_id(feed_id)
            run.skipped_reason = fetched.skipped_reason
            run.row_count = 0
            self._finish(run, RunStatus.SUCCEEDED)
            FeedRunRepository(session).update(run)
            if feed is not None:
                had_failures = self._mark_success(feed, fetched)
                feeds.update(feed)
            session.commit()

        outcome.status = RunStatus.SUCCEEDED
        outcome.skipped_reason = fetched.skipped_reason
        logger.info(f"Run {run.id} skipped: {fetched.skipped_reason.value}")
        return had_failures

    def _mark_success(self, feed: Feed, fetched: FetchResult) -> bool:
        """
        Apply success bookkeeping to a feed.

        Returns:
            True if the feed had failures before this run
        """
        now = utc_now()
        had_failures = feed.consecutive_failures > 0 or feed.status == FeedStatus.FAILED
        feed.consecutive_failures = 0
        feed.last_success_at = now
        if fetched.content_hash:
            feed.last_content_hash = fetched.content_hash
        if fetched.remote_mtime is not None:
            feed.last_remote_mtime = fetched.remote_mtime
        if fetched.remote_size is not None:
            feed.last_remote_size = fetched.remote_size
        if feed.status == FeedStatus.FAILED:
            feed.status = FeedStatus.ENABLED
            feed.next_run_at = now + timedelta(hours=feed.schedule_frequency_hours)
            logger.info(f"Feed '{feed.name}' re-enabled after a successful run")
        return had_failures

    async def _fail(
        self,
        feed_id: UUID,
        run: FeedRun,
        error: FeedError,
        outcome: RunOutcome,
        attempt: int,
        max_attempts: int,
    ) -> RunOutcome:
        """
        Mark the run failed and update the feed's failure state.

        Raises:
            FeedError: When the error is retryable and attempts remain
        """
        will_retry = error.retryable and attempt < max_attempts
        events: list[FeedEvent] = []

        with self.database.session() as session:
            feeds = FeedRepository(session)
            run.error_code = error.code
            run.error_message = error.message
            self._finish(run, RunStatus.FAILED)
            FeedRunRepository(session).update(run)

            feed = feeds.get_by_id(feed_id)
            if feed is not None:
                feed.last_failure_at = utc_now()
                if not will_retry:
                    feed.consecutive_failures += 1
                    events.append(
                        FeedEvent.for_feed(
                            EventKind.FEED_FAILED,
                            feed,
                            run_id=run.id,
                            error_code=error.code,
                            message=error.message,
                            consecutive_failures=feed.consecutive_failures,
                        )
                    )
                    if (
                        feed.consecutive_failures >= self.max_consecutive_failures
                        and feed.status != FeedStatus.FAILED
                    ):
                        feed.status = FeedStatus.FAILED
                        feed.next_run_at = None
                        outcome.auto_disabled = True
                        events.append(
                            FeedEvent.for_feed(
                                EventKind.FEED_AUTO_DISABLED,
                                feed,
                                run_id=run.id,
                                error_code=error.code,
                                message=(
                                    f"Disabled after {feed.consecutive_failures} consecutive failures"
                                ),
                            )
                        )
                feeds.update(feed)
            session.commit()

        outcome.status = RunStatus.FAILED
        outcome.error_code = error.code
        outcome.error_message = error.message

        if will_retry:
            logger.warning(
                f"Run {run.id} failed with {error.code.value} (attempt {attempt}/{max_attempts}), "
                f"will retry: {error.message}"
            )
            raise error

        logger.error(f"Run {run.id} failed with {error.code.value}: {error.message}")
        await self._emit_all(events, outcome)
        return outcome

    def _resolve(self, product_ids: list[UUID]) -> int:
        """Resolve changed products; a resolver failure does not fail the committed run."""
        try:
            with self.database.session() as session:
                summary = ProductResolver(session, self.resolver_config).resolve_batch(product_ids)
                session.commit()
        except SQLAlchemyError:
            logger.exception(f"Resolution of {len(product_ids)} products failed")
            return 0
        return summary.total

    @staticmethod
    def _finish(run: FeedRun, status: RunStatus) -> None:
        run.status = status
        run.finished_at = utc_now()
        run.duration_ms = int((run.finished_at - run.started_at).total_seconds() * 1000)

    async def _emit_all(self, events: list[FeedEvent], outcome: RunOutcome) -> None:
        for event in events:
            await self._emit(event, outcome)

    async def _emit(self, event: FeedEvent, outcome: RunOutcome) -> None:
        """Emit an event; failures are logged, never raised."""
        outcome.events.append(event.kind)
        try:
            await self.emitter.emit(event)
        except Exception as e:
            logger.warning(f"Failed to emit {event.kind.value} for feed {event.feed_id}: {e}")
