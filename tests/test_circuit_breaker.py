"""Tests for the staleness circuit breaker."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from price_harvester.core.enums import ExpiryBlockReason, IdentityType
from price_harvester.core.schema import Feed, SourceProduct
from price_harvester.db.repositories import PriceRepository, SourceProductRepository
from price_harvester.ingestion.circuit_breaker import (
    BreakerMetrics,
    evaluate_circuit_breaker,
    promote_products,
)
from price_harvester.ingestion.config import CircuitBreakerConfig

PREVIOUS = datetime(2025, 3, 1, 6, 0, 0)
NOW = datetime(2025, 3, 1, 12, 0, 0)

# Small thresholds so a handful of products counts as an established feed
SMALL_FEED = CircuitBreakerConfig(min_active_for_percentage_check=3, min_expiry_count=1)


def _products(session: Session, feed: Feed, count: int) -> list[SourceProduct]:
    candidates = [
        SourceProduct(
            feed_id=feed.id,
            retailer_id=feed.retailer_id,
            identity_type=IdentityType.SKU,
            identity_key=f"SKU:FED-{i}",
            title=f"Federal 9mm #{i}",
            url=f"https://example.com/product/{i}",
        )
        for i in range(count)
    ]
    return [product for product, _ in SourceProductRepository(session).upsert_many(candidates)]


def _see(session: Session, run_id, products: list[SourceProduct], at: datetime) -> None:
    prices = PriceRepository(session)
    ids = [p.id for p in products]
    prices.upsert_presence(ids, at, run_id)
    prices.mark_seen(run_id, ids, at)


@pytest.fixture
def promoted(session: Session, feed: Feed) -> list[SourceProduct]:
    """Four products seen and promoted by an earlier run."""
    products = _products(session, feed, 4)
    previous_run = uuid4()
    _see(session, previous_run, products, PREVIOUS)
    promote_products(session, previous_run, PREVIOUS)
    session.commit()
    return products


class TestMetrics:
    """Tests for breaker arithmetic."""

    def test_percentages_guard_zero(self) -> None:
        """Empty denominators give zero percent."""
        metrics = BreakerMetrics()

        assert metrics.expiry_percentage == 0.0
        assert metrics.url_hash_percentage == 0.0

    def test_percentages(self) -> None:
        """Percentages use active-before and processed counts."""
        metrics = BreakerMetrics(
            active_count_before=4,
            would_expire_count=1,
            url_hash_fallback_count=3,
            products_processed=6,
        )

        assert metrics.expiry_percentage == 25.0
        assert metrics.url_hash_percentage == 50.0


class TestEvaluate:
    """Tests for evaluate_circuit_breaker."""

    def test_full_run_passes(self, session: Session, feed: Feed, promoted) -> None:
        """A run that sees every active product expires nothing."""
        run_id = uuid4()
        _see(session, run_id, promoted, NOW)

        result = evaluate_circuit_breaker(session, feed.id, run_id, NOW, 0, 4, SMALL_FEED)

        assert result.passed is True
        assert result.reason is None
        assert result.metrics.active_count_before == 4
        assert result.metrics.seen_success_count == 4
        assert result.metrics.would_expire_count == 0

    def test_expiry_spike_trips(self, session: Session, feed: Feed, promoted) -> None:
        """Losing most previously active products withholds promotion."""
        run_id = uuid4()
        _see(session, run_id, promoted[:1], NOW)

        result = evaluate_circuit_breaker(session, feed.id, run_id, NOW, 0, 1, SMALL_FEED)

        assert result.passed is False
        assert result.reason == ExpiryBlockReason.SPIKE_THRESHOLD_EXCEEDED
        assert result.metrics.would_expire_count == 3
        assert result.metrics.expiry_percentage == 75.0

    def test_url_hash_spike_trips(self, session: Session, feed: Feed, promoted) -> None:
        """An established feed falling back to URL hashes withholds promotion."""
        run_id = uuid4()
        _see(session, run_id, promoted, NOW)

        result = evaluate_circuit_breaker(session, feed.id, run_id, NOW, 3, 4, SMALL_FEED)

        assert result.passed is False
        assert result.reason == ExpiryBlockReason.DATA_QUALITY_URL_HASH_SPIKE
        assert result.metrics.would_expire_count == 0

    def test_new_feed_is_not_judged_by_percentages(
        self, session: Session, feed: Feed, promoted
    ) -> None:
        """Below the minimum active count only the absolute cap applies."""
        run_id = uuid4()
        _see(session, run_id, promoted[:1], NOW)

        result = evaluate_circuit_breaker(session, feed.id, run_id, NOW, 1, 1, CircuitBreakerConfig())

        assert result.passed is True
        assert result.metrics.would_expire_count == 3

    def test_absolute_cap_applies_to_new_feeds(
        self, session: Session, feed: Feed, promoted
    ) -> None:
        """Reaching the absolute expiry cap trips regardless of feed age."""
        config = CircuitBreakerConfig(absolute_expiry_cap=4)

        result = evaluate_circuit_breaker(session, feed.id, uuid4(), NOW, 0, 0, config)

        assert result.passed is False
        assert result.reason == ExpiryBlockReason.SPIKE_THRESHOLD_EXCEEDED

    def test_disabled_breaker_passes(self, session: Session, feed: Feed, promoted) -> None:
        """A disabled breaker still reports metrics but never blocks."""
        config = CircuitBreakerConfig(enabled=False, absolute_expiry_cap=1)

        result = evaluate_circuit_breaker(session, feed.id, uuid4(), NOW, 0, 0, config)

        assert result.passed is True
        assert result.metrics.would_expire_count == 4

    def test_products_outside_window_are_not_active(
        self, session: Session, feed: Feed, promoted
    ) -> None:
        """Promotions older than the expiry window no longer count."""
        later = PREVIOUS + timedelta(hours=49)

        result = evaluate_circuit_breaker(session, feed.id, uuid4(), later, 0, 0, SMALL_FEED)

        assert result.passed is True
        assert result.metrics.active_count_before == 0

    def test_unpromoted_products_are_excluded(self, session: Session, feed: Feed) -> None:
        """Products seen but never promoted do not count as active."""
        products = _products(session, feed, 5)
        _see(session, uuid4(), products, PREVIOUS)
        session.commit()

        result = evaluate_circuit_breaker(session, feed.id, uuid4(), NOW, 0, 0, SMALL_FEED)

        assert result.passed is True
        assert result.metrics.active_count_before == 0

    def test_other_feeds_are_ignored(
        self, session: Session, make_feed, feed: Feed, promoted
    ) -> None:
        """Active counts are per feed."""
        other = make_feed("other-feed")

        result = evaluate_circuit_breaker(session, other.id, uuid4(), NOW, 0, 0, SMALL_FEED)

        assert result.metrics.active_count_before == 0


class TestPromote:
    """Tests for promotion."""

    def test_promotes_only_seen_products(self, session: Session, feed: Feed, promoted) -> None:
        """Only products the run saw get a new success timestamp."""
        run_id = uuid4()
        _see(session, run_id, promoted[:2], NOW)

        assert promote_products(session, run_id, NOW) == 2
        session.commit()

        prices = PriceRepository(session)
        assert prices.get_last_success(promoted[0].id) == NOW
        assert prices.get_last_success(promoted[3].id) == PREVIOUS
        assert prices.get_presence(promoted[0].id) == NOW

    def test_seen_without_promotion_keeps_success(
        self, session: Session, feed: Feed, promoted
    ) -> None:
        """Seeing a product moves last_seen_at but not last_seen_success_at."""
        _see(session, uuid4(), promoted[:1], NOW)
        session.commit()

        prices = PriceRepository(session)
        assert prices.get_presence(promoted[0].id) == NOW
        assert prices.get_last_success(promoted[0].id) == PREVIOUS
