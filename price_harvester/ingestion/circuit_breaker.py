"""
Staleness Circuit Breaker Module
================================

Guards promotion of a run's products against bad feeds.

Presence carries two timestamps. last_seen_at moves whenever a run sees a
product; last_seen_success_at only moves when the run is promoted. Before
promoting, the breaker compares the feed's previously promoted products
with the ones this run saw:

    active_before = promoted within the expiry window
    seen_success  = active_before products this run also saw
    would_expire  = active_before - seen_success

Promotion is withheld when too many products would expire, or when an
established feed suddenly falls back to URL-hash identities.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from price_harvester.core.enums import ExpiryBlockReason
from price_harvester.db.repositories import PriceRepository
from price_harvester.ingestion.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


@dataclass
class BreakerMetrics:
    """Counts the breaker decided on."""

    active_count_before: int = 0
    seen_success_count: int = 0
    would_expire_count: int = 0
    url_hash_fallback_count: int = 0
    products_processed: int = 0

    @property
    def expiry_percentage(self) -> float:
        if self.active_count_before <= 0:
            return 0.0
        return self.would_expire_count / self.active_count_before * 100

    @property
    def url_hash_percentage(self) -> float:
        if self.products_processed <= 0:
            return 0.0
        return self.url_hash_fallback_count / self.products_processed * 100


@dataclass
class BreakerResult:
    """Outcome of evaluate_circuit_breaker."""

    passed: bool
    reason: ExpiryBlockReason | None = None
    metrics: BreakerMetrics = field(default_factory=BreakerMetrics)


def evaluate_circuit_breaker(
    session: Session,
    feed_id: UUID,
    run_id: UUID,
    started_at: datetime,
    url_hash_fallback_count: int,
    products_processed: int,
    config: CircuitBreakerConfig | None = None,
) -> BreakerResult:
    """
    Decide whether a run's products may be promoted.

    Must run after the run's seen rows are written and before promotion.
    All window arithmetic uses the run's start time.

    Args:
        session: Database session
        feed_id: Feed of the run
        run_id: The run being evaluated
        started_at: Run start time
        url_hash_fallback_count: Products of this run identified by URL hash
        products_processed: Products upserted by this run
        config: Thresholds; defaults when omitted

    Returns:
        BreakerResult with the metrics and, when tripped, the reason
    """
    config = config or CircuitBreakerConfig()
    prices = PriceRepository(session)
    window_start = started_at - timedelta(hours=config.expiry_hours)

    active_before = prices.count_active(feed_id, window_start)
    seen_success = prices.count_active(feed_id, window_start, run_id=run_id)
    raw_expire = active_before - seen_success
    if raw_expire < 0:
        logger.warning(
            f"Run {run_id}: negative expire count ({active_before} active, {seen_success} seen)"
        )

    metrics = BreakerMetrics(
        active_count_before=active_before,
        seen_success_count=seen_success,
        would_expire_count=max(0, raw_expire),
        url_hash_fallback_count=url_hash_fallback_count,
        products_processed=products_processed,
    )

    if not config.enabled:
        logger.warning(f"Run {run_id}: circuit breaker bypassed by configuration")
        return BreakerResult(passed=True, metrics=metrics)

    reason = _trip_reason(metrics, config)
    if reason is not None:
        logger.warning(
            f"Run {run_id}: circuit breaker tripped ({reason.value}): "
            f"would_expire={metrics.would_expire_count}/{metrics.active_count_before} "
            f"({metrics.expiry_percentage:.1f}%), url_hash={metrics.url_hash_fallback_count}/"
            f"{metrics.products_processed} ({metrics.url_hash_percentage:.1f}%)"
        )
        return BreakerResult(passed=False, reason=reason, metrics=metrics)

    logger.debug(
        f"Run {run_id}: circuit breaker passed, would_expire={metrics.would_expire_count} "
        f"({metrics.expiry_percentage:.1f}%)"
    )
    return BreakerResult(passed=True, metrics=metrics)


def _trip_reason(metrics: BreakerMetrics, config: CircuitBreakerConfig) -> ExpiryBlockReason | None:
    # The absolute cap applies even to young feeds
    if metrics.would_expire_count >= config.absolute_expiry_cap:
        return ExpiryBlockReason.SPIKE_THRESHOLD_EXCEEDED

    # Percentage checks only apply to established feeds
    if metrics.active_count_before < config.min_active_for_percentage_check:
        return None

    if (
        metrics.expiry_percentage > config.max_expiry_percentage
        and metrics.would_expire_count >= config.min_expiry_count
    ):
        return ExpiryBlockReason.SPIKE_THRESHOLD_EXCEEDED
    if metrics.url_hash_fallback_count > config.absolute_url_hash_cap:
        return ExpiryBlockReason.DATA_QUALITY_URL_HASH_SPIKE
    if metrics.url_hash_percentage > config.max_url_hash_percentage:
        return ExpiryBlockReason.DATA_QUALITY_URL_HASH_SPIKE
    return None


def promote_products(session: Session, run_id: UUID, promoted_at: datetime) -> int:
    """Mark every product the run saw as successfully seen at promoted_at."""
    promoted = PriceRepository(session).promote_seen(run_id, promoted_at)
    logger.info(f"Run {run_id}: promoted {promoted} products")
    return promoted
