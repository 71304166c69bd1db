"""
Price Writer Module
===================

Idempotent, provenance-tagged writes of accepted records into source
products, price history, presence and seen facts.

Safe to retry: a second write of the same run inserts nothing new because
price inserts are conflict-safe on (source product, run, signature).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from price_harvester.core.enums import IdentityType, PriceType
from price_harvester.core.schema import Feed, FeedRun, PriceObservation, SourceProduct, utc_now
from price_harvester.db.repositories import PriceRepository, SourceProductRepository
from price_harvester.ingestion.identity import derive_identity, signature_hash, url_hash
from price_harvester.ingestion.parser import ParsedRecord

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Counts from one write_prices call."""

    products_upserted: int = 0
    products_created: int = 0
    prices_written: int = 0
    prices_unchanged: int = 0
    duplicates_in_run: int = 0
    seen_count: int = 0
    url_hash_fallbacks: int = 0
    changed_product_ids: list[UUID] = field(default_factory=list)


class PriceWriter:
    """
    Writes accepted records for one run.

    A price observation is written when the source product is new, when
    its signature differs from the latest stored one, or when the latest
    observation is older than the heartbeat interval.
    """

    def __init__(self, session: Session, heartbeat_hours: int = 24) -> None:
        """
        Initialize the writer.

        Args:
            session: Database session (caller commits)
            heartbeat_hours: Re-write unchanged prices after this long
        """
        self.session = session
        self.heartbeat = timedelta(hours=heartbeat_hours)
        self.products = SourceProductRepository(session)
        self.prices = PriceRepository(session)

    def write_prices(self, run: FeedRun, feed: Feed, records: list[ParsedRecord]) -> WriteResult:
        """
        Persist records accepted during a run.

        Args:
            run: The run providing provenance (id and trigger)
            feed: Feed the records came from
            records: Validated records

        Returns:
            WriteResult with counts and the ids of new or changed products
        """
        result = WriteResult()
        if not records:
            return result

        # Last row wins per identity key
        latest_rows: dict[str, ParsedRecord] = {}
        for record in records:
            key = derive_identity(record).key
            if key in latest_rows:
                result.duplicates_in_run += 1
                del latest_rows[key]
            latest_rows[key] = record

        candidates = [self._to_source_product(feed, record) for record in latest_rows.values()]
        upserted = self.products.upsert_many(candidates)
        result.products_upserted = len(upserted)
        result.products_created = sum(1 for _, created in upserted if created)
        result.url_hash_fallbacks = sum(
            1 for product, _ in upserted if product.identity_type == IdentityType.URL_HASH
        )

        product_ids = [str(product.id) for product, _ in upserted]
        latest = self.prices.latest_signatures(product_ids)
        now = utc_now()

        observations: list[PriceObservation] = []
        for (product, created), record in zip(upserted, latest_rows.values(), strict=True):
            signature = signature_hash(record.price, record.currency, record.original_price)
            previous = latest.get(str(product.id))
            changed = created or previous is None or previous[0] != signature
            heartbeat_due = previous is not None and now - previous[1] >= self.heartbeat

            if not changed and not heartbeat_due:
                result.prices_unchanged += 1
                continue
            if changed:
                result.changed_product_ids.append(product.id)

            observations.append(
                PriceObservation(
                    source_product_id=product.id,
                    retailer_id=feed.retailer_id,
                    price=record.price,
                    currency=record.currency,
                    original_price=record.original_price,
                    price_type=(
                        PriceType.SALE
                        if record.original_price is not None and record.original_price > record.price
                        else PriceType.REGULAR
                    ),
                    in_stock=record.in_stock,
                    price_signature=signature,
                    run_trigger=run.trigger,
                    run_id=run.id,
                    observed_at=now,
                )
            )

        result.prices_written = self.prices.insert_observations(observations)
        self.prices.upsert_presence(product_ids, now, run.id)
        result.seen_count = self.prices.mark_seen(run.id, product_ids, now)
        self.session.flush()

        logger.info(
            f"Run {run.id}: {result.products_upserted} products "
            f"({result.products_created} new), {result.prices_written} prices written, "
            f"{result.prices_unchanged} unchanged"
        )
        return result

    @staticmethod
    def _to_source_product(feed: Feed, record: ParsedRecord) -> SourceProduct:
        identity = derive_identity(record)
        return SourceProduct(
            feed_id=feed.id,
            retailer_id=feed.retailer_id,
            identity_type=identity.type,
            identity_key=identity.key,
            title=record.name,
            url=record.url,
            url_hash=url_hash(record.url),
            upc=record.upc,
            sku=record.sku,
            network_item_id=record.network_item_id,
            brand=record.brand,
            category=record.category,
            image_url=record.image_url,
            description=record.description,
        )
