"""Tests for idempotent price writes."""

from datetime import timedelta
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from price_harvester.core.enums import PriceType, RunTrigger
from price_harvester.core.schema import Feed, FeedRun, utc_now
from price_harvester.db.models import PriceDB
from price_harvester.db.repositories import (
    FeedRunRepository,
    PriceRepository,
    SourceProductRepository,
)
from price_harvester.ingestion.identity import signature_hash
from price_harvester.ingestion.parser import ParsedRecord
from price_harvester.ingestion.writer import PriceWriter


def _record(price: str = "18.99", **overrides) -> ParsedRecord:
    fields = {
        "row_number": 1,
        "name": "Test 9mm FMJ",
        "url": "https://example.com/product",
        "price": Decimal(price),
        "upc": "012345678901",
        "sku": "FED-9",
    }
    fields.update(overrides)
    return ParsedRecord(**fields)


def _new_run(session: Session, feed: Feed, trigger: RunTrigger = RunTrigger.SCHEDULED) -> FeedRun:
    run = FeedRunRepository(session).create(FeedRun(feed_id=feed.id, trigger=trigger))
    session.commit()
    return run


class TestPriceWriter:
    """Tests for PriceWriter.write_prices."""

    def test_first_write(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """A new product gets one observation tagged with the run."""
        writer = PriceWriter(session)

        result = writer.write_prices(run, feed, [_record()])
        session.commit()

        assert result.products_upserted == 1
        assert result.products_created == 1
        assert result.prices_written == 1
        assert result.seen_count == 1
        assert len(result.changed_product_ids) == 1

        prices = PriceRepository(session).list_for_product(result.changed_product_ids[0])
        assert len(prices) == 1
        assert prices[0].price == Decimal("18.99")
        assert prices[0].price_signature == signature_hash("18.99", "USD")
        assert prices[0].run_id == run.id
        assert prices[0].run_trigger == RunTrigger.SCHEDULED

    def test_rewrite_same_run_is_noop(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """Writing the same run twice adds no rows."""
        writer = PriceWriter(session)
        writer.write_prices(run, feed, [_record()])

        again = writer.write_prices(run, feed, [_record()])
        session.commit()

        assert again.prices_written == 0
        assert again.seen_count == 0
        assert PriceRepository(session).count() == 1
        assert SourceProductRepository(session).count() == 1

    def test_unchanged_price_is_skipped(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """A later run with the same price writes nothing but still marks presence."""
        writer = PriceWriter(session)
        writer.write_prices(run, feed, [_record()])
        second = _new_run(session, feed)

        result = writer.write_prices(second, feed, [_record()])
        session.commit()

        assert result.prices_written == 0
        assert result.prices_unchanged == 1
        assert result.changed_product_ids == []
        assert result.seen_count == 1
        prices = PriceRepository(session)
        assert prices.count() == 1
        assert prices.count_seen(second.id) == 1

    def test_changed_price_is_written(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """A new signature appends an observation to the history."""
        writer = PriceWriter(session)
        first = writer.write_prices(run, feed, [_record("18.99")])
        second_run = _new_run(session, feed, RunTrigger.MANUAL)

        result = writer.write_prices(second_run, feed, [_record("16.49", original_price=Decimal("18.99"))])
        session.commit()

        assert result.prices_written == 1
        history = PriceRepository(session).list_for_product(first.changed_product_ids[0])
        assert [p.price for p in history] == [Decimal("18.99"), Decimal("16.49")]
        assert history[-1].price_type == PriceType.SALE
        assert history[-1].run_trigger == RunTrigger.MANUAL

    def test_heartbeat_rewrites_stale_price(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """An unchanged price older than the heartbeat interval is written again."""
        writer = PriceWriter(session, heartbeat_hours=24)
        writer.write_prices(run, feed, [_record()])
        session.execute(update(PriceDB).values(observed_at=utc_now() - timedelta(hours=25)))
        session.commit()

        result = writer.write_prices(_new_run(session, feed), feed, [_record()])

        assert result.prices_written == 1
        assert result.prices_unchanged == 0
        assert result.changed_product_ids == []

    def test_duplicate_identity_last_row_wins(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """Two rows with one identity produce one product with the later price."""
        writer = PriceWriter(session)

        result = writer.write_prices(
            run, feed, [_record("18.99", row_number=1), _record("17.99", row_number=2)]
        )
        session.commit()

        assert result.duplicates_in_run == 1
        assert result.products_upserted == 1
        prices = PriceRepository(session).list_for_product(result.changed_product_ids[0])
        assert [p.price for p in prices] == [Decimal("17.99")]

    def test_presence_tracks_last_seen(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """Every write updates last-seen-at."""
        writer = PriceWriter(session)
        result = writer.write_prices(run, feed, [_record()])
        product_id = result.changed_product_ids[0]
        first_seen = PriceRepository(session).get_presence(product_id)

        writer.write_prices(_new_run(session, feed), feed, [_record()])
        session.commit()

        assert first_seen is not None
        assert PriceRepository(session).get_presence(product_id) >= first_seen

    def test_empty_batch(self, session: Session, feed: Feed, run: FeedRun) -> None:
        """No records, no writes."""
        result = PriceWriter(session).write_prices(run, feed, [])

        assert result.products_upserted == 0
        assert result.prices_written == 0
