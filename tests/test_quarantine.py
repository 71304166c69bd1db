"""Tests for the quarantine and correction workflow."""

from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from price_harvester.core.enums import BlockingErrorCode, PriceType, QuarantineStatus, RunTrigger
from price_harvester.core.schema import Feed, FeedRun
from price_harvester.db.repositories import PriceRepository, SourceProductRepository
from price_harvester.ingestion.config import QuarantineConfig
from price_harvester.ingestion.parser import ParsedRecord
from price_harvester.ingestion.quarantine import (
    QuarantineError,
    QuarantineFilter,
    QuarantineManager,
)


def _record(name: str = "Test 9mm FMJ", **overrides) -> ParsedRecord:
    fields = {
        "row_number": 1,
        "name": name,
        "url": "https://example.com/product",
        "price": Decimal("18.99"),
        "raw": {"title": name},
    }
    fields.update(overrides)
    return ParsedRecord(**fields)


@pytest.fixture
def manager(session: Session) -> QuarantineManager:
    return QuarantineManager(session)


def _quarantine(manager: QuarantineManager, feed: Feed, run: FeedRun, record: ParsedRecord):
    validation = manager.validate(record)
    assert not validation.accepted
    stored, _ = manager.quarantine(feed, run.id, record, validation.blocking_errors)
    return stored


class TestValidation:
    """Tests for the validation gate."""

    def test_accepts_complete_record(self, manager: QuarantineManager) -> None:
        """A record with UPC, title and a positive price passes."""
        result = manager.validate(_record(upc="012345678901"))

        assert result.accepted
        assert result.blocking_errors == []

    def test_missing_upc(self, manager: QuarantineManager) -> None:
        """The UPC is required by default even when a SKU exists."""
        result = manager.validate(_record(sku="ABC-1"))

        assert result.codes == [BlockingErrorCode.MISSING_UPC]

    def test_invalid_upc_length(self, manager: QuarantineManager) -> None:
        """UPCs must have 8-14 digits."""
        result = manager.validate(_record(upc="1234"))

        assert result.codes == [BlockingErrorCode.INVALID_UPC]

    def test_collects_every_failure(self, manager: QuarantineManager) -> None:
        """Each failed rule gets its own blocking error."""
        result = manager.validate(_record(name="", price=Decimal("0.00")))

        assert set(result.codes) == {
            BlockingErrorCode.MISSING_UPC,
            BlockingErrorCode.MISSING_TITLE,
            BlockingErrorCode.INVALID_PRICE,
        }

    def test_sku_accepted_when_upc_optional(self, session: Session) -> None:
        """With require_upc off another identifier is enough."""
        manager = QuarantineManager(session, QuarantineConfig(require_upc=False))

        assert manager.validate(_record(sku="ABC-1")).accepted
        assert not manager.validate(_record()).accepted


class TestQuarantine:
    """Tests for storing failed records."""

    def test_deduplicates_by_match_key(
        self, session: Session, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """Re-ingesting the same bad row refreshes the existing record."""
        record = _record()
        errors = manager.validate(record).blocking_errors

        first, created_first = manager.quarantine(feed, run.id, record, errors)
        second, created_second = manager.quarantine(feed, run.id, record, errors)
        session.commit()

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert second.status == QuarantineStatus.QUARANTINED
        assert second.parsed_fields["name"] == "Test 9mm FMJ"
        assert second.blocking_errors[0].code == BlockingErrorCode.MISSING_UPC


class TestCorrections:
    """Tests for operator corrections."""

    def test_correction_aliases_and_sequence(
        self, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """Field aliases are accepted and corrections are numbered."""
        stored = _quarantine(manager, feed, run, _record())

        first = manager.apply_correction(stored.id, "gtin", "012345678901", "alice")
        second = manager.apply_correction(stored.id, "title", "Test 9mm FMJ 50rd", "bob")

        assert first.field_name == "upc"
        assert first.old_value is None
        assert first.sequence == 1
        assert second.field_name == "name"
        assert second.old_value == "Test 9mm FMJ"
        assert second.sequence == 2
        assert manager.effective_fields(stored)["upc"] == "012345678901"

    def test_latest_correction_wins(self, manager: QuarantineManager, feed: Feed, run: FeedRun) -> None:
        """Later corrections of the same field override earlier ones."""
        stored = _quarantine(manager, feed, run, _record())

        manager.apply_correction(stored.id, "upc", "111", "alice")
        manager.apply_correction(stored.id, "upc", "012345678901", "alice")

        assert manager.effective_fields(stored)["upc"] == "012345678901"
        assert len(manager.repo.list_corrections(stored.id)) == 2

    def test_unknown_field(self, manager: QuarantineManager, feed: Feed, run: FeedRun) -> None:
        """Only known logical fields can be corrected."""
        stored = _quarantine(manager, feed, run, _record())

        with pytest.raises(QuarantineError, match="cannot be corrected"):
            manager.apply_correction(stored.id, "colour", "red")

    def test_invalid_url_correction(self, manager: QuarantineManager, feed: Feed, run: FeedRun) -> None:
        """URL corrections must be valid URLs."""
        stored = _quarantine(manager, feed, run, _record())

        with pytest.raises(QuarantineError, match="Invalid URL"):
            manager.apply_correction(stored.id, "url", "http://localhost/x")

    def test_missing_record(self, manager: QuarantineManager) -> None:
        """Unknown record ids are rejected."""
        with pytest.raises(QuarantineError, match="not found"):
            manager.apply_correction("00000000-0000-0000-0000-000000000000", "upc", "012345678901")


class TestReprocess:
    """Tests for re-validation and promotion."""

    def test_partial_correction_stays_quarantined(
        self, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """A record with remaining failures reports what is still missing."""
        stored = _quarantine(manager, feed, run, _record(price=Decimal("0.00")))
        manager.apply_correction(stored.id, "upc", "012345678901")

        result = manager.reprocess(stored.id)

        assert result.resolved is False
        assert result.status == QuarantineStatus.QUARANTINED
        assert [e.code for e in result.blocking_errors] == [BlockingErrorCode.INVALID_PRICE]
        assert len(result.missing) == 1
        refreshed = manager.repo.get_by_id(stored.id)
        assert [e.code for e in refreshed.blocking_errors] == [BlockingErrorCode.INVALID_PRICE]

    def test_full_correction_promotes_once(
        self, session: Session, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """A fully corrected record becomes exactly one source product and one price."""
        stored = _quarantine(manager, feed, run, _record())
        manager.apply_correction(stored.id, "upc", "012345678901")

        result = manager.reprocess(stored.id)
        again = manager.reprocess(stored.id)
        session.commit()

        assert result.resolved is True
        assert result.created is True
        assert result.prices_written == 1
        assert again.skipped is True
        assert again.prices_written == 0
        assert again.source_product_id == result.source_product_id

        products = SourceProductRepository(session)
        assert products.count(feed.id) == 1
        product = products.get_by_id(result.source_product_id)
        assert product.upc == "012345678901"
        assert product.record_hash is not None

        [price] = PriceRepository(session).list_for_product(product.id)
        assert price.price == Decimal("18.99")
        assert price.price_type == PriceType.REGULAR
        assert price.run_trigger == RunTrigger.REPROCESS
        assert price.run_id == result.batch_id
        assert price.run_id != run.id

        refreshed = manager.repo.get_by_id(stored.id)
        assert refreshed.status == QuarantineStatus.RESOLVED
        assert refreshed.resolved_at is not None
        assert refreshed.blocking_errors == []

    def test_reprocessed_sale_price(
        self, session: Session, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """A corrected record below its original price is recorded as a sale."""
        stored = _quarantine(manager, feed, run, _record(original_price=Decimal("24.99")))
        manager.apply_correction(stored.id, "upc", "012345678901")

        result = manager.reprocess(stored.id)
        session.commit()

        [price] = PriceRepository(session).list_for_product(result.source_product_id)
        assert price.price_type == PriceType.SALE
        assert price.original_price == Decimal("24.99")

    def test_resolved_record_cannot_be_corrected(
        self, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """Corrections are only accepted while quarantined."""
        stored = _quarantine(manager, feed, run, _record())
        manager.apply_correction(stored.id, "upc", "012345678901")
        manager.reprocess(stored.id)

        with pytest.raises(QuarantineError, match="only quarantined records"):
            manager.apply_correction(stored.id, "price", "10.00")

    def test_requarantine_keeps_terminal_status(
        self, manager: QuarantineManager, feed: Feed, run: FeedRun
    ) -> None:
        """A resolved record is not reopened when the bad row arrives again."""
        record = _record()
        stored = _quarantine(manager, feed, run, record)
        manager.apply_correction(stored.id, "upc", "012345678901")
        manager.reprocess(stored.id)

        again, created = manager.quarantine(feed, run.id, record, manager.validate(record).blocking_errors)

        assert created is False
        assert again.status == QuarantineStatus.RESOLVED


class TestDismiss:
    """Tests for dismissal."""

    def test_note_is_required(self, manager: QuarantineManager, feed: Feed, run: FeedRun) -> None:
        """Dismissal notes must be at least ten characters."""
        stored = _quarantine(manager, feed, run, _record())

        with pytest.raises(QuarantineError, match="at least 10"):
            manager.dismiss(stored.id, "too short")

    def test_dismiss_once(self, manager: QuarantineManager, feed: Feed, run: FeedRun) -> None:
        """A second dismissal is a no-op."""
        stored = _quarantine(manager, feed, run, _record())

        assert manager.dismiss(stored.id, "Discontinued product", "alice") is True
        assert manager.dismiss(stored.id, "Discontinued product", "alice") is False

        refreshed = manager.repo.get_by_id(stored.id)
        assert refreshed.status == QuarantineStatus.DISMISSED
        assert refreshed.dismissed_by == "alice"
        assert refreshed.dismiss_note == "Discontinued product"


class TestBulkOperations:
    """Tests for filtered bulk reprocess and dismiss."""

    @pytest.fixture
    def records(self, manager: QuarantineManager, feed: Feed, run: FeedRun):
        return [
            _quarantine(manager, feed, run, _record(name=f"Ammo {i}", url=f"https://example.com/p/{i}"))
            for i in range(3)
        ]

    def test_reprocess_all_respects_limit(self, manager: QuarantineManager, records) -> None:
        """Bulk reprocess reports matches, resolutions and whether the limit was hit."""
        for i, record in enumerate(records):
            manager.apply_correction(record.id, "upc", f"01234567890{i}")

        first = manager.reprocess_all(limit=2)
        second = manager.reprocess_all(limit=2)
        third = manager.reprocess_all(limit=2)

        assert (first.matched, first.affected, first.limit_applied) == (3, 2, True)
        assert len(first.resolved_product_ids) == 2
        assert (second.matched, second.affected, second.limit_applied) == (1, 1, False)
        assert (third.matched, third.affected) == (0, 0)

    def test_reprocess_all_shares_batch_id(
        self, session: Session, manager: QuarantineManager, records
    ) -> None:
        """Every price written by one bulk reprocess carries the same run id."""
        for i, record in enumerate(records):
            manager.apply_correction(record.id, "upc", f"01234567890{i}")

        result = manager.reprocess_all()
        session.commit()

        prices = PriceRepository(session)
        run_ids = {
            price.run_id
            for product_id in result.resolved_product_ids
            for price in prices.list_for_product(product_id)
        }
        assert prices.count() == 3
        assert len(run_ids) == 1

    def test_reprocess_all_without_corrections(self, manager: QuarantineManager, records) -> None:
        """Records that still fail are counted as matched but not affected."""
        result = manager.reprocess_all()

        assert result.matched == 3
        assert result.affected == 0
        assert result.limit_applied is False

    def test_dismiss_all_is_idempotent(self, manager: QuarantineManager, records) -> None:
        """A repeated bulk dismiss touches nothing."""
        first = manager.dismiss_all("Retailer feed retired", "alice")
        second = manager.dismiss_all("Retailer feed retired", "alice")

        assert (first.matched, first.affected) == (3, 3)
        assert (second.matched, second.affected) == (0, 0)

    def test_filters(self, manager: QuarantineManager, feed: Feed, records) -> None:
        """Bulk selection honours feed and error-code filters."""
        by_code = QuarantineFilter(feed_id=feed.id, error_code=BlockingErrorCode.INVALID_UPC)
        by_feed = QuarantineFilter(feed_id=feed.id, error_code=BlockingErrorCode.MISSING_UPC)

        assert manager.dismiss_all("Wrong error code", filters=by_code).matched == 0
        assert len(manager.list_records(by_feed)) == 3
        assert len(manager.list_records(by_feed, limit=2, offset=2)) == 1
        assert manager.list_records(status=QuarantineStatus.DISMISSED) == []
