"""
Quarantine and Correction Module
================================

Holds records that fail validation, accepts operator field corrections and
re-admits corrected records as source products with one price observation
tagged with the reprocess batch.

Flow:
    validate(record) -> quarantine(...)          (during a feed run)
    apply_correction(id, field, value, author)    (operator)
    reprocess(id)                                 (operator or bulk)
    dismiss(id, note, author)                     (operator or bulk)

Corrections are append-only; the latest correction per field wins when a
record is reprocessed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from price_harvester.core.enums import BlockingErrorCode, PriceType, QuarantineStatus, RunTrigger
from price_harvester.core.schema import (
    BlockingError,
    Feed,
    FeedCorrection,
    PriceObservation,
    QuarantinedRecord,
    SourceProduct,
    utc_now,
)
from price_harvester.db.repositories import (
    PriceRepository,
    QuarantineRepository,
    SourceProductRepository,
)
from price_harvester.ingestion.config import QuarantineConfig
from price_harvester.ingestion.identity import (
    derive_identity,
    match_key,
    normalize_upc,
    record_hash,
    signature_hash,
    url_hash,
)
from price_harvester.ingestion.parser import (
    ParsedRecord,
    normalize_url,
    parse_currency,
    parse_price,
    parse_stock,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

UPC_MIN_DIGITS = 8
UPC_MAX_DIGITS = 14

# Fields an operator may correct, with accepted aliases.
CORRECTABLE_FIELDS = (
    "name",
    "url",
    "price",
    "currency",
    "original_price",
    "in_stock",
    "upc",
    "sku",
    "network_item_id",
    "brand",
    "category",
    "image_url",
    "description",
)
FIELD_ALIASES = {"title": "name", "gtin": "upc", "stock": "in_stock"}


class QuarantineError(Exception):
    """Raised for invalid operator actions on quarantined records."""


@dataclass
class ValidationResult:
    """Outcome of validating one record."""

    accepted: bool
    blocking_errors: list[BlockingError] = field(default_factory=list)

    @property
    def codes(self) -> list[BlockingErrorCode]:
        return [e.code for e in self.blocking_errors]


@dataclass
class ReprocessResult:
    """Outcome of reprocessing one quarantined record."""

    record_id: UUID
    status: QuarantineStatus
    resolved: bool = False
    source_product_id: UUID | None = None
    created: bool = False
    prices_written: int = 0
    batch_id: UUID | None = None
    blocking_errors: list[BlockingError] = field(default_factory=list)
    skipped: bool = False

    @property
    def missing(self) -> list[str]:
        """Messages for the requirements that still fail."""
        return [e.message for e in self.blocking_errors]


@dataclass
class BulkResult:
    """Outcome of a bulk reprocess or dismiss."""

    matched: int
    affected: int
    limit_applied: bool
    resolved_product_ids: list[UUID] = field(default_factory=list)


@dataclass
class QuarantineFilter:
    """Filter for listing and bulk operations."""

    feed_id: UUID | str | None = None
    retailer_id: UUID | str | None = None
    error_code: BlockingErrorCode | None = None


class QuarantineManager:
    """
    Validation gate and correction workflow.

    Works inside the caller's session: methods flush, the caller commits.
    """

    def __init__(self, session: Session, config: QuarantineConfig | None = None) -> None:
        """
        Initialize the manager.

        Args:
            session: Database session
            config: Quarantine settings; defaults when omitted
        """
        self.session = session
        self.config = config or QuarantineConfig()
        self.repo = QuarantineRepository(session)
        self.products = SourceProductRepository(session)
        self.prices = PriceRepository(session)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, record: ParsedRecord) -> ValidationResult:
        """Validate a parsed record."""
        return self.validate_fields(record.to_fields())

    def validate_fields(self, fields: dict[str, Any]) -> ValidationResult:
        """
        Validate a logical field map.

        Rules:
            - identifier: UPC of 8-14 digits; with require_upc off a
              network item id or SKU is also accepted
            - non-empty title
            - price strictly greater than zero

        Returns:
            ValidationResult with one blocking error per failed rule
        """
        errors: list[BlockingError] = []

        raw_upc = fields.get("upc")
        upc = normalize_upc(raw_upc)
        if upc is not None:
            if not UPC_MIN_DIGITS <= len(upc) <= UPC_MAX_DIGITS:
                errors.append(
                    BlockingError(
                        code=BlockingErrorCode.INVALID_UPC,
                        message=f"UPC must have {UPC_MIN_DIGITS}-{UPC_MAX_DIGITS} digits, got {len(upc)}",
                    )
                )
        else:
            has_other_id = bool(
                str(fields.get("network_item_id") or "").strip() or str(fields.get("sku") or "").strip()
            )
            if self.config.require_upc or not has_other_id:
                errors.append(
                    BlockingError(
                        code=BlockingErrorCode.MISSING_UPC,
                        message="A valid UPC (8-14 digits) is required",
                    )
                )

        if not str(fields.get("name") or "").strip():
            errors.append(
                BlockingError(code=BlockingErrorCode.MISSING_TITLE, message="Title is required")
            )

        price = parse_price(fields.get("price"))
        if price is None or price <= 0:
            errors.append(
                BlockingError(
                    code=BlockingErrorCode.INVALID_PRICE,
                    message=f"Price must be greater than zero, got {fields.get('price')!r}",
                )
            )

        return ValidationResult(accepted=not errors, blocking_errors=errors)

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    def quarantine(
        self,
        feed: Feed,
        run_id: UUID | None,
        record: ParsedRecord,
        errors: list[BlockingError],
    ) -> tuple[QuarantinedRecord, bool]:
        """
        Persist a failed record, deduplicated per feed by match key.

        Returns:
            (record, created)
        """
        quarantined = QuarantinedRecord(
            feed_id=feed.id,
            retailer_id=feed.retailer_id,
            run_id=run_id,
            match_key=match_key(record.name, record.sku, record.url),
            raw_data=record.raw,
            parsed_fields=record.to_fields(),
            blocking_errors=errors,
        )
        return self.repo.upsert(quarantined)

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    def apply_correction(
        self, record_id: UUID | str, field_name: str, new_value: str, author: str = "operator"
    ) -> FeedCorrection:
        """
        Append a field correction to a quarantined record.

        Args:
            record_id: Quarantined record ID
            field_name: Logical field to correct
            new_value: Replacement value
            author: Who made the correction

        Returns:
            The stored correction

        Raises:
            QuarantineError: Unknown record or field, or record not QUARANTINED
        """
        record = self._get(record_id)
        if record.status != QuarantineStatus.QUARANTINED:
            raise QuarantineError(
                f"Record {record.id} is {record.status.value}; only quarantined records can be corrected"
            )

        name = FIELD_ALIASES.get(field_name.strip().lower(), field_name.strip().lower())
        if name not in CORRECTABLE_FIELDS:
            raise QuarantineError(
                f"Field '{field_name}' cannot be corrected. Allowed: {', '.join(CORRECTABLE_FIELDS)}"
            )
        if name in ("url", "image_url") and new_value and normalize_url(new_value) is None:
            raise QuarantineError(f"Invalid URL: {new_value}")

        current = self.effective_fields(record).get(name)
        correction = FeedCorrection(
            quarantined_record_id=record.id,
            field_name=name,
            old_value=None if current is None else str(current),
            new_value=new_value,
            author=author,
        )
        stored = self.repo.add_correction(correction)
        logger.info(f"Correction #{stored.sequence} on {record.id}: {name} by {author}")
        return stored

    def effective_fields(self, record: QuarantinedRecord) -> dict[str, Any]:
        """Parsed fields overlaid with the latest correction per field."""
        fields = dict(record.parsed_fields)
        for correction in self.repo.list_corrections(record.id):
            fields[correction.field_name] = correction.new_value
        return fields

    # ------------------------------------------------------------------
    # Reprocess and dismiss
    # ------------------------------------------------------------------

    def reprocess(self, record_id: UUID | str, batch_id: UUID | None = None) -> ReprocessResult:
        """
        Re-validate a record with its corrections and promote it on success.

        Promotion upserts the source product and records the corrected
        price as one observation with trigger REPROCESS and the batch id
        as its run id. A record that is already resolved or dismissed is
        left untouched, so it is never priced twice.

        Args:
            record_id: Quarantined record ID
            batch_id: Provenance id shared by a bulk reprocess; a fresh one
                      is generated when omitted

        Raises:
            QuarantineError: If the record does not exist
        """
        record = self._get(record_id)
        if record.status != QuarantineStatus.QUARANTINED:
            return ReprocessResult(
                record_id=record.id,
                status=record.status,
                resolved=record.status == QuarantineStatus.RESOLVED,
                source_product_id=record.source_product_id,
                skipped=True,
            )

        fields = self.effective_fields(record)
        validation = self.validate_fields(fields)
        if not validation.accepted:
            record.blocking_errors = validation.blocking_errors
            self.repo.update(record)
            logger.debug(
                f"Reprocess of {record.id} still blocked: "
                f"{', '.join(c.value for c in validation.codes)}"
            )
            return ReprocessResult(
                record_id=record.id,
                status=record.status,
                blocking_errors=validation.blocking_errors,
            )

        batch_id = batch_id or uuid4()
        parsed = self._to_record(fields)
        product, created = self.products.upsert_by_record_hash(
            self._to_source_product(record, parsed, fields)
        )
        now = utc_now()
        prices_written = self.prices.insert_observations(
            [self._to_observation(record, product, parsed, batch_id, now)]
        )

        record.status = QuarantineStatus.RESOLVED
        record.parsed_fields = fields
        record.blocking_errors = []
        record.source_product_id = product.id
        record.resolved_at = now
        self.repo.update(record)
        logger.info(
            f"Resolved quarantined record {record.id} -> source product {product.id} "
            f"(batch {batch_id})"
        )

        return ReprocessResult(
            record_id=record.id,
            status=record.status,
            resolved=True,
            source_product_id=product.id,
            created=created,
            prices_written=prices_written,
            batch_id=batch_id,
        )

    def dismiss(self, record_id: UUID | str, note: str, author: str = "operator") -> bool:
        """
        Dismiss a quarantined record.

        Returns:
            True if the record was dismissed, False if it was already terminal

        Raises:
            QuarantineError: If the note is too short or the record is missing
        """
        self._check_note(note)
        record = self._get(record_id)
        if record.status != QuarantineStatus.QUARANTINED:
            return False

        record.status = QuarantineStatus.DISMISSED
        record.dismissed_by = author
        record.dismiss_note = note.strip()
        record.dismissed_at = utc_now()
        self.repo.update(record)
        logger.info(f"Dismissed quarantined record {record.id} by {author}")
        return True

    def reprocess_all(
        self, filters: QuarantineFilter | None = None, limit: int | None = None
    ) -> BulkResult:
        """
        Reprocess quarantined records matching a filter.

        Args:
            filters: Feed, retailer and error-code filter
            limit: Maximum records to touch; defaults to the configured limit

        Returns:
            BulkResult where affected counts newly resolved records
        """
        filters = filters or QuarantineFilter()
        limit = limit or self.config.reprocess_limit
        matched, ids = self._select(filters, limit)

        batch_id = uuid4()
        affected = 0
        resolved_ids: list[UUID] = []
        for start in range(0, len(ids), BATCH_SIZE):
            for record_id in ids[start : start + BATCH_SIZE]:
                result = self.reprocess(record_id, batch_id=batch_id)
                if result.resolved and not result.skipped:
                    affected += 1
                    if result.source_product_id is not None:
                        resolved_ids.append(result.source_product_id)
            self.session.flush()

        logger.info(f"Bulk reprocess: matched={matched} resolved={affected} limit={limit}")
        return BulkResult(
            matched=matched,
            affected=affected,
            limit_applied=matched > limit,
            resolved_product_ids=resolved_ids,
        )

    def dismiss_all(
        self,
        note: str,
        author: str = "operator",
        filters: QuarantineFilter | None = None,
        limit: int | None = None,
    ) -> BulkResult:
        """
        Dismiss quarantined records matching a filter.

        Raises:
            QuarantineError: If the note is too short
        """
        self._check_note(note)
        filters = filters or QuarantineFilter()
        limit = limit or self.config.dismiss_limit
        matched, ids = self._select(filters, limit)

        affected = 0
        for start in range(0, len(ids), BATCH_SIZE):
            for record_id in ids[start : start + BATCH_SIZE]:
                if self.dismiss(record_id, note, author):
                    affected += 1
            self.session.flush()

        logger.info(f"Bulk dismiss: matched={matched} dismissed={affected} limit={limit}")
        return BulkResult(matched=matched, affected=affected, limit_applied=matched > limit)

    def list_records(
        self,
        filters: QuarantineFilter | None = None,
        status: QuarantineStatus | None = QuarantineStatus.QUARANTINED,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QuarantinedRecord]:
        """List records for the operator surface."""
        filters = filters or QuarantineFilter()
        return self.repo.list_filtered(
            status=status,
            feed_id=filters.feed_id,
            retailer_id=filters.retailer_id,
            error_code=filters.error_code,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, record_id: UUID | str) -> QuarantinedRecord:
        record = self.repo.get_by_id(record_id)
        if record is None:
            raise QuarantineError(f"Quarantined record {record_id} not found")
        return record

    def _check_note(self, note: str) -> None:
        if len((note or "").strip()) < self.config.min_note_length:
            raise QuarantineError(
                f"Dismissal note must be at least {self.config.min_note_length} characters"
            )

    def _select(self, filters: QuarantineFilter, limit: int) -> tuple[int, list[UUID]]:
        """Count matches and collect up to `limit` IDs, only QUARANTINED rows."""
        kwargs = {
            "status": QuarantineStatus.QUARANTINED,
            "feed_id": filters.feed_id,
            "retailer_id": filters.retailer_id,
            "error_code": filters.error_code,
        }
        matched = self.repo.count_filtered(**kwargs)
        ids: list[UUID] = []
        offset = 0
        while len(ids) < limit:
            page = self.repo.list_filtered(
                **kwargs, limit=min(BATCH_SIZE, limit - len(ids)), offset=offset
            )
            if not page:
                break
            ids.extend(r.id for r in page)
            offset += len(page)
        return matched, ids

    @staticmethod
    def _to_record(fields: dict[str, Any]) -> ParsedRecord:
        """Rebuild a validated record from corrected fields."""
        return ParsedRecord(
            row_number=0,
            name=str(fields.get("name")).strip(),
            url=normalize_url(fields.get("url")) or str(fields.get("url") or ""),
            price=parse_price(fields.get("price")),
            currency=parse_currency(fields.get("currency"), fields.get("price")),
            original_price=parse_price(fields.get("original_price")),
            upc=normalize_upc(fields.get("upc")),
            sku=(str(fields["sku"]).strip() or None) if fields.get("sku") else None,
            network_item_id=(
                (str(fields["network_item_id"]).strip() or None)
                if fields.get("network_item_id")
                else None
            ),
            in_stock=parse_stock(fields.get("in_stock")),
        )

    @staticmethod
    def _to_observation(
        record: QuarantinedRecord,
        product: SourceProduct,
        parsed: ParsedRecord,
        batch_id: UUID,
        observed_at: datetime,
    ) -> PriceObservation:
        on_sale = parsed.original_price is not None and parsed.original_price > parsed.price
        return PriceObservation(
            source_product_id=product.id,
            retailer_id=record.retailer_id,
            price=parsed.price,
            currency=parsed.currency,
            original_price=parsed.original_price,
            price_type=PriceType.SALE if on_sale else PriceType.REGULAR,
            in_stock=parsed.in_stock,
            price_signature=signature_hash(parsed.price, parsed.currency, parsed.original_price),
            run_trigger=RunTrigger.REPROCESS,
            run_id=batch_id,
            observed_at=observed_at,
        )

    def _to_source_product(
        self, record: QuarantinedRecord, parsed: ParsedRecord, fields: dict[str, Any]
    ) -> SourceProduct:
        """Build the promoted source product from corrected fields."""
        url = parsed.url
        identity = derive_identity(parsed)
        return SourceProduct(
            feed_id=record.feed_id,
            retailer_id=record.retailer_id,
            identity_type=identity.type,
            identity_key=identity.key,
            record_hash=record_hash(parsed.name, parsed.upc, parsed.sku, parsed.price),
            title=parsed.name,
            url=url,
            url_hash=url_hash(url) if url else None,
            upc=parsed.upc,
            sku=parsed.sku,
            network_item_id=parsed.network_item_id,
            brand=fields.get("brand"),
            category=fields.get("category"),
            image_url=fields.get("image_url"),
            description=fields.get("description"),
        )
