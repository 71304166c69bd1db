"""
Product Resolver Module
=======================

Matches source products to canonical catalog products and assigns a
confidence tier, or flags the product for human review.

Matching order:
    1. An existing MANUAL link is never overridden.
    2. Normalized UPC equality (single hit -> MATCHED, several -> NEEDS_REVIEW).
    3. Attribute fingerprint over caliber, brand, grain, pack size and title
       similarity, scored against candidates sharing brand or caliber.

Re-resolution only mutates product links, never price history.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from price_harvester.core.enums import ConfidenceTier, LinkStatus, MatchType
from price_harvester.core.schema import CanonicalProduct, ProductLink, SourceProduct, utc_now
from price_harvester.db.repositories import (
    CatalogRepository,
    ProductLinkRepository,
    SourceProductRepository,
)
from price_harvester.ingestion.config import ResolverConfig
from price_harvester.ingestion.identity import normalize_upc

logger = logging.getLogger(__name__)

# Fingerprint weights, summing to 1.0
WEIGHTS = {
    "caliber": 0.30,
    "brand": 0.25,
    "grain": 0.15,
    "pack": 0.15,
    "title": 0.15,
}

# (pattern, canonical caliber); first match wins, so longer names come first
CALIBER_PATTERNS: tuple[tuple[str, str], ...] = (
    (r"\b5\.56\s*(?:x\s*45)?\s*(?:mm|nato)\b", "5.56 NATO"),
    (r"\b7\.62\s*x\s*39\b", "7.62x39"),
    (r"\b7\.62\s*x\s*51\b", "7.62x51"),
    (r"\b6\.5\s*(?:mm\s*)?creedmoor\b", "6.5 Creedmoor"),
    (r"\.?\b300\s*(?:aac\s*)?(?:blackout|blk)\b", ".300 Blackout"),
    (r"\.?\b308\s*(?:win(?:chester)?)?\b", ".308 Win"),
    (r"\.?\b223\s*(?:rem(?:ington)?)?\b", ".223 Rem"),
    (r"\.?\b45\s*(?:acp|auto)\b", ".45 ACP"),
    (r"\.?\b380\s*(?:acp|auto)\b", ".380 ACP"),
    (r"\.?\b40\s*(?:s\s*&\s*w|sw|s&w)\b", ".40 S&W"),
    (r"\.?\b357\s*(?:mag(?:num)?)\b", ".357 Magnum"),
    (r"\.?\b38\s*(?:spl|special)\b", ".38 Special"),
    (r"\.?\b22\s*(?:lr|long\s*rifle)\b", ".22 LR"),
    (r"\b10\s*mm\b", "10mm"),
    (r"\b9\s*mm\b|\b9\s*x\s*19\b|\b9mm\s*luger\b", "9mm"),
    (r"\b12\s*(?:ga|gauge)\b", "12 Gauge"),
    (r"\b20\s*(?:ga|gauge)\b", "20 Gauge"),
)

GRAIN_PATTERN = re.compile(r"\b(\d{2,3})\s*(?:gr|grain|grains)\b", re.IGNORECASE)
ROUND_COUNT_PATTERNS = (
    re.compile(r"\b(\d{1,5})\s*(?:rds?|rounds?|count|ct|pk|pack)\b", re.IGNORECASE),
    re.compile(r"\bbox\s+of\s+(\d{1,5})\b", re.IGNORECASE),
)


@dataclass
class Fingerprint:
    """Attributes extracted from a product title."""

    caliber: str | None = None
    brand: str | None = None
    grain_weight: int | None = None
    round_count: int | None = None
    title: str = ""

    @classmethod
    def from_title(cls, title: str, brand: str | None = None) -> Fingerprint:
        """Extract caliber, grain weight and round count from a title."""
        text = title or ""
        caliber = None
        for pattern, canonical in CALIBER_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                caliber = canonical
                break

        grain_match = GRAIN_PATTERN.search(text)
        round_count = None
        for pattern in ROUND_COUNT_PATTERNS:
            count_match = pattern.search(text)
            if count_match:
                round_count = int(count_match.group(1))
                break

        return cls(
            caliber=caliber,
            brand=brand.strip() if brand and brand.strip() else None,
            grain_weight=int(grain_match.group(1)) if grain_match else None,
            round_count=round_count,
            title=text,
        )


@dataclass
class MatchCandidate:
    """A scored catalog candidate."""

    product_id: UUID
    product_name: str
    score: float
    signals: dict[str, float] = field(default_factory=dict)


@dataclass
class BatchResolution:
    """Summary of a resolve_batch call."""

    resolver_version: str
    total: int = 0
    matched: int = 0
    needs_review: int = 0
    unmatched: int = 0
    unchanged: int = 0
    missing: list[str] = field(default_factory=list)

    def record(self, link: ProductLink, changed: bool) -> None:
        self.total += 1
        if not changed:
            self.unchanged += 1
        if link.status == LinkStatus.MATCHED:
            self.matched += 1
        elif link.status == LinkStatus.NEEDS_REVIEW:
            self.needs_review += 1
        else:
            self.unmatched += 1


class ProductResolver:
    """
    Resolves source products to canonical products.

    Output links carry the resolver version so stale matches can be found
    and re-resolved after matcher changes.
    """

    def __init__(self, session: Session, config: ResolverConfig | None = None) -> None:
        """
        Initialize the resolver.

        Args:
            session: SQLAlchemy database session
            config: Thresholds and version; defaults when omitted
        """
        self.session = session
        self.config = config or ResolverConfig()
        self.products = SourceProductRepository(session)
        self.catalog = CatalogRepository(session)
        self.links = ProductLinkRepository(session)

    @property
    def version(self) -> str:
        return self.config.version

    def resolve(
        self, source_product_id: UUID | str, resolver_version: str | None = None
    ) -> ProductLink:
        """
        Resolve one source product and persist the link.

        Args:
            source_product_id: Source product to resolve
            resolver_version: Version to tag the link with; defaults to config

        Returns:
            The current link (possibly the unchanged existing one)

        Raises:
            ValueError: If the source product does not exist
        """
        link, _ = self._resolve(source_product_id, resolver_version or self.version)
        return link

    def resolve_batch(
        self, source_product_ids: list[UUID | str], resolver_version: str | None = None
    ) -> BatchResolution:
        """
        Resolve many source products. Safe to repeat.

        Missing products are reported, not raised.
        """
        version = resolver_version or self.version
        summary = BatchResolution(resolver_version=version)
        for product_id in source_product_ids:
            try:
                link, changed = self._resolve(product_id, version)
            except ValueError:
                logger.warning(f"Source product {product_id} not found, skipping")
                summary.missing.append(str(product_id))
                continue
            summary.record(link, changed)
        self.session.flush()

        logger.info(
            f"Resolved {summary.total} products (v{version}): "
            f"{summary.matched} matched, {summary.needs_review} review, "
            f"{summary.unmatched} unmatched, {summary.unchanged} unchanged"
        )
        return summary

    def resolve_stale(self, limit: int = 1000) -> BatchResolution:
        """Re-resolve links produced by another resolver version."""
        return self.resolve_batch(self.links.list_stale_ids(self.version, limit=limit))

    def set_manual_link(
        self, source_product_id: UUID | str, product_id: UUID | str, reason: str = "operator"
    ) -> ProductLink:
        """Pin a source product to a canonical product; never overridden by matching."""
        link = ProductLink(
            source_product_id=UUID(str(source_product_id)),
            product_id=UUID(str(product_id)),
            status=LinkStatus.MATCHED,
            match_type=MatchType.MANUAL,
            confidence=1.0,
            tier=ConfidenceTier.HIGH,
            resolver_version=self.version,
            reason_code="MANUAL",
            evidence={"reason": reason},
        )
        return self.links.upsert(link)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, source_product_id: UUID | str, version: str) -> tuple[ProductLink, bool]:
        product = self.products.get_by_id(source_product_id)
        if product is None:
            raise ValueError(f"Source product {source_product_id} not found")

        existing = self.links.get(product.id)
        if existing is not None and existing.match_type == MatchType.MANUAL:
            return existing, False

        proposal = self._propose(product, version)
        if existing is not None and not self._should_replace(existing, proposal):
            return existing, False

        if existing is not None and existing.product_id and existing.product_id != proposal.product_id:
            proposal.evidence["previous_product_id"] = str(existing.product_id)
            proposal.evidence["previous_resolver_version"] = existing.resolver_version
        if existing is not None:
            proposal.created_at = existing.created_at

        return self.links.upsert(proposal), True

    def _should_replace(self, existing: ProductLink, proposal: ProductLink) -> bool:
        """
        Relink rules.

        Links from another resolver version are always replaced. Within one
        version a different product only wins on a stronger match type or a
        confidence gain of at least the hysteresis margin.
        """
        if existing.resolver_version != proposal.resolver_version:
            return True
        if existing.product_id == proposal.product_id:
            return (
                existing.status != proposal.status
                or existing.tier != proposal.tier
                or abs(existing.confidence - proposal.confidence) > 1e-9
            )
        if existing.product_id is None:
            return True
        if proposal.match_type.strength > existing.match_type.strength:
            return True
        return proposal.confidence >= existing.confidence + self.config.hysteresis

    def _propose(self, product: SourceProduct, version: str) -> ProductLink:
        upc = normalize_upc(product.upc)
        if upc:
            hits = self.catalog.find_by_upc(upc)
            if len(hits) == 1:
                return self._link(
                    product,
                    version,
                    product_id=hits[0].id,
                    status=LinkStatus.MATCHED,
                    match_type=MatchType.UPC,
                    confidence=self.config.upc_confidence,
                    reason_code="UPC_MATCH",
                    evidence={"upc": upc},
                )
            if len(hits) > 1:
                return self._link(
                    product,
                    version,
                    product_id=None,
                    status=LinkStatus.NEEDS_REVIEW,
                    match_type=MatchType.UPC,
                    confidence=self.config.upc_confidence,
                    reason_code="UPC_CONFLICT",
                    evidence={"upc": upc, "candidates": [str(h.id) for h in hits]},
                )

        fingerprint = Fingerprint.from_title(product.title, product.brand)
        candidates = self.catalog.find_candidates(
            fingerprint.brand, fingerprint.caliber, limit=self.config.max_candidates
        )
        if not candidates:
            return self._link(
                product,
                version,
                product_id=None,
                status=LinkStatus.UNMATCHED,
                match_type=MatchType.NONE,
                confidence=0.0,
                reason_code="NO_CANDIDATES",
                evidence={"fingerprint": self._fingerprint_evidence(fingerprint)},
            )

        scored = sorted(
            (self._score(fingerprint, c) for c in candidates),
            key=lambda m: (-m.score, m.product_name),
        )
        best = scored[0]
        runner_up = scored[1] if len(scored) > 1 else None
        tier = self._tier(best.score)
        gap = best.score - runner_up.score if runner_up else best.score

        evidence: dict[str, Any] = {
            "fingerprint": self._fingerprint_evidence(fingerprint),
            "signals": best.signals,
            "score": round(best.score, 4),
            "candidates_considered": len(scored),
        }
        if runner_up is not None:
            evidence["runner_up"] = {"product_id": str(runner_up.product_id), "score": round(runner_up.score, 4)}

        if tier == ConfidenceTier.NONE:
            return self._link(
                product,
                version,
                product_id=None,
                status=LinkStatus.UNMATCHED,
                match_type=MatchType.NONE,
                confidence=round(best.score, 4),
                reason_code="BELOW_THRESHOLD",
                evidence=evidence,
            )

        threshold = ConfidenceTier(self.config.match_tier)
        if tier.rank < threshold.rank:
            status, reason = LinkStatus.NEEDS_REVIEW, "LOW_CONFIDENCE"
        elif runner_up is not None and gap < self.config.ambiguity_gap:
            status, reason = LinkStatus.NEEDS_REVIEW, "AMBIGUOUS"
        else:
            status, reason = LinkStatus.MATCHED, "FINGERPRINT_MATCH"

        return self._link(
            product,
            version,
            product_id=best.product_id,
            status=status,
            match_type=MatchType.FINGERPRINT,
            confidence=round(best.score, 4),
            reason_code=reason,
            evidence=evidence,
        )

    def _link(
        self,
        product: SourceProduct,
        version: str,
        product_id: UUID | None,
        status: LinkStatus,
        match_type: MatchType,
        confidence: float,
        reason_code: str,
        evidence: dict[str, Any],
    ) -> ProductLink:
        tier = ConfidenceTier.HIGH if match_type == MatchType.UPC else self._tier(confidence)
        return ProductLink(
            source_product_id=product.id,
            product_id=product_id,
            status=status,
            match_type=match_type,
            confidence=min(1.0, max(0.0, confidence)),
            tier=tier if status != LinkStatus.UNMATCHED else ConfidenceTier.NONE,
            resolver_version=version,
            reason_code=reason_code,
            evidence=evidence,
            updated_at=utc_now(),
        )

    def _tier(self, score: float) -> ConfidenceTier:
        if score >= self.config.high_threshold:
            return ConfidenceTier.HIGH
        if score >= self.config.medium_threshold:
            return ConfidenceTier.MEDIUM
        if score >= self.config.low_threshold:
            return ConfidenceTier.LOW
        return ConfidenceTier.NONE

    def _score(self, fingerprint: Fingerprint, candidate: CanonicalProduct) -> MatchCandidate:
        """Weighted agreement of independent signals. Missing attributes score zero."""
        signals: dict[str, float] = {}

        candidate_caliber = candidate.caliber or Fingerprint.from_title(candidate.name).caliber
        signals["caliber"] = (
            1.0
            if fingerprint.caliber
            and candidate_caliber
            and fingerprint.caliber.lower() == candidate_caliber.lower()
            else 0.0
        )
        signals["brand"] = (
            1.0
            if fingerprint.brand
            and candidate.brand
            and self._normalize(fingerprint.brand) == self._normalize(candidate.brand)
            else 0.0
        )
        signals["grain"] = (
            1.0
            if fingerprint.grain_weight is not None
            and fingerprint.grain_weight == candidate.grain_weight
            else 0.0
        )
        signals["pack"] = (
            1.0
            if fingerprint.round_count is not None
            and fingerprint.round_count == candidate.round_count
            else 0.0
        )
        signals["title"] = round(
            self._string_similarity(self._normalize(fingerprint.title), self._normalize(candidate.name)),
            4,
        )

        score = sum(WEIGHTS[name] * value for name, value in signals.items())
        return MatchCandidate(
            product_id=candidate.id,
            product_name=candidate.name,
            score=score,
            signals=signals,
        )

    @staticmethod
    def _fingerprint_evidence(fingerprint: Fingerprint) -> dict[str, Any]:
        return {
            "caliber": fingerprint.caliber,
            "brand": fingerprint.brand,
            "grain_weight": fingerprint.grain_weight,
            "round_count": fingerprint.round_count,
        }

    @staticmethod
    def _normalize(text: str) -> str:
        return re.sub(r"[^a-z0-9]+", " ", text.lower()).strip()

    def _string_similarity(self, s1: str, s2: str) -> float:
        """
        Calculate string similarity using Levenshtein distance.

        Returns:
            Similarity score between 0.0 and 1.0
        """
        s1 = s1.lower().strip()
        s2 = s2.lower().strip()

        if s1 == s2:
            return 1.0 if s1 else 0.0

        if not s1 or not s2:
            return 0.0

        distance = self._levenshtein_distance(s1, s2)
        max_len = max(len(s1), len(s2))

        return 1.0 - (distance / max_len)

    @staticmethod
    def _levenshtein_distance(s1: str, s2: str) -> int:
        """Edit distance between two strings."""
        if len(s1) < len(s2):
            s1, s2 = s2, s1

        if len(s2) == 0:
            return len(s1)

        previous_row = list(range(len(s2) + 1))
        for i, c1 in enumerate(s1):
            current_row = [i + 1]
            for j, c2 in enumerate(s2):
                insertions = previous_row[j + 1] + 1
                deletions = current_row[j] + 1
                substitutions = previous_row[j] + (c1 != c2)
                current_row.append(min(insertions, deletions, substitutions))
            previous_row = current_row

        return previous_row[-1]
