"""
Identity and Signature Module
=============================

Derives stable per-record identity keys and price signatures.

Identity priority: network-assigned item id, then merchant SKU, then a
hash of the canonicalized product URL. Signatures are used only for
change detection and write deduplication.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from price_harvester.core.enums import IdentityType
from price_harvester.ingestion.parser import ParsedRecord

CENT = Decimal("0.01")

TRACKING_PARAMS = frozenset(
    {
        "gclid",
        "fbclid",
        "ref",
        "source",
        "partner_id",
        "affiliate_id",
        "clickid",
        "irclickid",
        "irgwc",
        "msclkid",
    }
)
TRACKING_PREFIXES = ("utm_", "impactradius_")


@dataclass(frozen=True)
class Identity:
    """A derived identity: type, normalized value and the storage key."""

    type: IdentityType
    value: str

    @property
    def key(self) -> str:
        """Storage key, e.g. 'SKU:ABC-123'."""
        return f"{self.type.name}:{self.value}"


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonicalize_url(url: str) -> str:
    """
    Canonicalize a product URL for hashing.

    Lowercases scheme and host, drops tracking parameters and the fragment,
    sorts the remaining query and strips a trailing slash from the path.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    path = parts.path.rstrip("/")

    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS and not k.lower().startswith(TRACKING_PREFIXES)
    ]
    query = urlencode(sorted(query_pairs))
    return urlunsplit((scheme, netloc, path, query, ""))


def url_hash(url: str) -> str:
    """sha256 of the canonical URL."""
    return _sha256(canonicalize_url(url))


def normalize_sku(sku: str) -> str:
    """Uppercase, whitespace runs become '-'."""
    return re.sub(r"\s+", "-", sku.strip()).upper()


def normalize_upc(value: str | None) -> str | None:
    """Digits only; None when nothing is left."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits or None


def derive_identity(record: ParsedRecord) -> Identity:
    """
    Derive the identity of a parsed record.

    Args:
        record: A parsed feed row

    Returns:
        Identity using the highest-priority identifier present
    """
    if record.network_item_id and record.network_item_id.strip():
        return Identity(IdentityType.NETWORK_ITEM_ID, record.network_item_id.strip())
    if record.sku and record.sku.strip():
        return Identity(IdentityType.SKU, normalize_sku(record.sku))
    return Identity(IdentityType.URL_HASH, url_hash(record.url))


def _cents(value: Decimal | float | str) -> str:
    return str(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def price_signature(
    price: Decimal | float | str,
    currency: str,
    original_price: Decimal | float | str | None = None,
) -> str:
    """
    Build the price signature string.

    Examples:
        price_signature("18.99", "usd") -> "18.99|USD"
        price_signature("18.99", "USD", "24.99") -> "18.99|USD|24.99"
    """
    parts = [_cents(price), currency.strip().upper()]
    if original_price is not None:
        parts.append(_cents(original_price))
    return "|".join(parts)


def signature_hash(
    price: Decimal | float | str,
    currency: str,
    original_price: Decimal | float | str | None = None,
) -> str:
    """sha256 of the price signature string."""
    return _sha256(price_signature(price, currency, original_price))


def record_hash(
    title: str | None,
    upc: str | None,
    sku: str | None,
    price: Decimal | float | str | None,
) -> str:
    """Promotion key for quarantined records: hash of title, identifier, SKU and price."""
    normalized_title = re.sub(r"\s+", " ", (title or "").strip().lower())
    normalized_sku = normalize_sku(sku) if sku else ""
    normalized_price = _cents(price) if price not in (None, "") else ""
    return _sha256(
        "|".join([normalized_title, normalize_upc(upc) or "", normalized_sku, normalized_price])
    )


def match_key(title: str | None, sku: str | None, url: str | None = None) -> str:
    """
    Deduplication key for quarantine rows within one feed.

    A re-ingested bad row lands on the same quarantine record instead of
    creating a new one.
    """
    normalized_title = re.sub(r"\s+", " ", (title or "").strip().lower())
    if sku and sku.strip():
        return _sha256(f"sku|{normalize_sku(sku)}|{normalized_title}")
    return _sha256(f"url|{canonicalize_url(url) if url else ''}|{normalized_title}")
