"""Tests for identity derivation and price signatures."""

import hashlib
from decimal import Decimal

from price_harvester.core.enums import IdentityType
from price_harvester.ingestion.identity import (
    canonicalize_url,
    derive_identity,
    match_key,
    normalize_sku,
    price_signature,
    record_hash,
    signature_hash,
    url_hash,
)
from price_harvester.ingestion.parser import ParsedRecord


def _record(**overrides) -> ParsedRecord:
    fields = {
        "row_number": 1,
        "name": "Test 9mm FMJ",
        "url": "https://example.com/product",
        "price": Decimal("18.99"),
    }
    fields.update(overrides)
    return ParsedRecord(**fields)


class TestDeriveIdentity:
    """Tests for identity priority."""

    def test_network_item_id_wins(self) -> None:
        """A network item id beats SKU and URL."""
        identity = derive_identity(_record(network_item_id=" NET-1 ", sku="abc 123"))

        assert identity.type == IdentityType.NETWORK_ITEM_ID
        assert identity.key == "NETWORK_ITEM_ID:NET-1"

    def test_sku_beats_url(self) -> None:
        """A SKU is normalized to uppercase with dashes."""
        identity = derive_identity(_record(sku="abc 123"))

        assert identity.type == IdentityType.SKU
        assert identity.key == "SKU:ABC-123"

    def test_url_hash_fallback(self) -> None:
        """Without identifiers the canonical URL hash is used."""
        identity = derive_identity(_record(sku="   "))

        assert identity.type == IdentityType.URL_HASH
        assert identity.value == url_hash("https://example.com/product")

    def test_deterministic(self) -> None:
        """The same record always gets the same key."""
        assert derive_identity(_record()).key == derive_identity(_record()).key

    def test_tracking_params_do_not_change_identity(self) -> None:
        """Tracking parameters and fragments are ignored."""
        plain = derive_identity(_record(url="https://example.com/product"))
        tracked = derive_identity(
            _record(url="https://EXAMPLE.com/product/?utm_source=mail&gclid=x#reviews")
        )

        assert plain.key == tracked.key

    def test_priority_order(self) -> None:
        """Identity types rank network id, SKU, URL hash."""
        assert (
            IdentityType.NETWORK_ITEM_ID.priority
            > IdentityType.SKU.priority
            > IdentityType.URL_HASH.priority
        )


class TestCanonicalizeUrl:
    """Tests for URL canonicalization."""

    def test_canonicalize(self) -> None:
        """Host is lowercased, query sorted, trailing slash and fragment dropped."""
        url = "HTTPS://Shop.Example.com/ammo/9mm/?b=2&a=1&utm_campaign=x&ref=home#top"

        assert canonicalize_url(url) == "https://shop.example.com/ammo/9mm?a=1&b=2"

    def test_path_case_is_kept(self) -> None:
        """Paths can be case-sensitive and are left alone."""
        assert canonicalize_url("https://example.com/Product/ABC") == "https://example.com/Product/ABC"

    def test_normalize_sku(self) -> None:
        """Whitespace runs collapse to a single dash."""
        assert normalize_sku("  fed  9mm\t115 ") == "FED-9MM-115"


class TestSignatures:
    """Tests for price signatures."""

    def test_signature_string(self) -> None:
        """Signatures are cents plus uppercase currency."""
        assert price_signature("18.99", "usd") == "18.99|USD"
        assert price_signature(Decimal("18.9"), "USD") == "18.90|USD"
        assert price_signature("18.99", "USD", "24.99") == "18.99|USD|24.99"

    def test_signature_hash(self) -> None:
        """The stored signature is the sha256 of the signature string."""
        expected = hashlib.sha256(b"18.99|USD").hexdigest()

        assert signature_hash("18.99", "USD") == expected
        assert signature_hash(Decimal("18.99"), "usd") == expected

    def test_signature_changes_with_price(self) -> None:
        """Different prices or currencies give different signatures."""
        assert signature_hash("18.99", "USD") != signature_hash("19.99", "USD")
        assert signature_hash("18.99", "USD") != signature_hash("18.99", "EUR")


class TestRecordKeys:
    """Tests for quarantine keys."""

    def test_record_hash_normalizes(self) -> None:
        """Title whitespace, case and UPC punctuation do not change the hash."""
        a = record_hash("Test  9mm FMJ", "0-12345-67890-1", "abc 1", "18.99")
        b = record_hash("test 9mm fmj", "012345678901", "ABC-1", Decimal("18.99"))

        assert a == b

    def test_record_hash_changes_with_upc(self) -> None:
        """A corrected UPC produces a new promotion key."""
        assert record_hash("Ammo", None, None, "1.00") != record_hash("Ammo", "012345678901", None, "1.00")

    def test_match_key_prefers_sku(self) -> None:
        """Rows with a SKU are keyed by SKU, others by URL."""
        assert match_key("Ammo", "sku 1", "https://a.example.com/x") == match_key(
            "ammo", "SKU-1", "https://b.example.com/y"
        )
        assert match_key("Ammo", None, "https://a.example.com/x") != match_key(
            "Ammo", None, "https://b.example.com/y"
        )
