"""
Format Parser Module
====================

Converts raw feed bytes (delimited text, XML or JSON) into logical product
records. Column names vary across retailers, so every logical field is
looked up through an ordered alias list.

Per-row problems never abort a parse: the row is dropped and a coded error
with its row number is returned alongside the good records.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlparse

from price_harvester.core.enums import FeedFormat, ParseErrorCode

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

SUPPORTED_CURRENCIES = frozenset({"USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CHF", "CNY", "MXN"})
DEFAULT_CURRENCY = "USD"

CURRENCY_SYMBOLS = {"€": "EUR", "£": "GBP", "¥": "JPY"}

TRUTHY_STOCK = frozenset(
    {"y", "yes", "true", "1", "in stock", "instock", "in_stock", "available", "low stock", "limited"}
)
FALSY_STOCK = frozenset(
    {
        "n",
        "no",
        "false",
        "0",
        "out of stock",
        "outofstock",
        "out_of_stock",
        "unavailable",
        "sold out",
        "discontinued",
        "backordered",
        "preorder",
    }
)

XML_ROW_TAGS = ("product", "item", "offer", "entry", "record", "row")
JSON_LIST_KEYS = ("products", "items", "offers", "data", "results", "records", "rows")


def normalize_key(key: str) -> str:
    """Reduce a column name to lowercase alphanumerics ('Product Name' -> 'productname')."""
    return re.sub(r"[^a-z0-9]", "", key.lower())


# Ordered alias table: first alias present in a row wins for each field.
FIELD_ALIASES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("name", ("name", "productname", "title", "producttitle", "itemname")),
    ("url", ("url", "producturl", "link", "buyurl", "deeplink", "itemurl")),
    ("sale_price", ("saleprice", "currentprice", "specialprice")),
    ("price", ("price", "listprice", "regularprice", "priceamount")),
    ("original_price", ("originalprice", "msrp", "retailprice", "compareatprice", "wasprice")),
    ("currency", ("currency", "currencycode", "pricecurrency")),
    ("stock", ("stockavailability", "availability", "instock", "stock", "stockstatus")),
    ("upc", ("gtin", "upc", "ean", "barcode", "gtin13", "gtin12")),
    ("sku", ("sku", "merchantsku", "productsku", "uniquemerchantsku", "itemsku", "id")),
    ("network_item_id", ("catalogitemid", "itemid", "networkitemid")),
    ("brand", ("manufacturer", "brand", "brandname")),
    ("category", ("category", "productcategory", "categoryname", "producttype")),
    ("image_url", ("imageurl", "image", "imagelink", "thumbnailurl", "largeimage")),
    ("description", ("description", "productdescription", "longdescription", "shortdescription")),
)


@dataclass
class ParsedRecord:
    """
    One parsed feed row in logical form.

    Prices are Decimals rounded to cents; identifiers are kept as found
    (digits only for UPC) and normalized later by the identity engine.
    """

    row_number: int
    name: str
    url: str
    price: Decimal
    currency: str = DEFAULT_CURRENCY
    original_price: Decimal | None = None
    in_stock: bool = True
    upc: str | None = None
    sku: str | None = None
    network_item_id: str | None = None
    brand: str | None = None
    category: str | None = None
    image_url: str | None = None
    description: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> dict[str, Any]:
        """Serializable snapshot of the logical fields."""
        return {
            "name": self.name,
            "url": self.url,
            "price": str(self.price),
            "currency": self.currency,
            "original_price": str(self.original_price) if self.original_price is not None else None,
            "in_stock": self.in_stock,
            "upc": self.upc,
            "sku": self.sku,
            "network_item_id": self.network_item_id,
            "brand": self.brand,
            "category": self.category,
            "image_url": self.image_url,
            "description": self.description,
        }


@dataclass
class ParseError:
    """A dropped row or a document-level failure (row_number None)."""

    code: ParseErrorCode
    message: str
    row_number: int | None = None
    raw: dict[str, Any] | None = None


@dataclass
class ParseResult:
    """Outcome of parsing one feed document."""

    records: list[ParsedRecord] = field(default_factory=list)
    rows_read: int = 0
    errors: list[ParseError] = field(default_factory=list)
    format: FeedFormat | None = None

    @property
    def rows_parsed(self) -> int:
        return len(self.records)

    @property
    def document_error(self) -> ParseError | None:
        """The error that prevented reading any row, if any."""
        for error in self.errors:
            if error.row_number is None and error.code == ParseErrorCode.PARSE_FAILED:
                return error
        return None


# ============================================================================
# Field normalization
# ============================================================================


def parse_price(value: Any) -> Decimal | None:
    """
    Parse a price string into a Decimal rounded to cents.

    Strips currency symbols, codes and thousands separators. A lone comma
    followed by exactly two digits is treated as a decimal comma.

    Returns:
        Decimal, or None if the value is not a number
    """
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        text = str(value)
    else:
        text = str(value).strip()
    if not text:
        return None

    cleaned = re.sub(r"[^0-9.,\-]", "", text)
    if "," in cleaned:
        if "." not in cleaned and re.fullmatch(r"-?\d+,\d{2}", cleaned):
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    if cleaned in ("", "-", ".", "-."):
        return None

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_currency(value: Any, price_text: Any = None) -> str:
    """Resolve a whitelisted currency code, falling back to hints in the price text."""
    if value:
        code = str(value).strip().upper()
        if code in SUPPORTED_CURRENCIES:
            return code
    if price_text:
        text = str(price_text)
        match = re.search(r"\b([A-Za-z]{3})\b", text)
        if match and match.group(1).upper() in SUPPORTED_CURRENCIES:
            return match.group(1).upper()
        for symbol, code in CURRENCY_SYMBOLS.items():
            if symbol in text:
                return code
    return DEFAULT_CURRENCY


def parse_stock(value: Any) -> bool:
    """Map a stock indicator onto in-stock/out-of-stock. Unknown or missing means in stock."""
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in FALSY_STOCK:
        return False
    if token in TRUTHY_STOCK:
        return True
    # schema.org style values, e.g. "http://schema.org/OutOfStock"
    compact = token.rsplit("/", 1)[-1].replace(" ", "").replace("_", "")
    if compact in {"outofstock", "soldout", "discontinued"}:
        return False
    return True


def normalize_upc(value: Any) -> str | None:
    """Keep digits only."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits or None


def normalize_url(value: Any) -> str | None:
    """
    Return an absolute http(s) URL, or None if the value cannot be one.

    A missing scheme is assumed to be https. The host must contain a dot
    and must not be localhost.
    """
    if value is None:
        return None
    url = str(value).strip()
    if not url:
        return None
    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", url):
        url = f"https://{url.lstrip('/')}"
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https"):
        return None
    if not hostname or "." not in hostname or hostname == "localhost":
        return None
    return url


def _clean_string(value: Any) -> str | None:
    """Strip whitespace; empty becomes None."""
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


# ============================================================================
# Parser
# ============================================================================


class FeedParser:
    """
    Parses feed documents into ParsedRecords.

    The invariant rows_parsed <= rows_read always holds: every record
    comes from exactly one read row.
    """

    def __init__(self, max_rows: int | None = None) -> None:
        """
        Initialize the parser.

        Args:
            max_rows: Stop reading after this many data rows
        """
        self.max_rows = max_rows
        self._aliases = [(name, aliases) for name, aliases in FIELD_ALIASES]

    def parse(self, content: bytes, format_hint: FeedFormat = FeedFormat.AUTO) -> ParseResult:
        """
        Parse a feed document.

        Args:
            content: Raw (already decompressed) bytes
            format_hint: Format to use; AUTO sniffs the content

        Returns:
            ParseResult with records, counts and row errors
        """
        text = self._decode(content)
        fmt = format_hint if format_hint != FeedFormat.AUTO else self._guess_format(text)
        result = ParseResult(format=fmt)

        try:
            if fmt in (FeedFormat.CSV, FeedFormat.TSV):
                rows = self._iter_delimited(text, "\t" if fmt == FeedFormat.TSV else None, result)
            elif fmt == FeedFormat.XML:
                rows = self._iter_xml(text)
            else:
                rows = self._iter_json(text)
        except (ET.ParseError, json.JSONDecodeError, csv.Error, ValueError) as e:
            logger.warning(f"Failed to parse {fmt.value} document: {e}")
            result.errors.append(
                ParseError(ParseErrorCode.PARSE_FAILED, f"Could not parse {fmt.value} document: {e}")
            )
            return result

        for row_number, raw in rows:
            if self.max_rows is not None and result.rows_read >= self.max_rows:
                result.errors.append(
                    ParseError(
                        ParseErrorCode.TOO_MANY_ROWS,
                        f"Feed exceeds the limit of {self.max_rows} rows; remaining rows ignored",
                        row_number=row_number,
                    )
                )
                break
            result.rows_read += 1

            if not isinstance(raw, dict):
                result.errors.append(
                    ParseError(
                        ParseErrorCode.PARSE_FAILED,
                        f"Row is not an object ({type(raw).__name__})",
                        row_number=row_number,
                    )
                )
                continue

            record, error = self.parse_row(row_number, raw)
            if error is not None:
                result.errors.append(error)
            elif record is not None:
                result.records.append(record)

        logger.debug(
            f"Parsed {result.rows_parsed}/{result.rows_read} rows ({len(result.errors)} errors)"
        )
        return result

    def parse_row(
        self, row_number: int, raw: dict[str, Any]
    ) -> tuple[ParsedRecord | None, ParseError | None]:
        """
        Map one raw row onto the logical schema.

        Returns:
            (record, None) on success, (None, error) if the row is dropped
        """
        values = self.resolve_fields(raw)

        name = _clean_string(values.get("name"))
        if not name:
            return None, self._row_error(
                ParseErrorCode.MISSING_REQUIRED_FIELD, "Missing product name", row_number, raw
            )

        raw_url = values.get("url")
        if raw_url is None or not str(raw_url).strip():
            return None, self._row_error(
                ParseErrorCode.MISSING_REQUIRED_FIELD, "Missing product URL", row_number, raw
            )
        url = normalize_url(raw_url)
        if url is None:
            return None, self._row_error(
                ParseErrorCode.INVALID_URL, f"Invalid product URL: {raw_url}", row_number, raw
            )

        sale_text = values.get("sale_price")
        list_text = values.get("price")
        price_text = sale_text if _clean_string(sale_text) else list_text
        if not _clean_string(price_text):
            return None, self._row_error(
                ParseErrorCode.MISSING_REQUIRED_FIELD, "Missing price", row_number, raw
            )
        price = parse_price(price_text)
        if price is None or price < 0:
            return None, self._row_error(
                ParseErrorCode.INVALID_PRICE, f"Invalid price: {price_text}", row_number, raw
            )

        original_price = parse_price(values.get("original_price"))
        if original_price is None and price_text is sale_text:
            original_price = parse_price(list_text)
        if original_price is not None and original_price <= 0:
            original_price = None

        record = ParsedRecord(
            row_number=row_number,
            name=name,
            url=url,
            price=price,
            currency=parse_currency(values.get("currency"), price_text),
            original_price=original_price,
            in_stock=parse_stock(values.get("stock")),
            upc=normalize_upc(values.get("upc")),
            sku=_clean_string(values.get("sku")),
            network_item_id=_clean_string(values.get("network_item_id")),
            brand=_clean_string(values.get("brand")),
            category=_clean_string(values.get("category")),
            image_url=normalize_url(values.get("image_url")),
            description=_clean_string(values.get("description")),
            raw=raw,
        )
        return record, None

    def resolve_fields(self, raw: dict[str, Any]) -> dict[str, Any]:
        """
        Pick a value for each logical field from a raw row.

        Aliases are checked in order; empty values fall through to the
        next alias.
        """
        index: dict[str, Any] = {}
        for key, value in raw.items():
            if key is None:
                continue
            normalized = normalize_key(str(key))
            if normalized and normalized not in index:
                index[normalized] = value

        resolved: dict[str, Any] = {}
        for name, aliases in self._aliases:
            for alias in aliases:
                value = index.get(alias)
                if value is not None and str(value).strip() != "":
                    resolved[name] = value
                    break
        return resolved

    @staticmethod
    def _row_error(
        code: ParseErrorCode, message: str, row_number: int, raw: dict[str, Any]
    ) -> ParseError:
        return ParseError(code=code, message=message, row_number=row_number, raw=raw)

    @staticmethod
    def _decode(content: bytes) -> str:
        """Decode bytes, dropping a UTF-8 BOM; fall back to latin-1."""
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError:
            return content.decode("latin-1")

    @staticmethod
    def _guess_format(text: str) -> FeedFormat:
        head = text.lstrip()[:1]
        if head in ("{", "["):
            return FeedFormat.JSON
        if head == "<":
            return FeedFormat.XML
        first_line = text.split("\n", 1)[0]
        return FeedFormat.TSV if first_line.count("\t") > first_line.count(",") else FeedFormat.CSV

    # ------------------------------------------------------------------
    # Format readers: each yields (row_number, raw_row)
    # ------------------------------------------------------------------

    def _iter_delimited(self, text: str, delimiter: str | None, result: ParseResult):
        if delimiter is None:
            first_line = text.split("\n", 1)[0]
            delimiter = ";" if first_line.count(";") > first_line.count(",") else ","
        reader = csv.DictReader(io.StringIO(text, newline=""), delimiter=delimiter)
        if not reader.fieldnames:
            raise ValueError("Delimited feed has no header row")
        return self._guard_csv(reader, result)

    def _guard_csv(self, reader: csv.DictReader, result: ParseResult):
        """Yield rows; a csv.Error mid-file ends reading with a coded error."""
        row_number = 0
        while True:
            try:
                row = next(reader)
            except StopIteration:
                return
            except csv.Error as e:
                result.errors.append(
                    ParseError(
                        ParseErrorCode.PARSE_FAILED,
                        f"Malformed delimited data: {e}",
                        row_number=row_number + 1,
                    )
                )
                return
            row_number += 1
            if not any((v or "").strip() for k, v in row.items() if k is not None and isinstance(v, str)):
                continue
            yield row_number, {k: v for k, v in row.items() if k is not None}

    def _iter_xml(self, text: str):
        root = ET.fromstring(text)
        rows = self._find_xml_rows(root)
        return ((i, self._xml_row_to_dict(row)) for i, row in enumerate(rows, start=1))

    @staticmethod
    def _local(tag: str) -> str:
        return tag.rsplit("}", 1)[-1].split(":")[-1]

    def _find_xml_rows(self, root: ET.Element) -> list[ET.Element]:
        """
        Locate the repeated row element.

        Known row tags (product, item, ...) win; otherwise the children of
        the first element whose children all share one tag.
        """
        for tag in XML_ROW_TAGS:
            rows = [el for el in root.iter() if self._local(el.tag).lower() == tag and len(el)]
            if rows:
                return rows

        for el in root.iter():
            children = list(el)
            if len(children) >= 1 and len({self._local(c.tag) for c in children}) == 1 and len(children[0]):
                return children
        return []

    def _xml_row_to_dict(self, row: ET.Element) -> dict[str, Any]:
        data: dict[str, Any] = {self._local(k): v for k, v in row.attrib.items()}
        for child in row:
            key = self._local(child.tag)
            text = (child.text or "").strip()
            if not text and len(child):
                # One level of nesting, e.g. <price><amount>9.99</amount></price>
                for sub in child:
                    sub_key = self._local(sub.tag)
                    sub_text = (sub.text or "").strip()
                    if sub_key.lower() in ("amount", "value"):
                        data.setdefault(key, sub_text)
                    else:
                        data.setdefault(f"{key}_{sub_key}", sub_text)
                continue
            if not text:
                text = child.attrib.get("href") or child.attrib.get("url") or child.attrib.get("value") or ""
            data.setdefault(key, text)
        return data

    def _iter_json(self, text: str):
        data = json.loads(text)
        rows: list[Any]
        if isinstance(data, list):
            rows = data
        elif isinstance(data, dict):
            rows = []
            for key in JSON_LIST_KEYS:
                if isinstance(data.get(key), list):
                    rows = data[key]
                    break
            else:
                lists = [v for v in data.values() if isinstance(v, list) and v and isinstance(v[0], dict)]
                if lists:
                    rows = lists[0]
                else:
                    raise ValueError("JSON document contains no product list")
        else:
            raise ValueError("JSON document must be an array or object")
        return ((i, self._flatten_json(row)) for i, row in enumerate(rows, start=1))

    @staticmethod
    def _flatten_json(row: Any) -> Any:
        if not isinstance(row, dict):
            return row
        flat: dict[str, Any] = {}
        for key, value in row.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    if isinstance(sub_value, (dict, list)):
                        continue
                    if sub_key.lower() in ("amount", "value"):
                        flat.setdefault(key, sub_value)
                    else:
                        flat.setdefault(f"{key}_{sub_key}", sub_value)
            elif isinstance(value, list):
                continue
            else:
                flat[key] = value
        return flat
