"""Enums shared across the feed harvesting pipeline."""

from enum import Enum


# ============================================================================
# Feeds and Runs
# ============================================================================


class FeedStatus(str, Enum):
    """Lifecycle status of a configured feed."""

    ENABLED = "enabled"
    PAUSED = "paused"
    DISABLED = "disabled"
    FAILED = "failed"


class FeedTransport(str, Enum):
    """How feed content is retrieved."""

    URL = "url"
    AUTH_URL = "auth_url"
    FTP = "ftp"
    FTPS = "ftps"
    UPLOAD = "upload"


class FeedFormat(str, Enum):
    """Format hint for feed content."""

    AUTO = "auto"
    CSV = "csv"
    TSV = "tsv"
    XML = "xml"
    JSON = "json"


class Compression(str, Enum):
    """Compression applied to feed content."""

    NONE = "none"
    GZIP = "gzip"


class RunStatus(str, Enum):
    """Status of a single feed run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunTrigger(str, Enum):
    """What started a feed run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"
    # Price written when an operator promotes a corrected quarantine record
    REPROCESS = "reprocess"


class SkipReason(str, Enum):
    """Why a run wrote nothing."""

    UNCHANGED_MTIME = "unchanged_mtime"
    UNCHANGED_HASH = "unchanged_hash"


class ExpiryBlockReason(str, Enum):
    """Why the staleness circuit breaker withheld promotion."""

    SPIKE_THRESHOLD_EXCEEDED = "spike_threshold_exceeded"
    DATA_QUALITY_URL_HASH_SPIKE = "data_quality_url_hash_spike"


# ============================================================================
# Errors
# ============================================================================


class FailureKind(str, Enum):
    """Retry class of a feed failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIG = "config"


class FeedErrorCode(str, Enum):
    """Run-level error codes for transport and infrastructure failures."""

    CONNECTION_FAILED = "connection_failed"
    CONNECTION_TIMEOUT = "connection_timeout"
    BAD_STATUS = "bad_status"
    AUTH_FAILED = "auth_failed"
    FILE_NOT_FOUND = "file_not_found"
    INVALID_CONTENT_TYPE = "invalid_content_type"
    FILE_TOO_LARGE = "file_too_large"
    DECOMPRESS_FAILED = "decompress_failed"
    INVALID_FORMAT = "invalid_format"
    DATABASE_ERROR = "database_error"
    UNKNOWN_ERROR = "unknown_error"


class ParseErrorCode(str, Enum):
    """Per-row parse error codes."""

    MISSING_REQUIRED_FIELD = "missing_required_field"
    INVALID_URL = "invalid_url"
    INVALID_PRICE = "invalid_price"
    PARSE_FAILED = "parse_failed"
    TOO_MANY_ROWS = "too_many_rows"


class BlockingErrorCode(str, Enum):
    """Validation failures that send a record to quarantine."""

    MISSING_UPC = "missing_upc"
    INVALID_UPC = "invalid_upc"
    MISSING_TITLE = "missing_title"
    INVALID_PRICE = "invalid_price"


# ============================================================================
# Identity, Quarantine and Prices
# ============================================================================


class IdentityType(str, Enum):
    """Identity sources for a source product, strongest first."""

    NETWORK_ITEM_ID = "network_item_id"
    SKU = "sku"
    URL_HASH = "url_hash"

    @property
    def priority(self) -> int:
        """Higher wins when several identities are available."""
        return {
            IdentityType.NETWORK_ITEM_ID: 3,
            IdentityType.SKU: 2,
            IdentityType.URL_HASH: 1,
        }[self]


class QuarantineStatus(str, Enum):
    """Status of a quarantined record."""

    QUARANTINED = "quarantined"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class PriceType(str, Enum):
    """Kind of price observed."""

    REGULAR = "regular"
    SALE = "sale"


# ============================================================================
# Resolver
# ============================================================================


class LinkStatus(str, Enum):
    """Outcome of resolving a source product."""

    MATCHED = "matched"
    NEEDS_REVIEW = "needs_review"
    UNMATCHED = "unmatched"


class MatchType(str, Enum):
    """How a product link was established."""

    MANUAL = "manual"
    UPC = "upc"
    FINGERPRINT = "fingerprint"
    NONE = "none"

    @property
    def strength(self) -> int:
        """Relative strength used when deciding whether to relink."""
        return {
            MatchType.MANUAL: 3,
            MatchType.UPC: 2,
            MatchType.FINGERPRINT: 1,
            MatchType.NONE: 0,
        }[self]


class ConfidenceTier(str, Enum):
    """Confidence bands for resolver output."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def rank(self) -> int:
        return {
            ConfidenceTier.HIGH: 3,
            ConfidenceTier.MEDIUM: 2,
            ConfidenceTier.LOW: 1,
            ConfidenceTier.NONE: 0,
        }[self]


# ============================================================================
# Retailers, Merchants and Subscriptions
# ============================================================================


class RetailerEligibility(str, Enum):
    """Whether a retailer may appear in public price data."""

    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"
    SUSPENDED = "suspended"


class RelationshipStatus(str, Enum):
    """Status of a merchant-retailer relationship."""

    ACTIVE = "active"
    SUSPENDED = "suspended"


class ListingStatus(str, Enum):
    """Whether a merchant lists a retailer's prices."""

    LISTED = "listed"
    UNLISTED = "unlisted"


class SubscriptionStatus(str, Enum):
    """Stored subscription status of a merchant account."""

    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class SubscriptionAccess(str, Enum):
    """Evaluated access level for feed processing."""

    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"


class EventKind(str, Enum):
    """Notification events emitted by the pipeline."""

    FEED_FAILED = "feed_failed"
    FEED_RECOVERED = "feed_recovered"
    FEED_WARNING = "feed_warning"
    FEED_AUTO_DISABLED = "feed_auto_disabled"
    SUBSCRIPTION_SKIP = "subscription_skip"
    EXPIRY_BLOCKED = "expiry_blocked"
