"""Database client and persistence layer."""

from price_harvester.db.engine import (
    Database,
    create_db_engine,
    get_database_url,
)
from price_harvester.db.models import (
    Base,
    CanonicalProductDB,
    FeedDB,
    FeedRunDB,
    MerchantDB,
    PriceDB,
    ProductLinkDB,
    QuarantinedRecordDB,
    RetailerDB,
    SourceProductDB,
)
from price_harvester.db.repositories import (
    CatalogRepository,
    FeedRepository,
    FeedRunRepository,
    MerchantRepository,
    PriceRepository,
    ProductLinkRepository,
    QuarantineRepository,
    RetailerRepository,
    SourceProductRepository,
)

__all__ = [
    # Engine
    "Database",
    "create_db_engine",
    "get_database_url",
    # Models
    "Base",
    "CanonicalProductDB",
    "FeedDB",
    "FeedRunDB",
    "MerchantDB",
    "PriceDB",
    "ProductLinkDB",
    "QuarantinedRecordDB",
    "RetailerDB",
    "SourceProductDB",
    # Repositories
    "CatalogRepository",
    "FeedRepository",
    "FeedRunRepository",
    "MerchantRepository",
    "PriceRepository",
    "ProductLinkRepository",
    "QuarantineRepository",
    "RetailerRepository",
    "SourceProductRepository",
]
