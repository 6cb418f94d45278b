"""Services package."""

from fintrack.services.market import (
    MarketDataError,
    MarketDataProvider,
    TickerNotFoundError,
    TransientMarketDataError,
    YahooMarketDataService,
)
from fintrack.services.storage import (
    AuditStorageInterface,
    BucketStorageInterface,
    CategoryStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryBucketStorage,
    InMemoryCategoryStorage,
    InMemoryDatabase,
    InMemoryInvestmentStorage,
    InMemoryProfileStorage,
    InMemoryTransactionStorage,
    InvestmentStorageInterface,
    NotFoundError,
    ProfileStorageInterface,
    StorageError,
    TransactionStorageInterface,
    VersionConflictError,
)

__all__ = [
    # Market data
    "MarketDataError",
    "MarketDataProvider",
    "TickerNotFoundError",
    "TransientMarketDataError",
    "YahooMarketDataService",
    # Storage
    "AuditStorageInterface",
    "BucketStorageInterface",
    "CategoryStorageInterface",
    "DuplicateError",
    "InMemoryAuditStorage",
    "InMemoryBucketStorage",
    "InMemoryCategoryStorage",
    "InMemoryDatabase",
    "InMemoryInvestmentStorage",
    "InMemoryProfileStorage",
    "InMemoryTransactionStorage",
    "InvestmentStorageInterface",
    "NotFoundError",
    "ProfileStorageInterface",
    "StorageError",
    "TransactionStorageInterface",
    "VersionConflictError",
]
