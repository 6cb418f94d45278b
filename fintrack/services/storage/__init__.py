"""
Storage Services Package

Provides abstract interfaces and an in-memory implementation for the
ledger, the materialized aggregates and the audit log.
"""

from fintrack.services.storage.interface import (
    AuditStorageInterface,
    BucketStorageInterface,
    CategoryStorageInterface,
    DuplicateError,
    InvestmentStorageInterface,
    NotFoundError,
    ProfileStorageInterface,
    StorageError,
    TransactionStorageInterface,
    VersionConflictError,
)
from fintrack.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryBucketStorage,
    InMemoryCategoryStorage,
    InMemoryDatabase,
    InMemoryInvestmentStorage,
    InMemoryProfileStorage,
    InMemoryTransactionStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "BucketStorageInterface",
    "CategoryStorageInterface",
    "InvestmentStorageInterface",
    "ProfileStorageInterface",
    "TransactionStorageInterface",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    "VersionConflictError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryBucketStorage",
    "InMemoryCategoryStorage",
    "InMemoryDatabase",
    "InMemoryInvestmentStorage",
    "InMemoryProfileStorage",
    "InMemoryTransactionStorage",
]
