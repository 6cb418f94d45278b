"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for every store the
accounting engines touch. This allows us to:
1. Keep the engines independent of the persistence technology
2. Use in-memory storage for testing
3. Add caching layers transparently

Aggregate stores (buckets, investments) use optimistic concurrency:
`update_*` takes the version the caller read and refuses to write when the
row changed in between. This closes the read-modify-write race between two
sessions of the same user.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fintrack.models.audit import AuditEvent
from fintrack.models.ledger import (
    Bucket,
    Category,
    CategoryType,
    Investment,
    Profile,
    Transaction,
    TransactionFilter,
)


class TransactionStorageInterface(ABC):
    """
    The ledger: an append/update/delete-capable collection of rows.
    """

    @abstractmethod
    async def append_transaction(self, transaction: Transaction) -> UUID:
        """
        Append a row to the ledger.

        Returns:
            The id of the stored row

        Raises:
            DuplicateError: If a row with the same id exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        """Retrieve a row by id, None if missing."""
        pass

    @abstractmethod
    async def query_transactions(
        self,
        user_id: str,
        filters: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        """
        List a user's rows matching the filters.

        Returns:
            Rows ordered by (date, created_at) ascending
        """
        pass

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: dict[str, Any],
    ) -> Transaction:
        """
        Replace fields of a row.

        Raises:
            NotFoundError: If the row doesn't exist
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        """
        Delete a row.

        Returns:
            True if a row was deleted, False if it was already gone
        """
        pass


class BucketStorageInterface(ABC):
    """Materialized bucket aggregates."""

    @abstractmethod
    async def list_buckets(self, user_id: str) -> list[Bucket]:
        """List a user's buckets ordered by name."""
        pass

    @abstractmethod
    async def get_bucket(self, bucket_id: UUID) -> Optional[Bucket]:
        pass

    @abstractmethod
    async def insert_bucket(self, bucket: Bucket) -> Bucket:
        pass

    @abstractmethod
    async def update_bucket(
        self,
        bucket_id: UUID,
        changes: dict[str, Any],
        expected_version: int,
    ) -> Bucket:
        """
        Compare-and-set update.

        Args:
            bucket_id: Bucket to change
            changes: Field values to write
            expected_version: Version the caller based its computation on

        Returns:
            The stored bucket with its version incremented

        Raises:
            NotFoundError: If the bucket doesn't exist
            VersionConflictError: If the stored version differs
        """
        pass

    @abstractmethod
    async def delete_bucket(self, bucket_id: UUID) -> bool:
        pass


class InvestmentStorageInterface(ABC):
    """Materialized investment positions."""

    @abstractmethod
    async def list_investments(self, user_id: str) -> list[Investment]:
        """List a user's investments, newest first."""
        pass

    @abstractmethod
    async def get_investment(self, investment_id: UUID) -> Optional[Investment]:
        pass

    @abstractmethod
    async def insert_investment(self, investment: Investment) -> Investment:
        """
        Raises:
            DuplicateError: If the user already holds the same ticker
        """
        pass

    @abstractmethod
    async def update_investment(
        self,
        investment_id: UUID,
        changes: dict[str, Any],
        expected_version: int,
    ) -> Investment:
        """
        Compare-and-set update, same contract as `update_bucket`.
        """
        pass

    @abstractmethod
    async def delete_investment(self, investment_id: UUID) -> bool:
        pass


class CategoryStorageInterface(ABC):
    """Categories are owned by the presentation layer; we only read them."""

    @abstractmethod
    async def list_categories(self, user_id: str) -> list[Category]:
        pass

    @abstractmethod
    async def get_or_create_category(
        self,
        user_id: str,
        name: str,
        category_type: CategoryType,
    ) -> Category:
        """
        Return the user's category with this name and type, creating it
        on first use.
        """
        pass


class ProfileStorageInterface(ABC):
    """Per-user bookkeeping such as the price-refresh timestamp."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Profile:
        """Return the stored profile or a fresh one."""
        pass

    @abstractmethod
    async def set_last_price_refresh(self, user_id: str, when: datetime) -> Profile:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Events of one user action in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class VersionConflictError(StorageError):
    """The row changed since the caller read it."""

    def __init__(self, entity_type: str, entity_id: UUID, expected: int, actual: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected
        self.actual_version = actual
        super().__init__(
            f"{entity_type} {entity_id} is at version {actual}, expected {expected}"
        )
