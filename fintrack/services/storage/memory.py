"""
In-Memory Storage Implementation

DESIGN DECISION: The accounting core does not own a persistence
technology. This backend implements every storage interface on plain
dicts so that:
1. Tests run without any external service
2. The engines can be embedded in scripts and notebooks
3. The optimistic-locking contract has a reference implementation

All reads return copies, so callers can never mutate stored rows behind
the store's back. Updates re-validate the full model, so rounding and
range constraints apply to every write.
"""

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
from fintrack.services.storage.interface import (
    AuditStorageInterface,
    BucketStorageInterface,
    CategoryStorageInterface,
    DuplicateError,
    InvestmentStorageInterface,
    NotFoundError,
    ProfileStorageInterface,
    TransactionStorageInterface,
    VersionConflictError,
)


class InMemoryDatabase:
    """
    Shared state for the in-memory stores.

    One instance plays the role of one database; hand the same instance to
    every store that should see the same data.
    """

    def __init__(self):
        self.transactions: dict[UUID, Transaction] = {}
        self.buckets: dict[UUID, Bucket] = {}
        self.investments: dict[UUID, Investment] = {}
        self.categories: dict[UUID, Category] = {}
        self.profiles: dict[str, Profile] = {}
        self.audit_events: list[AuditEvent] = []


def _revalidate(model, changes: dict[str, Any], **extra):
    """Apply changes and run the model validators again."""
    data = model.model_dump()
    data.update(changes)
    data.update(extra)
    return type(model).model_validate(data)


class InMemoryTransactionStorage(TransactionStorageInterface):
    """The ledger, kept in a dict keyed by row id."""

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self._db = db or InMemoryDatabase()

    async def append_transaction(self, transaction: Transaction) -> UUID:
        if transaction.id in self._db.transactions:
            raise DuplicateError(f"Transaction already exists: {transaction.id}")
        self._db.transactions[transaction.id] = transaction.model_copy()
        return transaction.id

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        tx = self._db.transactions.get(transaction_id)
        return tx.model_copy() if tx else None

    async def query_transactions(
        self,
        user_id: str,
        filters: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        rows = [
            tx.model_copy()
            for tx in self._db.transactions.values()
            if tx.user_id == user_id and (filters is None or filters.matches(tx))
        ]
        rows.sort(key=lambda tx: (tx.date, tx.created_at))
        return rows

    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: dict[str, Any],
    ) -> Transaction:
        current = self._db.transactions.get(transaction_id)
        if current is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        fields = {k: v for k, v in fields.items() if k not in ("id", "user_id")}
        updated = _revalidate(current, fields)
        self._db.transactions[transaction_id] = updated
        return updated.model_copy()

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        return self._db.transactions.pop(transaction_id, None) is not None


class InMemoryBucketStorage(BucketStorageInterface):

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self._db = db or InMemoryDatabase()

    async def list_buckets(self, user_id: str) -> list[Bucket]:
        buckets = [b.model_copy() for b in self._db.buckets.values() if b.user_id == user_id]
        buckets.sort(key=lambda b: b.name.lower())
        return buckets

    async def get_bucket(self, bucket_id: UUID) -> Optional[Bucket]:
        bucket = self._db.buckets.get(bucket_id)
        return bucket.model_copy() if bucket else None

    async def insert_bucket(self, bucket: Bucket) -> Bucket:
        if bucket.id in self._db.buckets:
            raise DuplicateError(f"Bucket already exists: {bucket.id}")
        self._db.buckets[bucket.id] = bucket.model_copy()
        return bucket.model_copy()

    async def update_bucket(
        self,
        bucket_id: UUID,
        changes: dict[str, Any],
        expected_version: int,
    ) -> Bucket:
        current = self._db.buckets.get(bucket_id)
        if current is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")
        if current.version != expected_version:
            raise VersionConflictError("bucket", bucket_id, expected_version, current.version)
        updated = _revalidate(
            current,
            changes,
            version=current.version + 1,
            updated_at=datetime.utcnow(),
        )
        self._db.buckets[bucket_id] = updated
        return updated.model_copy()

    async def delete_bucket(self, bucket_id: UUID) -> bool:
        return self._db.buckets.pop(bucket_id, None) is not None


class InMemoryInvestmentStorage(InvestmentStorageInterface):

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self._db = db or InMemoryDatabase()

    def _ticker_taken(self, user_id: str, ticker: Optional[str], exclude: Optional[UUID]) -> bool:
        if not ticker:
            return False
        return any(
            inv.user_id == user_id and inv.ticker == ticker and inv.id != exclude
            for inv in self._db.investments.values()
        )

    async def list_investments(self, user_id: str) -> list[Investment]:
        investments = [
            inv.model_copy() for inv in self._db.investments.values() if inv.user_id == user_id
        ]
        investments.sort(key=lambda inv: inv.created_at, reverse=True)
        return investments

    async def get_investment(self, investment_id: UUID) -> Optional[Investment]:
        investment = self._db.investments.get(investment_id)
        return investment.model_copy() if investment else None

    async def insert_investment(self, investment: Investment) -> Investment:
        if investment.id in self._db.investments:
            raise DuplicateError(f"Investment already exists: {investment.id}")
        if self._ticker_taken(investment.user_id, investment.ticker, None):
            raise DuplicateError(f"Ticker already held: {investment.ticker}")
        self._db.investments[investment.id] = investment.model_copy()
        return investment.model_copy()

    async def update_investment(
        self,
        investment_id: UUID,
        changes: dict[str, Any],
        expected_version: int,
    ) -> Investment:
        current = self._db.investments.get(investment_id)
        if current is None:
            raise NotFoundError(f"Investment not found: {investment_id}")
        if current.version != expected_version:
            raise VersionConflictError(
                "investment", investment_id, expected_version, current.version
            )
        updated = _revalidate(
            current,
            changes,
            version=current.version + 1,
            last_updated=datetime.utcnow(),
        )
        if self._ticker_taken(updated.user_id, updated.ticker, investment_id):
            raise DuplicateError(f"Ticker already held: {updated.ticker}")
        self._db.investments[investment_id] = updated
        return updated.model_copy()

    async def delete_investment(self, investment_id: UUID) -> bool:
        return self._db.investments.pop(investment_id, None) is not None


class InMemoryCategoryStorage(CategoryStorageInterface):

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self._db = db or InMemoryDatabase()

    async def add_category(self, category: Category) -> Category:
        """Seed a category; the presentation layer owns real category editing."""
        self._db.categories[category.id] = category.model_copy()
        return category.model_copy()

    async def list_categories(self, user_id: str) -> list[Category]:
        categories = [
            c.model_copy() for c in self._db.categories.values() if c.user_id == user_id
        ]
        categories.sort(key=lambda c: c.name.lower())
        return categories

    async def get_or_create_category(
        self,
        user_id: str,
        name: str,
        category_type: CategoryType,
    ) -> Category:
        for category in self._db.categories.values():
            if (
                category.user_id == user_id
                and category.type == category_type
                and category.name.lower() == name.lower()
            ):
                return category.model_copy()
        category = Category(user_id=user_id, name=name, type=category_type)
        self._db.categories[category.id] = category
        return category.model_copy()


class InMemoryProfileStorage(ProfileStorageInterface):

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self._db = db or InMemoryDatabase()

    async def get_profile(self, user_id: str) -> Profile:
        profile = self._db.profiles.get(user_id)
        return profile.model_copy() if profile else Profile(user_id=user_id)

    async def set_last_price_refresh(self, user_id: str, when: datetime) -> Profile:
        profile = Profile(user_id=user_id, last_price_refresh=when)
        self._db.profiles[user_id] = profile
        return profile.model_copy()


class InMemoryAuditStorage(AuditStorageInterface):

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self._db = db or InMemoryDatabase()

    async def append_event(self, event: AuditEvent) -> bool:
        self._db.audit_events.append(event.model_copy())
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._db.audit_events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._db.audit_events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._db.audit_events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
