"""
Tests for the in-memory stores and the audit trail.
"""

import asyncio
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from fintrack.audit import AuditLogger, create_correlation_id
from fintrack.models.audit import AuditEventBuilder, AuditEventType
from fintrack.models.ledger import (
    Bucket,
    Category,
    CategoryType,
    Investment,
    Transaction,
    TransactionType,
)
from fintrack.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryBucketStorage,
    InMemoryCategoryStorage,
    InMemoryDatabase,
    InMemoryInvestmentStorage,
    InMemoryTransactionStorage,
    NotFoundError,
    VersionConflictError,
)


USER = "u1"


class TestTransactionStorage:

    def test_update_replaces_fields_but_not_identity(self):
        storage = InMemoryTransactionStorage()
        tx = Transaction(
            user_id=USER,
            amount=Decimal("-12.5"),
            type=TransactionType.EXPENSE,
            date=date(2024, 5, 1),
        )

        async def scenario():
            await storage.append_transaction(tx)
            return await storage.update_transaction(
                tx.id,
                {"id": uuid4(), "description": "Lunch", "amount": Decimal("-13")},
            )

        updated = asyncio.run(scenario())
        assert updated.id == tx.id
        assert updated.description == "Lunch"
        assert updated.amount == Decimal("-13.00")

    def test_update_missing_row(self):
        storage = InMemoryTransactionStorage()
        with pytest.raises(NotFoundError):
            asyncio.run(storage.update_transaction(uuid4(), {"description": "x"}))

    def test_query_orders_by_date_then_creation(self):
        storage = InMemoryTransactionStorage()
        later = Transaction(
            user_id=USER, amount=Decimal("1"), type=TransactionType.INCOME, date=date(2024, 5, 2),
        )
        earlier = Transaction(
            user_id=USER, amount=Decimal("2"), type=TransactionType.INCOME, date=date(2024, 5, 1),
        )
        other_user = Transaction(
            user_id="u2", amount=Decimal("3"), type=TransactionType.INCOME, date=date(2024, 5, 1),
        )

        async def scenario():
            for tx in (later, earlier, other_user):
                await storage.append_transaction(tx)
            return await storage.query_transactions(USER)

        rows = asyncio.run(scenario())
        assert [tx.id for tx in rows] == [earlier.id, later.id]


class TestVersionedAggregates:

    def test_stale_bucket_update_is_rejected_untouched(self):
        db = InMemoryDatabase()
        storage = InMemoryBucketStorage(db)
        bucket = Bucket(user_id=USER, name="Trip", current_balance=Decimal("10"))

        async def scenario():
            await storage.insert_bucket(bucket)
            await storage.update_bucket(bucket.id, {"current_balance": Decimal("20")}, 0)
            await storage.update_bucket(bucket.id, {"current_balance": Decimal("99")}, 0)

        with pytest.raises(VersionConflictError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 1
        assert db.buckets[bucket.id].current_balance == Decimal("20.00")
        assert db.buckets[bucket.id].version == 1

    def test_ticker_is_unique_per_user(self):
        storage = InMemoryInvestmentStorage()

        async def scenario():
            await storage.insert_investment(Investment(user_id=USER, ticker="AAA"))
            await storage.insert_investment(Investment(user_id="u2", ticker="AAA"))
            await storage.insert_investment(Investment(user_id=USER, ticker="aaa"))

        with pytest.raises(DuplicateError):
            asyncio.run(scenario())


class TestCategoryStorage:

    def test_get_or_create_is_case_insensitive(self):
        storage = InMemoryCategoryStorage()

        async def scenario():
            seeded = await storage.add_category(
                Category(user_id=USER, name="Commissions", type=CategoryType.EXPENSE)
            )
            found = await storage.get_or_create_category(
                USER, "commissions", CategoryType.EXPENSE
            )
            return seeded, found, await storage.list_categories(USER)

        seeded, found, categories = asyncio.run(scenario())
        assert found.id == seeded.id
        assert len(categories) == 1


class BrokenAuditStorage(AuditStorageInterface):

    async def append_event(self, event):
        raise ConnectionError("audit store down")

    async def get_events_by_correlation_id(self, correlation_id):
        return []

    async def get_events_by_entity(self, entity_type, entity_id):
        return []

    async def get_recent_events(self, limit=100):
        return []


class TestAuditTrail:

    def test_events_share_the_correlation_id(self, app, db):
        correlation_id = create_correlation_id()

        async def scenario():
            await app.buckets.create_bucket(USER, "Savings", Decimal("50"))
            await app.transactions.record_income(
                USER, Decimal("1000"), date(2024, 5, 1),
                auto_distribute=True, correlation_id=correlation_id,
            )
            return await InMemoryAuditStorage(db).get_events_by_correlation_id(correlation_id)

        events = asyncio.run(scenario())
        types = [e.event_type for e in events]
        assert AuditEventType.TRANSACTION_RECORDED in types
        assert AuditEventType.INCOME_DISTRIBUTED in types
        assert AuditEventType.BUCKET_CREATED not in types

    def test_events_by_entity(self, app, db):
        async def scenario():
            bucket = await app.buckets.create_bucket(USER, "Savings")
            await app.buckets.update_bucket(bucket.id, name="Rainy day")
            return await InMemoryAuditStorage(db).get_events_by_entity("bucket", bucket.id)

        events = asyncio.run(scenario())
        assert [e.event_type for e in events] == [
            AuditEventType.BUCKET_CREATED,
            AuditEventType.BUCKET_UPDATED,
        ]

    def test_recent_events_limit(self, app, db):
        async def scenario():
            for name in ("A", "B", "C"):
                await app.buckets.create_bucket(USER, name)
            return await InMemoryAuditStorage(db).get_recent_events(limit=2)

        assert len(asyncio.run(scenario())) == 2

    def test_failed_audit_write_is_swallowed(self):
        logger = AuditLogger(BrokenAuditStorage())
        event = AuditEventBuilder.prices_refreshed(USER, 1, 1, [])
        assert asyncio.run(logger.log(event)) is False

    def test_local_only_logger(self):
        assert asyncio.run(AuditLogger().log(AuditEventBuilder.prices_refreshed(USER, 0, 0, []))) is True
