"""
Tests for optimistic versioning under concurrent writers.

The racing stores apply a competing write right before the real one, the
way a second browser tab or a price refresh would.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from fintrack.errors import PartialApplicationError
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import BucketState, TransactionOrigin, TransactionType
from fintrack.services.storage import (
    InMemoryBucketStorage,
    InMemoryInvestmentStorage,
    VersionConflictError,
)


USER = "u1"
DAY = date(2024, 5, 15)


class RacingBucketStorage(InMemoryBucketStorage):
    """Lets another writer win the first `races` updates of one bucket."""

    def __init__(self, db, race_on, competing, races=1):
        super().__init__(db)
        self.race_on = race_on
        self.competing = competing
        self.races = races

    async def update_bucket(self, bucket_id, changes, expected_version):
        if bucket_id == self.race_on and self.races > 0:
            self.races -= 1
            current = self._db.buckets[bucket_id]
            await super().update_bucket(bucket_id, self.competing(current), current.version)
        return await super().update_bucket(bucket_id, changes, expected_version)


class RacingInvestmentStorage(InMemoryInvestmentStorage):

    def __init__(self, db, competing, races=1):
        super().__init__(db)
        self.competing = competing
        self.races = races

    async def update_investment(self, investment_id, changes, expected_version):
        if self.races > 0:
            self.races -= 1
            current = self._db.investments[investment_id]
            await super().update_investment(
                investment_id, self.competing(current), current.version
            )
        return await super().update_investment(investment_id, changes, expected_version)


def _spent_elsewhere(bucket):
    return {"current_balance": bucket.current_balance - Decimal("50")}


class TestBucketConflicts:

    def test_expense_retries_on_fresh_balance(self, app, db):
        bucket = asyncio.run(app.buckets.create_bucket(
            USER, "Groceries", initial_balance=Decimal("300"),
        ))
        app.transactions._buckets = RacingBucketStorage(db, bucket.id, _spent_elsewhere)

        asyncio.run(app.transactions.record_expense(
            USER, Decimal("100"), DAY, bucket_id=bucket.id,
        ))

        # 300 - 50 (competing) - 100, not 300 - 100
        assert db.buckets[bucket.id].current_balance == Decimal("150.00")
        assert len(db.transactions) == 1
        assert any(
            e.event_type == AuditEventType.VERSION_CONFLICT for e in db.audit_events
        )

    def test_persistent_conflict_writes_no_row(self, app, db):
        bucket = asyncio.run(app.buckets.create_bucket(
            USER, "Groceries", initial_balance=Decimal("300"),
        ))
        app.transactions._buckets = RacingBucketStorage(
            db, bucket.id, _spent_elsewhere, races=3,
        )

        with pytest.raises(VersionConflictError):
            asyncio.run(app.transactions.record_expense(
                USER, Decimal("100"), DAY, bucket_id=bucket.id,
            ))

        assert db.transactions == {}
        assert db.buckets[bucket.id].current_balance == Decimal("150.00")

    def test_bucket_edit_retries(self, app, db):
        bucket = asyncio.run(app.buckets.create_bucket(USER, "Trip", Decimal("20")))
        app.buckets._buckets = RacingBucketStorage(
            db, bucket.id, lambda b: {"current_balance": Decimal("75")},
        )

        updated = asyncio.run(app.buckets.update_bucket(bucket.id, name="Japan trip"))
        assert updated.name == "Japan trip"
        assert updated.current_balance == Decimal("75.00")


class TestDistributionConflicts:

    def _capped_soon(self, app):
        return asyncio.run(app.buckets.create_bucket(
            USER, "Emergency", Decimal("50"),
            target_amount=Decimal("600"), initial_balance=Decimal("500"),
        ))

    def test_distribution_replans_from_fresh_read(self, app, db):
        bucket = self._capped_soon(app)
        racing = RacingBucketStorage(
            db, bucket.id, lambda b: {"current_balance": b.current_balance + Decimal("50")},
        )
        app.transactions._distributor._buckets = racing

        _, result = asyncio.run(app.transactions.record_income(
            USER, Decimal("1000"), DAY, auto_distribute=True,
        ))

        stored = db.buckets[bucket.id]
        assert stored.current_balance == Decimal("600.00")
        assert stored.state == BucketState.CAPPED
        assert result.total_allocated == Decimal("50")
        auto_rows = [
            tx for tx in db.transactions.values()
            if tx.origin == TransactionOrigin.AUTO_DISTRIBUTION
        ]
        assert [tx.amount for tx in auto_rows] == [Decimal("-50.00")]

    def test_persistent_conflict_keeps_the_income(self, app, db):
        bucket = self._capped_soon(app)
        app.transactions._distributor._buckets = RacingBucketStorage(
            db, bucket.id, lambda b: {"name": b.name}, races=3,
        )

        with pytest.raises(PartialApplicationError) as exc_info:
            asyncio.run(app.transactions.record_income(
                USER, Decimal("1000"), DAY, auto_distribute=True,
            ))

        assert isinstance(exc_info.value.__cause__, VersionConflictError)
        assert len(exc_info.value.applied) == 1
        (income,) = db.transactions.values()
        assert income.type == TransactionType.INCOME
        assert db.buckets[bucket.id].current_balance == Decimal("500.00")


class TestInvestmentConflicts:

    async def _position(self, app):
        await app.transactions.record_income(USER, Decimal("5000"), DAY)
        opened = await app.portfolio.open_position(
            USER, name="World ETF", quantity=Decimal("20"), total_paid=Decimal("2090"),
            trade_date=DAY,
        )
        return opened.investment

    def test_sell_recomputes_after_price_update(self, app, db):
        investment = asyncio.run(self._position(app))
        app.portfolio._investments = RacingInvestmentStorage(
            db, lambda inv: {"current_value": Decimal("2200")},
        )

        result = asyncio.run(app.portfolio.sell(
            investment.id, quantity=Decimal("5"), total_received=Decimal("600"),
            trade_date=DAY,
        ))

        assert result.cost_basis_removed == Decimal("522.50")
        # held price after the competing refresh: 2200 / 20
        assert result.investment.current_value == Decimal("1650.00")
        sells = [
            tx for tx in db.transactions.values()
            if tx.asset_quantity is not None and tx.asset_quantity < 0
        ]
        assert len(sells) == 1

    def test_persistent_conflict_leaves_position_unchanged(self, app, db):
        investment = asyncio.run(self._position(app))
        app.portfolio._investments = RacingInvestmentStorage(
            db, lambda inv: {"name": inv.name}, races=3,
        )

        with pytest.raises(VersionConflictError):
            asyncio.run(app.portfolio.sell(
                investment.id, quantity=Decimal("5"), total_received=Decimal("600"),
                trade_date=DAY,
            ))

        stored = db.investments[investment.id]
        assert stored.quantity == Decimal("20")
        assert stored.invested_amount == Decimal("2090.00")
        assert not any(
            tx.asset_quantity is not None and tx.asset_quantity < 0
            for tx in db.transactions.values()
        )
