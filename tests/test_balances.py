"""
Tests for the balance derivation engine.
"""

import asyncio
from datetime import date
from decimal import Decimal
from uuid import uuid4

from fintrack.accounting import BalanceService, derive_balances
from fintrack.models.ledger import (
    Bucket,
    Category,
    Investment,
    Transaction,
    TransactionOrigin,
    TransactionType,
)
from fintrack.models.results import BalanceSummary
from fintrack.services.storage import (
    InMemoryBucketStorage,
    InMemoryDatabase,
    InMemoryInvestmentStorage,
    InMemoryTransactionStorage,
    StorageError,
)


TODAY = date(2024, 5, 15)


def _tx(amount, tx_type, day=TODAY, **kwargs):
    return Transaction(
        user_id="u1",
        amount=Decimal(amount),
        type=tx_type,
        date=day,
        **kwargs,
    )


class TestDeriveBalances:

    def test_empty_ledger_is_all_zero(self):
        summary = derive_balances([], [], [], today=TODAY)
        assert summary == BalanceSummary.empty()

    def test_income_minus_expenses(self):
        summary = derive_balances(
            [
                _tx("1000", TransactionType.INCOME),
                _tx("-250", TransactionType.EXPENSE),
            ],
            [], [], today=TODAY,
        )
        assert summary.total_income == Decimal("1000.00")
        assert summary.total_expenses == Decimal("250.00")
        assert summary.unassigned_liquidity == Decimal("750.00")
        assert summary.liquidity == Decimal("750.00")
        assert summary.net_worth == Decimal("750.00")

    def test_bucket_transfers_are_not_double_counted(self):
        bucket = Bucket(user_id="u1", name="Savings", current_balance=Decimal("300"))
        summary = derive_balances(
            [
                _tx("1000", TransactionType.INCOME),
                _tx("-300", TransactionType.TRANSFER, bucket_id=bucket.id),
            ],
            [bucket], [], today=TODAY,
        )
        assert summary.unassigned_liquidity == Decimal("700.00")
        assert summary.buckets_total == Decimal("300.00")
        assert summary.liquidity == Decimal("1000.00")

    def test_unassigned_transfers_move_liquidity_into_investments(self):
        investment = Investment(
            user_id="u1",
            quantity=Decimal("10"),
            invested_amount=Decimal("990"),
            current_value=Decimal("1050"),
        )
        summary = derive_balances(
            [
                _tx("2000", TransactionType.INCOME),
                _tx("-990", TransactionType.TRANSFER, investment_id=investment.id),
                _tx("-10", TransactionType.EXPENSE, investment_id=investment.id,
                    origin=TransactionOrigin.COMMISSION),
            ],
            [], [investment], today=TODAY,
        )
        assert summary.liquidity == Decimal("1000.00")
        assert summary.investments_total == Decimal("1050.00")
        assert summary.net_worth == Decimal("2050.00")

    def test_realized_pl_rolls_into_income(self):
        investment_id = uuid4()
        summary = derive_balances(
            [
                _tx("77.50", TransactionType.INCOME, investment_id=investment_id,
                    origin=TransactionOrigin.REALIZED_PNL),
            ],
            [], [], today=TODAY,
        )
        assert summary.total_income == Decimal("77.50")
        assert summary.month_income == Decimal("77.50")

    def test_initial_rows_have_no_liquidity_effect(self):
        summary = derive_balances(
            [_tx("-5000", TransactionType.INITIAL, investment_id=uuid4())],
            [], [], today=TODAY,
        )
        assert summary.liquidity == Decimal("0.00")

    def test_month_totals_only_cover_current_month(self):
        summary = derive_balances(
            [
                _tx("1000", TransactionType.INCOME, day=date(2024, 4, 30)),
                _tx("500", TransactionType.INCOME, day=date(2024, 5, 1)),
                _tx("-80", TransactionType.EXPENSE, day=date(2023, 5, 20)),
                _tx("-20", TransactionType.EXPENSE, day=date(2024, 5, 31)),
            ],
            [], [], today=TODAY,
        )
        assert summary.month_income == Decimal("500.00")
        assert summary.month_expenses == Decimal("20.00")
        assert summary.total_income == Decimal("1500.00")

    def test_budget_progress_exact_category_sorted(self):
        food = Category(user_id="u1", name="Food", budget_limit=Decimal("200"))
        fun = Category(user_id="u1", name="Fun", budget_limit=Decimal("100"))
        restaurants = Category(user_id="u1", name="Restaurants", parent_id=food.id)
        no_budget = Category(user_id="u1", name="Misc")

        summary = derive_balances(
            [
                _tx("-50", TransactionType.EXPENSE, category_id=food.id),
                _tx("-120", TransactionType.EXPENSE, category_id=fun.id),
                _tx("-90", TransactionType.EXPENSE, category_id=restaurants.id),
                _tx("-40", TransactionType.EXPENSE, category_id=food.id, day=date(2024, 4, 1)),
            ],
            [], [], [food, fun, restaurants, no_budget], today=TODAY,
        )

        assert [p.category_name for p in summary.budget_progress] == ["Fun", "Food"]
        fun_progress, food_progress = summary.budget_progress
        assert fun_progress.spent == Decimal("120.00")
        assert fun_progress.remaining == Decimal("-20.00")
        assert fun_progress.percentage == Decimal("120.00")
        # Child category spending does not roll up
        assert food_progress.spent == Decimal("50.00")
        assert food_progress.percentage == Decimal("25.00")

    def test_derivation_is_deterministic(self):
        bucket = Bucket(user_id="u1", name="B", current_balance=Decimal("123.45"))
        rows = [
            _tx("1000", TransactionType.INCOME),
            _tx("-123.45", TransactionType.TRANSFER, bucket_id=bucket.id),
            _tx("-33.33", TransactionType.EXPENSE),
        ]
        first = derive_balances(rows, [bucket], [], today=TODAY)
        second = derive_balances(rows, [bucket], [], today=TODAY)
        assert first == second
        assert first.liquidity == Decimal("966.67")


class BrokenTransactionStorage(InMemoryTransactionStorage):

    async def query_transactions(self, user_id, filters=None):
        raise StorageError("ledger unavailable")


class TestBalanceService:

    def test_compute_reads_the_stores(self):
        db = InMemoryDatabase()
        transactions = InMemoryTransactionStorage(db)
        service = BalanceService(
            transactions,
            InMemoryBucketStorage(db),
            InMemoryInvestmentStorage(db),
        )

        async def scenario():
            await transactions.append_transaction(_tx("400", TransactionType.INCOME))
            return await service.compute("u1", today=TODAY)

        summary = asyncio.run(scenario())
        assert summary.liquidity == Decimal("400.00")

    def test_unreadable_ledger_yields_zeros(self):
        db = InMemoryDatabase()
        service = BalanceService(
            BrokenTransactionStorage(db),
            InMemoryBucketStorage(db),
            InMemoryInvestmentStorage(db),
        )
        summary = asyncio.run(service.compute("u1", today=TODAY))
        assert summary == BalanceSummary.empty()
