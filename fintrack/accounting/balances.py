"""
Balance Derivation Engine

Liquidity and net worth are never stored. They are derived on every read
from the full ledger plus the bucket and investment snapshots:

    unassigned = income - expenses - sum(bucket balances)
                 + sum(transfers not owned by a bucket)
    liquidity  = unassigned + sum(bucket balances)
    net worth  = liquidity + sum(investment values)

Income and expense totals include investment-linked rows (realized gains
and losses, trading fees); those flow into ordinary liquidity on purpose.
Transfers owned by a bucket are already reflected in that bucket's stored
balance and are skipped here to avoid counting them twice.

Rows of type `initial` (historical position declarations) have no
liquidity effect and are ignored.

Budget progress matches expenses on the exact category id. Spending in a
child category does NOT roll up into its parent's budget.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from fintrack.models.ledger import (
    Bucket,
    Category,
    Investment,
    Transaction,
    TransactionType,
)
from fintrack.models.money import HUNDRED, ZERO, round_currency
from fintrack.models.results import BalanceSummary, BudgetProgress
from fintrack.services.storage import (
    BucketStorageInterface,
    CategoryStorageInterface,
    InvestmentStorageInterface,
    StorageError,
    TransactionStorageInterface,
)


logger = structlog.get_logger(__name__)


def _in_month(tx: Transaction, today: date) -> bool:
    return tx.date.year == today.year and tx.date.month == today.month


def _budget_progress(
    transactions: list[Transaction],
    categories: Iterable[Category],
    today: date,
) -> list[BudgetProgress]:
    spent_by_category: dict = {}
    for tx in transactions:
        if tx.type == TransactionType.EXPENSE and tx.category_id and _in_month(tx, today):
            spent_by_category[tx.category_id] = (
                spent_by_category.get(tx.category_id, ZERO) + abs(tx.amount)
            )

    progress = []
    for category in categories:
        if not category.budget_limit or category.budget_limit <= 0:
            continue
        spent = round_currency(spent_by_category.get(category.id, ZERO))
        limit = category.budget_limit
        progress.append(BudgetProgress(
            category_id=category.id,
            category_name=category.name,
            budget_limit=limit,
            spent=spent,
            remaining=round_currency(limit - spent),
            percentage=round_currency(spent / limit * HUNDRED),
        ))

    progress.sort(key=lambda p: p.percentage, reverse=True)
    return progress


def derive_balances(
    transactions: Iterable[Transaction],
    buckets: Iterable[Bucket],
    investments: Iterable[Investment],
    categories: Iterable[Category] = (),
    today: Optional[date] = None,
) -> BalanceSummary:
    """
    Pure derivation of all displayed totals.

    Deterministic: the same inputs always give the same summary.
    """
    today = today or date.today()
    transactions = list(transactions)

    total_income = ZERO
    total_expenses = ZERO
    unassigned_transfers = ZERO
    month_income = ZERO
    month_expenses = ZERO

    for tx in transactions:
        if tx.type == TransactionType.INCOME:
            total_income += abs(tx.amount)
            if _in_month(tx, today):
                month_income += abs(tx.amount)
        elif tx.type == TransactionType.EXPENSE:
            total_expenses += abs(tx.amount)
            if _in_month(tx, today):
                month_expenses += abs(tx.amount)
        elif tx.type == TransactionType.TRANSFER and tx.bucket_id is None:
            unassigned_transfers += tx.amount

    buckets_total = sum((b.current_balance for b in buckets), ZERO)
    investments_total = sum((i.current_value for i in investments), ZERO)

    unassigned = round_currency(
        total_income - total_expenses - buckets_total + unassigned_transfers
    )
    liquidity = round_currency(unassigned + buckets_total)

    return BalanceSummary(
        total_income=round_currency(total_income),
        total_expenses=round_currency(total_expenses),
        unassigned_liquidity=unassigned,
        buckets_total=round_currency(buckets_total),
        liquidity=liquidity,
        investments_total=round_currency(investments_total),
        net_worth=round_currency(liquidity + investments_total),
        month_income=round_currency(month_income),
        month_expenses=round_currency(month_expenses),
        budget_progress=_budget_progress(transactions, categories, today),
    )


class BalanceService:
    """
    Reads the stores and runs the derivation.

    Read-only: safe to call after every mutation to refresh totals.
    """

    def __init__(
        self,
        transaction_storage: TransactionStorageInterface,
        bucket_storage: BucketStorageInterface,
        investment_storage: InvestmentStorageInterface,
        category_storage: Optional[CategoryStorageInterface] = None,
    ):
        self._transactions = transaction_storage
        self._buckets = bucket_storage
        self._investments = investment_storage
        self._categories = category_storage

    async def derive(self, user_id: str, today: Optional[date] = None) -> BalanceSummary:
        """
        Derive totals, letting storage errors propagate.

        Used where a wrong zero would be worse than a failure, e.g. the
        liquidity check before a buy.
        """
        transactions = await self._transactions.query_transactions(user_id)
        buckets = await self._buckets.list_buckets(user_id)
        investments = await self._investments.list_investments(user_id)
        categories = (
            await self._categories.list_categories(user_id) if self._categories else []
        )
        return derive_balances(transactions, buckets, investments, categories, today)

    async def compute(self, user_id: str, today: Optional[date] = None) -> BalanceSummary:
        """
        Derive totals for display. An unreadable ledger yields zeros.
        """
        try:
            return await self.derive(user_id, today)
        except StorageError as e:
            logger.warning("balance_derivation_failed", user_id=user_id, error=str(e))
            return BalanceSummary.empty()

    async def liquidity(self, user_id: str) -> Decimal:
        summary = await self.derive(user_id)
        return summary.liquidity
