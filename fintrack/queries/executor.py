"""
Ledger Query Execution

DESIGN DECISION: Reporting is read-only and DETERMINISTIC.
Everything returned here is computed from stored rows; nothing is
estimated, cached or written back.

Rows written as side effects of an income (automatic distribution
transfers) are hidden from the history by default. They are bookkeeping
detail of one user action and would otherwise flood the list.
"""

from datetime import date, timedelta
from typing import Optional

from fintrack.models.ledger import (
    Transaction,
    TransactionFilter,
    TransactionOrigin,
    TransactionType,
)
from fintrack.models.money import HUNDRED, ZERO, round_currency
from fintrack.models.results import CashFlowPoint, CategoryExpense
from fintrack.services.storage import (
    CategoryStorageInterface,
    TransactionStorageInterface,
)


UNKNOWN_CATEGORY = "Unknown"


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    start = date(year, month, 1)
    if month == 12:
        end = date(year + 1, 1, 1)
    else:
        end = date(year, month + 1, 1)
    return start, end - timedelta(days=1)


class LedgerQueryExecutor:
    """
    Transaction history and spending reports.

    GUARANTEES:
    - Only returns real data from storage
    - Empty list when nothing matches, never an error
    """

    def __init__(
        self,
        transaction_storage: TransactionStorageInterface,
        category_storage: Optional[CategoryStorageInterface] = None,
    ):
        self._transactions = transaction_storage
        self._categories = category_storage

    async def transaction_history(
        self,
        user_id: str,
        filters: Optional[TransactionFilter] = None,
        include_automatic: bool = False,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """
        List transactions newest first.

        Args:
            user_id: Owner of the ledger
            filters: Date range, type, category, bucket, investment, search
            include_automatic: Also return automatic distribution transfers
            limit: Maximum number of rows
        """
        rows = await self._transactions.query_transactions(user_id, filters)
        if not include_automatic:
            rows = [r for r in rows if r.origin != TransactionOrigin.AUTO_DISTRIBUTION]
        rows.reverse()
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def expenses_by_category(
        self,
        user_id: str,
        year: int,
        month: int,
    ) -> list[CategoryExpense]:
        """
        Monthly spending grouped by exact category, largest first.

        Uncategorized expenses are left out, as are child-to-parent roll-ups.
        """
        start, end = _month_bounds(year, month)
        rows = await self._transactions.query_transactions(
            user_id,
            TransactionFilter(date_from=start, date_to=end, type=TransactionType.EXPENSE),
        )

        totals: dict = {}
        for tx in rows:
            if tx.category_id is None:
                continue
            totals[tx.category_id] = totals.get(tx.category_id, ZERO) + abs(tx.amount)

        if not totals:
            return []

        names = {}
        if self._categories:
            names = {c.id: c.name for c in await self._categories.list_categories(user_id)}

        grand_total = sum(totals.values(), ZERO)
        breakdown = [
            CategoryExpense(
                category_id=category_id,
                category_name=names.get(category_id, UNKNOWN_CATEGORY),
                total=round_currency(total),
                percentage=round_currency(total / grand_total * HUNDRED),
            )
            for category_id, total in totals.items()
        ]
        breakdown.sort(key=lambda c: c.total, reverse=True)
        return breakdown

    async def cash_flow(
        self,
        user_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[CashFlowPoint]:
        """
        Daily income and expenses with a running balance, oldest first.

        Only days with income or expense rows produce a point.
        """
        rows = await self._transactions.query_transactions(
            user_id,
            TransactionFilter(date_from=date_from, date_to=date_to),
        )

        points: list[CashFlowPoint] = []
        running = ZERO
        for tx in rows:
            if tx.type not in (TransactionType.INCOME, TransactionType.EXPENSE):
                continue
            if not points or points[-1].day != tx.date:
                points.append(CashFlowPoint(day=tx.date, running_balance=running))
            point = points[-1]
            if tx.type == TransactionType.INCOME:
                point.income = round_currency(point.income + abs(tx.amount))
                running += abs(tx.amount)
            else:
                point.expenses = round_currency(point.expenses + abs(tx.amount))
                running -= abs(tx.amount)
            point.running_balance = round_currency(running)
        return points
