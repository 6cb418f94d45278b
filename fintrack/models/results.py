"""
Result Models

What the engines hand back to the presentation layer. These are read-only
snapshots: nothing here is persisted.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from fintrack.models.ledger import Investment, Transaction
from fintrack.models.money import ZERO


# =============================================================================
# BALANCE DERIVATION
# =============================================================================

class BudgetProgress(BaseModel):
    """Spending of one budgeted category in the current month."""

    category_id: UUID
    category_name: str
    budget_limit: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal = Field(
        ...,
        description="spent / limit * 100, may exceed 100"
    )


class BalanceSummary(BaseModel):
    """
    Totals derived from the full ledger plus aggregate snapshots.

    An empty or unreadable ledger yields `BalanceSummary.empty()`.
    """

    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    unassigned_liquidity: Decimal = ZERO
    buckets_total: Decimal = ZERO
    liquidity: Decimal = ZERO
    investments_total: Decimal = ZERO
    net_worth: Decimal = ZERO
    month_income: Decimal = ZERO
    month_expenses: Decimal = ZERO
    budget_progress: list[BudgetProgress] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> 'BalanceSummary':
        return cls()


# =============================================================================
# WATERFALL ALLOCATION
# =============================================================================

class PlannedAllocation(BaseModel):
    """Final share of one bucket computed by the waterfall."""

    bucket_id: UUID
    amount: Decimal
    reached_target: bool = False


class WaterfallPlan(BaseModel):
    """Pure output of the waterfall algorithm, before any write."""

    income_amount: Decimal
    allocations: list[PlannedAllocation] = Field(default_factory=list)
    passes: int = 0

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)

    @property
    def residual(self) -> Decimal:
        """Part of the income that stays as unassigned liquidity."""
        return self.income_amount - self.total_allocated

    def amount_for(self, bucket_id: UUID) -> Decimal:
        for allocation in self.allocations:
            if allocation.bucket_id == bucket_id:
                return allocation.amount
        return ZERO


class BucketAllocation(BaseModel):
    """One applied waterfall allocation."""

    bucket_id: UUID
    bucket_name: str
    amount: Decimal
    new_balance: Decimal
    capped: bool = Field(
        default=False,
        description="This allocation made the bucket reach its target"
    )
    transaction_id: UUID


class AllocationResult(BaseModel):
    """Outcome of distributing one income across buckets."""

    income_transaction_id: UUID
    income_amount: Decimal
    allocations: list[BucketAllocation] = Field(default_factory=list)

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)

    @property
    def residual(self) -> Decimal:
        return self.income_amount - self.total_allocated


# =============================================================================
# POSITION ACCOUNTING
# =============================================================================

class PriceQuote(BaseModel):
    """A market price returned by the provider."""

    ticker: str
    price: Decimal = Field(..., ge=0)
    display_name: Optional[str] = None
    fetched_at: datetime = Field(default_factory=datetime.utcnow)


class TradeResult(BaseModel):
    """Outcome of a buy, sell or historical declaration."""

    investment: Investment
    transactions: list[Transaction] = Field(default_factory=list)
    cost_basis_removed: Optional[Decimal] = None
    realized_pl: Optional[Decimal] = None
    provisional_value: bool = Field(
        default=False,
        description="Market price was unavailable; value falls back to cost"
    )


class ReversalResult(BaseModel):
    """Outcome of deleting one transaction and undoing its effects."""

    deleted_transaction_ids: list[UUID] = Field(default_factory=list)
    investment: Optional[Investment] = None
    restored_bucket_ids: list[UUID] = Field(default_factory=list)


class PriceRefreshResult(BaseModel):
    """Outcome of a batch portfolio refresh."""

    requested: int = 0
    updated: int = 0
    failed_tickers: list[str] = Field(default_factory=list)
    throttled: bool = False
    retry_after_minutes: Optional[float] = None

    @property
    def is_partial(self) -> bool:
        return 0 < self.updated < self.requested


# =============================================================================
# REPORTING
# =============================================================================

class CategoryExpense(BaseModel):
    """Spending of one category over a period."""

    category_id: UUID
    category_name: str
    total: Decimal
    percentage: Decimal = Field(
        ...,
        description="Share of the period's categorized spending"
    )


class CashFlowPoint(BaseModel):
    """Income, expenses and running balance of one day."""

    day: date
    income: Decimal = ZERO
    expenses: Decimal = ZERO
    running_balance: Decimal = ZERO
