"""
Core Data Models for Fintrack

These models define the strict schemas for everything the accounting
engines read and write:
1. Ledger rows (Transaction)
2. Materialized aggregates (Bucket, Investment)
3. Collaborator records (Category, Profile)

DESIGN DECISION: The ledger is single-entry. A Transaction records the
effect on exactly ONE pool: the bucket named by `bucket_id`, or the
unassigned liquidity pool when `bucket_id` is None. The other side of a
transfer is applied by mutating the destination aggregate directly in the
same logical operation. The balance formulas in
fintrack.accounting.balances depend on this exact convention.

Aggregates carry a `version` used for optimistic compare-and-set updates.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from fintrack.models.money import (
    HUNDRED,
    ZERO,
    round_currency,
    round_optional_currency,
    round_optional_units,
    round_units,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Ledger row types."""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    INITIAL = "initial"  # Opening/historical entry, no liquidity effect


class TransactionOrigin(str, Enum):
    """
    Which operation wrote a row.

    DESIGN DECISION: Rows written as side effects of another operation are
    tagged and linked to their parent through `source_transaction_id`, so
    deleting the parent can find and undo them deterministically.
    """
    MANUAL = "manual"
    AUTO_DISTRIBUTION = "auto_distribution"
    TRADE = "trade"
    COMMISSION = "commission"
    REALIZED_PNL = "realized_pnl"
    HISTORICAL = "historical"


class CategoryType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class InvestmentType(str, Enum):
    """Supported asset classes."""
    ETF = "etf"
    BOND = "bond"
    STOCK = "stock"
    DEPOSIT_ACCOUNT = "deposit_account"
    CRYPTO = "crypto"
    OTHER = "other"


class BucketState(str, Enum):
    """
    Funding state of a bucket.

    ACCUMULATING buckets take part in automatic distribution.
    CAPPED buckets reached their target; their percentage is parked in
    `paused_percentage` and their live percentage is 0.
    """
    ACCUMULATING = "accumulating"
    CAPPED = "capped"


# =============================================================================
# LEDGER
# =============================================================================

class Transaction(BaseModel):
    """
    A single ledger row.

    Immutable by convention: edits are modelled as a full replacement
    through the storage `update` call, never as in-place mutation.

    Sign convention: income is positive, expenses are negative. For
    transfers the sign follows the pool that owns the row (see module
    docstring and the flows in fintrack.orchestrator).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)

    amount: Decimal = Field(
        ...,
        description="Signed amount, 2 decimal places"
    )
    type: TransactionType
    date: date
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        description="Tie-break ordering for rows sharing a date"
    )

    category_id: Optional[UUID] = None
    bucket_id: Optional[UUID] = None
    destination_bucket_id: Optional[UUID] = Field(
        default=None,
        description="Second bucket of a bucket-to-bucket transfer"
    )
    investment_id: Optional[UUID] = None
    asset_quantity: Optional[Decimal] = Field(
        default=None,
        description="Signed unit delta applied to the investment, 6 decimal places"
    )
    description: str = Field(default="", max_length=500)

    origin: TransactionOrigin = TransactionOrigin.MANUAL
    source_transaction_id: Optional[UUID] = Field(
        default=None,
        description="Parent row when this one was written as a side effect"
    )

    @field_validator('amount')
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return round_currency(v)

    @field_validator('asset_quantity')
    @classmethod
    def quantize_quantity(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return round_optional_units(v)

    @property
    def is_investment_linked(self) -> bool:
        return self.investment_id is not None


class TransactionFilter(BaseModel):
    """Filters accepted by the ledger `query` operation. All are optional."""

    date_from: Optional[date] = None
    date_to: Optional[date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[UUID] = None
    bucket_id: Optional[UUID] = None
    investment_id: Optional[UUID] = None
    source_transaction_id: Optional[UUID] = None
    search: Optional[str] = Field(
        default=None,
        description="Case-insensitive substring match on description"
    )

    @model_validator(mode='after')
    def validate_range(self) -> 'TransactionFilter':
        if self.date_from and self.date_to and self.date_to < self.date_from:
            raise ValueError("date_to cannot be before date_from")
        return self

    def matches(self, tx: Transaction) -> bool:
        if self.date_from and tx.date < self.date_from:
            return False
        if self.date_to and tx.date > self.date_to:
            return False
        if self.type and tx.type != self.type:
            return False
        if self.category_id and tx.category_id != self.category_id:
            return False
        if self.bucket_id and tx.bucket_id != self.bucket_id:
            return False
        if self.investment_id and tx.investment_id != self.investment_id:
            return False
        if (
            self.source_transaction_id
            and tx.source_transaction_id != self.source_transaction_id
        ):
            return False
        if self.search and self.search.lower() not in tx.description.lower():
            return False
        return True


# =============================================================================
# MATERIALIZED AGGREGATES
# =============================================================================

class Bucket(BaseModel):
    """
    A named savings sub-account.

    `current_balance` is stored and authoritative; it is NOT derived from
    the ledger. Update contract: only the orchestrator flows and the
    waterfall engine change it, always through a versioned update.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)

    distribution_percentage: Decimal = Field(default=ZERO, ge=0, le=HUNDRED)
    current_balance: Decimal = Field(default=ZERO)
    target_amount: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Funding cap; None or 0 means no cap"
    )
    state: BucketState = BucketState.ACCUMULATING
    paused_percentage: Optional[Decimal] = Field(
        default=None,
        ge=0,
        le=HUNDRED,
        description="Percentage parked while the bucket is capped"
    )

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator('current_balance')
    @classmethod
    def quantize_balance(cls, v: Decimal) -> Decimal:
        return round_currency(v)

    @field_validator('target_amount')
    @classmethod
    def quantize_target(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return round_optional_currency(v)

    @property
    def has_target(self) -> bool:
        return self.target_amount is not None and self.target_amount > 0

    @property
    def remaining_to_target(self) -> Optional[Decimal]:
        """Room left before the target, or None when uncapped."""
        if not self.has_target:
            return None
        return max(ZERO, round_currency(self.target_amount - self.current_balance))

    @property
    def target_reached(self) -> bool:
        return self.has_target and self.current_balance >= self.target_amount


class Investment(BaseModel):
    """
    A position held in one asset.

    Lifecycle: created on first buy or historical declaration, mutated on
    every buy/sell/edit/reversal, may reach quantity 0 (closed) without
    being deleted. Deleting it cascades to its linked transactions.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, max_length=200)
    type: InvestmentType = InvestmentType.ETF
    ticker: Optional[str] = Field(default=None, max_length=20)
    is_automated: bool = Field(
        default=False,
        description="Valued from market prices instead of manually"
    )

    quantity: Decimal = Field(default=ZERO, ge=0)
    invested_amount: Decimal = Field(
        default=ZERO,
        ge=0,
        description="Cost basis still held"
    )
    current_value: Decimal = Field(default=ZERO)

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    @field_validator('ticker')
    @classmethod
    def normalize_ticker(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @field_validator('quantity')
    @classmethod
    def quantize_quantity(cls, v: Decimal) -> Decimal:
        return round_units(v)

    @field_validator('invested_amount', 'current_value')
    @classmethod
    def quantize_money(cls, v: Decimal) -> Decimal:
        return round_currency(v)

    @model_validator(mode='after')
    def validate_automation(self) -> 'Investment':
        if self.is_automated and not self.ticker:
            raise ValueError("Automated investments require a ticker")
        return self

    @property
    def is_closed(self) -> bool:
        return self.quantity == 0

    @property
    def average_cost(self) -> Optional[Decimal]:
        """PMC: cost basis per held unit, None while nothing is held."""
        if self.quantity <= 0:
            return None
        return self.invested_amount / self.quantity

    @property
    def unit_value(self) -> Optional[Decimal]:
        """Current value per held unit, None while nothing is held."""
        if self.quantity <= 0:
            return None
        return self.current_value / self.quantity

    @property
    def unrealized_pl(self) -> Decimal:
        return round_currency(self.current_value - self.invested_amount)


# =============================================================================
# COLLABORATORS
# =============================================================================

class Category(BaseModel):
    """Income/expense category. Tree editing is handled elsewhere."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.EXPENSE
    parent_id: Optional[UUID] = None
    budget_limit: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Monthly spending limit"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Profile(BaseModel):
    """Per-user bookkeeping outside the ledger."""

    user_id: str = Field(..., min_length=1)
    last_price_refresh: Optional[datetime] = Field(
        default=None,
        description="When the portfolio prices were last refreshed in batch"
    )
