"""
Pre-Write Business Validation

DESIGN DECISION: Every check that can refuse an operation runs before the
first write. The engines call the validator, then compute, then write.
A refusal therefore never leaves a half-applied operation behind.

Two kinds of checks:

SHAPE CHECKS (no storage needed):
- Positive amounts and quantities
- Percentages inside 0..100

STATE CHECKS (need the current aggregates):
- Sum of bucket distributions
- Available liquidity before a buy
- Held quantity before a sell
- Ticker uniqueness

IMPORTANT: Validation NEVER silently fixes issues. It raises.
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from fintrack.config import get_settings
from fintrack.errors import (
    DistributionLimitError,
    DuplicateTickerError,
    InsufficientLiquidityError,
    InsufficientQuantityError,
    InvalidAmountError,
)
from fintrack.models.ledger import Bucket, Investment
from fintrack.models.money import HUNDRED, ZERO, round_currency, round_units


class LedgerValidator:
    """Business rules shared by the engines and the orchestrator flows."""

    def __init__(self):
        self._settings = get_settings().ledger

    def require_positive_amount(self, amount: Decimal, field: str = "amount") -> Decimal:
        amount = round_currency(amount)
        if amount <= ZERO:
            raise InvalidAmountError(f"{field} must be greater than zero", field=field)
        return amount

    def require_non_negative_amount(self, amount: Decimal, field: str) -> Decimal:
        amount = round_currency(amount)
        if amount < ZERO:
            raise InvalidAmountError(f"{field} cannot be negative", field=field)
        return amount

    def require_positive_quantity(self, quantity: Decimal) -> Decimal:
        quantity = round_units(quantity)
        if quantity <= ZERO:
            raise InvalidAmountError("quantity must be greater than zero", field="quantity")
        return quantity

    def check_distribution_sum(
        self,
        buckets: Iterable[Bucket],
        new_percentage: Decimal,
        exclude_bucket_id: Optional[UUID] = None,
    ) -> Decimal:
        """
        Check that the buckets' live percentages plus `new_percentage`
        stay within 100 plus tolerance.

        `exclude_bucket_id` leaves out the bucket being edited, whose old
        percentage is replaced by `new_percentage`.

        Returns the resulting sum.
        """
        if new_percentage < ZERO or new_percentage > HUNDRED:
            raise DistributionLimitError(
                "Distribution percentage must be between 0 and 100",
                field="distribution_percentage",
            )
        total = sum(
            (b.distribution_percentage for b in buckets if b.id != exclude_bucket_id),
            ZERO,
        ) + new_percentage
        if total > HUNDRED + self._settings.distribution_tolerance:
            raise DistributionLimitError(
                f"Total distribution would be {total}%, the limit is 100%",
                field="distribution_percentage",
            )
        return total

    def distribution_fits(
        self,
        buckets: Iterable[Bucket],
        new_percentage: Decimal,
        exclude_bucket_id: Optional[UUID] = None,
    ) -> bool:
        try:
            self.check_distribution_sum(buckets, new_percentage, exclude_bucket_id)
        except DistributionLimitError:
            return False
        return True

    def check_liquidity(self, required: Decimal, available: Decimal) -> None:
        if required > available:
            raise InsufficientLiquidityError(required, available)

    def check_quantity(self, investment: Investment, requested: Decimal) -> None:
        if requested > investment.quantity:
            raise InsufficientQuantityError(requested, investment.quantity)

    def check_ticker_unique(
        self,
        investments: Iterable[Investment],
        ticker: Optional[str],
        exclude_investment_id: Optional[UUID] = None,
    ) -> None:
        if not ticker:
            return
        ticker = ticker.strip().upper()
        for investment in investments:
            if investment.ticker == ticker and investment.id != exclude_investment_id:
                raise DuplicateTickerError(ticker)
