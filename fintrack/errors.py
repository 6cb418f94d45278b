"""
Accounting Exceptions

Validation errors are raised before any write, so the ledger and the
aggregates are untouched when one escapes. PartialApplicationError is the
only error raised after a write; it lists what already happened so the
caller can show it instead of pretending nothing changed.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for the accounting engines."""
    pass


class ValidationError(LedgerError):
    """A business rule refused the operation. Nothing was written."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidAmountError(ValidationError):
    """Amount or quantity is zero, negative, or otherwise unusable."""
    pass


class DistributionLimitError(ValidationError):
    """Bucket distribution percentages would add up to more than 100."""
    pass


class InsufficientLiquidityError(ValidationError):
    """A buy costs more than the liquidity currently derived from the ledger."""

    def __init__(self, required, available):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient liquidity: {required} required, {available} available",
            field="total_paid",
        )


class InsufficientQuantityError(ValidationError):
    """A sell asks for more units than the position holds."""

    def __init__(self, requested, held):
        self.requested = requested
        self.held = held
        super().__init__(
            f"Insufficient quantity: {requested} requested, {held} held",
            field="quantity",
        )


class DuplicateTickerError(ValidationError):
    """The user already holds a position in this ticker."""

    def __init__(self, ticker: str):
        self.ticker = ticker
        super().__init__(f"An investment with ticker {ticker} already exists", field="ticker")


class PartialApplicationError(LedgerError):
    """
    A multi-step operation failed after some of its writes succeeded.

    There is no rollback. `applied` describes each completed write.
    """

    def __init__(self, message: str, applied: list[str]):
        self.applied = applied
        super().__init__(f"{message} (already applied: {len(applied)} writes)")
