"""
Data Models Package

This package contains all Pydantic models used by the accounting core.
All data flowing between the engines and the stores must conform to these schemas.
"""

from fintrack.models.ledger import (
    Bucket,
    BucketState,
    Category,
    CategoryType,
    Investment,
    InvestmentType,
    Profile,
    Transaction,
    TransactionFilter,
    TransactionOrigin,
    TransactionType,
)
from fintrack.models.results import (
    AllocationResult,
    BalanceSummary,
    BucketAllocation,
    BudgetProgress,
    CashFlowPoint,
    CategoryExpense,
    PlannedAllocation,
    PriceQuote,
    PriceRefreshResult,
    ReversalResult,
    TradeResult,
    WaterfallPlan,
)
from fintrack.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Bucket",
    "BucketState",
    "Category",
    "CategoryType",
    "Investment",
    "InvestmentType",
    "Profile",
    "Transaction",
    "TransactionFilter",
    "TransactionOrigin",
    "TransactionType",
    # Results
    "AllocationResult",
    "BalanceSummary",
    "BucketAllocation",
    "BudgetProgress",
    "CashFlowPoint",
    "CategoryExpense",
    "PlannedAllocation",
    "PriceQuote",
    "PriceRefreshResult",
    "ReversalResult",
    "TradeResult",
    "WaterfallPlan",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
