"""
Accounting Engines Package

- balances: liquidity and net worth derived from the ledger
- waterfall: automatic income distribution across buckets
- positions: weighted-average-cost investment positions
"""

from fintrack.accounting.balances import BalanceService, derive_balances
from fintrack.accounting.positions import (
    PortfolioManager,
    cost_basis_for,
    value_at_held_price,
)
from fintrack.accounting.waterfall import (
    IncomeDistributor,
    capping_changes,
    plan_waterfall,
)

__all__ = [
    # Balance derivation
    "BalanceService",
    "derive_balances",
    # Waterfall
    "IncomeDistributor",
    "capping_changes",
    "plan_waterfall",
    # Positions
    "PortfolioManager",
    "cost_basis_for",
    "value_at_held_price",
]
