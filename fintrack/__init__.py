"""
Fintrack - Ledger-derived accounting core

The accounting engines behind a personal-finance tracker: balances derived
from the transaction log, waterfall funding of savings buckets and
weighted-average-cost investment positions.

DESIGN PRINCIPLES:
1. The ledger is the source of truth, aggregates are materialized views
2. Validate before writing, never after
3. No silent corrections
4. Every mutation must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Fintrack Team"
