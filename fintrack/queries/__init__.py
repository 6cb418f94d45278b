"""Queries package."""

from fintrack.queries.executor import LedgerQueryExecutor

__all__ = ["LedgerQueryExecutor"]
