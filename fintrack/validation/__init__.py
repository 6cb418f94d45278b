"""Validation package."""

from fintrack.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
