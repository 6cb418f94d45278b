"""Configuration package."""

from fintrack.config.settings import (
    AppSettings,
    LedgerSettings,
    MarketDataSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "LedgerSettings",
    "MarketDataSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
