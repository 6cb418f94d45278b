"""
Configuration Management for Fintrack

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All tunable constants of the accounting engines live here.
Tolerances, reserved category names and the market-data endpoint are
validated once at startup instead of being scattered across modules.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Accounting engine tolerances and reserved names."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    distribution_tolerance: Decimal = Field(
        default=Decimal("0.001"),
        ge=0,
        description="Allowed overshoot above 100% for the sum of bucket distributions"
    )
    waterfall_pool_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Excess pool below this amount is not redistributed"
    )
    realized_pl_threshold: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Realized gains/losses at or below this are not booked"
    )
    commission_category_name: str = Field(
        default="Commissions",
        min_length=1,
        description="Reserved expense category for trading fees"
    )
    automatic_distribution_label: str = Field(
        default="Automatic distribution",
        min_length=1,
        description="Description prefix of waterfall transfer rows"
    )


class MarketDataSettings(BaseSettings):
    """Market price provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MARKET_DATA_",
        extra="ignore"
    )

    chart_url: str = Field(
        default="https://query1.finance.yahoo.com/v8/finance/chart",
        description="Base URL of the chart endpoint (ticker is appended)"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="HTTP timeout for a single price lookup"
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User-Agent header sent to the provider"
    )
    refresh_cooldown_minutes: int = Field(
        default=60,
        ge=0,
        description="Minimum minutes between two portfolio refreshes of one user"
    )

    @field_validator('chart_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Ticker is joined with '/', so drop a trailing one."""
        return v.rstrip("/")


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for local structured logs"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def market_data(self) -> MarketDataSettings:
        return MarketDataSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus a
    `<name>_error` entry for each section that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("ledger", "market_data", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
