"""
Tests for configuration loading.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from fintrack.config import get_settings, validate_all_settings
from fintrack.config.settings import MarketDataSettings


class TestSettings:

    def test_defaults(self):
        settings = get_settings()
        assert settings.ledger.distribution_tolerance == Decimal("0.001")
        assert settings.ledger.realized_pl_threshold == Decimal("0.01")
        assert settings.ledger.commission_category_name == "Commissions"
        assert settings.market_data.refresh_cooldown_minutes == 60
        assert settings.app.log_level == "INFO"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MARKET_DATA_REFRESH_COOLDOWN_MINUTES", "15")
        monkeypatch.setenv("LEDGER_COMMISSION_CATEGORY_NAME", "Broker fees")
        get_settings.cache_clear()

        settings = get_settings()
        assert settings.market_data.refresh_cooldown_minutes == 15
        assert settings.ledger.commission_category_name == "Broker fees"

    def test_chart_url_trailing_slash(self):
        settings = MarketDataSettings(chart_url="https://example.test/v8/finance/chart/")
        assert settings.chart_url == "https://example.test/v8/finance/chart"

    def test_timeout_bounds(self):
        with pytest.raises(ValidationError):
            MarketDataSettings(timeout_seconds=0)

    def test_validate_all_settings(self):
        assert validate_all_settings() == {"ledger": True, "market_data": True, "app": True}

    def test_validate_reports_broken_section(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "LOUD")
        get_settings.cache_clear()

        results = validate_all_settings()
        assert results["app"] is False
        assert "app_error" in results
        assert results["ledger"] is True
