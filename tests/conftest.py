"""
Shared fixtures.

All flows run against the in-memory stores. The market provider is a
fake: no network access in tests.
"""

from decimal import Decimal

import pytest

from fintrack.config import get_settings
from fintrack.models.results import PriceQuote
from fintrack.orchestrator import create_app_components
from fintrack.services.market import (
    MarketDataProvider,
    TickerNotFoundError,
    TransientMarketDataError,
)
from fintrack.services.storage import InMemoryDatabase


class FakeMarketDataProvider(MarketDataProvider):
    """Serves prices from a dict; unknown and failing tickers are configurable."""

    def __init__(self):
        self.prices: dict[str, Decimal] = {}
        self.unknown: set[str] = set()
        self.failing: set[str] = set()
        self.calls: list[str] = []

    async def fetch_quote(self, ticker: str) -> PriceQuote:
        ticker = ticker.upper()
        self.calls.append(ticker)
        if ticker in self.unknown:
            raise TickerNotFoundError(ticker, f"Ticker '{ticker}' not found")
        if ticker in self.failing or ticker not in self.prices:
            raise TransientMarketDataError(ticker, "Provider unavailable")
        return PriceQuote(
            ticker=ticker,
            price=self.prices[ticker],
            display_name=f"{ticker} Fund",
        )


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def market():
    return FakeMarketDataProvider()


@pytest.fixture
def app(db, market):
    return create_app_components(db=db, market_provider=market)
