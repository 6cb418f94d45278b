"""
Market Data Provider Interface

The accounting core only needs one thing from the market: the current
price of a ticker. Everything else about the provider (protocol, auth,
rate limits on its side) stays behind this interface.
"""

from abc import ABC, abstractmethod

from fintrack.models.results import PriceQuote


class MarketDataError(Exception):
    """Base exception for market data lookups."""

    def __init__(self, ticker: str, message: str):
        self.ticker = ticker
        super().__init__(message)


class TickerNotFoundError(MarketDataError):
    """The provider does not know this ticker."""
    pass


class TransientMarketDataError(MarketDataError):
    """Network failure or upstream error; retrying later may succeed."""
    pass


class MarketDataProvider(ABC):

    @abstractmethod
    async def fetch_quote(self, ticker: str) -> PriceQuote:
        """
        Fetch the current price of a ticker.

        Raises:
            TickerNotFoundError: If the ticker is unknown
            TransientMarketDataError: If the lookup failed for any other reason
        """
        pass
