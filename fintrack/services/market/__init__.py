"""Market data services package."""

from fintrack.services.market.interface import (
    MarketDataError,
    MarketDataProvider,
    TickerNotFoundError,
    TransientMarketDataError,
)
from fintrack.services.market.yahoo import YahooMarketDataService

__all__ = [
    "MarketDataError",
    "MarketDataProvider",
    "TickerNotFoundError",
    "TransientMarketDataError",
    "YahooMarketDataService",
]
