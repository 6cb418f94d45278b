"""
Market Data Service using the Yahoo Finance chart endpoint

DESIGN DECISION: We use the v8 chart endpoint rather than the quote
endpoint because it does not require a cookie/crumb handshake. One request
per ticker; the endpoint does not batch reliably.

This service handles:
1. Building the request with a browser User-Agent
2. Mapping HTTP and payload failures to our error types
3. Converting the payload to a PriceQuote

Retries only cover transient failures. An unknown ticker fails at once.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import quote

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack.config import get_settings
from fintrack.models.results import PriceQuote
from fintrack.services.market.interface import (
    MarketDataProvider,
    TickerNotFoundError,
    TransientMarketDataError,
)


class YahooMarketDataService(MarketDataProvider):
    """Price lookups against query1.finance.yahoo.com."""

    def __init__(self, session: Optional[requests.Session] = None):
        self._settings = get_settings().market_data
        self._session = session or requests.Session()

    def _chart_url(self, ticker: str) -> str:
        return f"{self._settings.chart_url}/{quote(ticker, safe='')}"

    def _parse_quote(self, ticker: str, payload: dict) -> PriceQuote:
        chart = payload.get("chart") or {}
        results = chart.get("result") or []
        if not results or not results[0].get("meta"):
            raise TickerNotFoundError(ticker, f"Ticker '{ticker}' not found")

        meta = results[0]["meta"]
        raw_price = meta.get("regularMarketPrice")
        if raw_price is None:
            raise TransientMarketDataError(ticker, f"No price in response for '{ticker}'")
        try:
            price = Decimal(str(raw_price))
        except InvalidOperation:
            raise TransientMarketDataError(ticker, f"Unreadable price for '{ticker}': {raw_price!r}")

        return PriceQuote(
            ticker=meta.get("symbol") or ticker,
            price=price,
            display_name=meta.get("longName") or meta.get("shortName") or meta.get("symbol"),
        )

    @retry(
        retry=retry_if_exception_type(TransientMarketDataError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def fetch_quote(self, ticker: str) -> PriceQuote:
        """
        Fetch the latest regular-market price for a ticker.

        The HTTP call is a synchronous requests call and blocks the event
        loop for up to `timeout_seconds` per attempt.

        Raises:
            TickerNotFoundError: 404 or empty chart result
            TransientMarketDataError: Network error, non-2xx status, bad JSON
        """
        ticker = ticker.strip().upper()
        try:
            response = self._session.get(
                self._chart_url(ticker),
                params={"interval": "1d", "range": "1d"},
                headers={
                    "User-Agent": self._settings.user_agent,
                    "Accept": "*/*",
                },
                timeout=self._settings.timeout_seconds,
            )
        except requests.RequestException as e:
            raise TransientMarketDataError(ticker, f"Network error fetching '{ticker}': {e}")

        if response.status_code == 404:
            raise TickerNotFoundError(ticker, f"Ticker '{ticker}' not found")
        if not response.ok:
            raise TransientMarketDataError(
                ticker,
                f"Yahoo API error for '{ticker}': {response.status_code} {response.reason}",
            )

        try:
            payload = response.json()
        except ValueError:
            raise TransientMarketDataError(ticker, f"Non-JSON response for '{ticker}'")

        return self._parse_quote(ticker, payload)
