"""
Tests for the Yahoo chart client. No network: the session is faked.
"""

import asyncio
import json
from decimal import Decimal

import pytest
import requests

from fintrack.services.market import (
    TickerNotFoundError,
    TransientMarketDataError,
    YahooMarketDataService,
)


def _response(status_code, payload=None, body=None):
    response = requests.Response()
    response.status_code = status_code
    response.reason = "Error" if status_code >= 400 else "OK"
    if body is None:
        body = json.dumps(payload if payload is not None else {})
    response._content = body.encode("utf-8")
    return response


def _chart(price=101.5, symbol="VWCE.DE", long_name="Vanguard FTSE All-World"):
    meta = {"symbol": symbol, "regularMarketPrice": price}
    if long_name:
        meta["longName"] = long_name
    return {"chart": {"result": [{"meta": meta}], "error": None}}


class FakeSession:
    """Hands out queued responses and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class TestYahooMarketDataService:

    def test_parses_price_and_name(self):
        session = FakeSession(_response(200, _chart()))
        service = YahooMarketDataService(session=session)

        quote = asyncio.run(service.fetch_quote(" vwce.de "))

        assert quote.ticker == "VWCE.DE"
        assert quote.price == Decimal("101.5")
        assert quote.display_name == "Vanguard FTSE All-World"

        sent = session.requests[0]
        assert sent["url"] == "https://query1.finance.yahoo.com/v8/finance/chart/VWCE.DE"
        assert sent["params"] == {"interval": "1d", "range": "1d"}
        assert sent["headers"]["User-Agent"].startswith("Mozilla/5.0")
        assert sent["timeout"] == 10.0

    def test_short_name_fallback(self):
        payload = _chart(long_name=None)
        payload["chart"]["result"][0]["meta"]["shortName"] = "VANGUARD FTSE"
        service = YahooMarketDataService(session=FakeSession(_response(200, payload)))
        quote = asyncio.run(service.fetch_quote("VWCE.DE"))
        assert quote.display_name == "VANGUARD FTSE"

    def test_404_is_not_found_without_retry(self):
        session = FakeSession(_response(404, {"chart": {"result": None}}))
        service = YahooMarketDataService(session=session)

        with pytest.raises(TickerNotFoundError) as exc_info:
            asyncio.run(service.fetch_quote("NOPE"))
        assert exc_info.value.ticker == "NOPE"
        assert len(session.requests) == 1

    def test_empty_result_is_not_found(self):
        session = FakeSession(_response(200, {"chart": {"result": [], "error": None}}))
        service = YahooMarketDataService(session=session)

        with pytest.raises(TickerNotFoundError):
            asyncio.run(service.fetch_quote("NOPE"))

    def test_server_error_is_retried_then_raised(self):
        session = FakeSession(*[_response(500) for _ in range(3)])
        service = YahooMarketDataService(session=session)

        with pytest.raises(TransientMarketDataError):
            asyncio.run(service.fetch_quote("VWCE.DE"))
        assert len(session.requests) == 3

    def test_every_attempt_is_bounded_by_timeout(self):
        session = FakeSession(*[_response(503) for _ in range(3)])
        service = YahooMarketDataService(session=session)

        with pytest.raises(TransientMarketDataError):
            asyncio.run(service.fetch_quote("VWCE.DE"))
        assert [r["timeout"] for r in session.requests] == [10.0, 10.0, 10.0]

    def test_recovers_after_transient_failure(self):
        session = FakeSession(
            requests.ConnectionError("connection reset"),
            _response(200, _chart(price=99)),
        )
        service = YahooMarketDataService(session=session)

        quote = asyncio.run(service.fetch_quote("VWCE.DE"))
        assert quote.price == Decimal("99")
        assert len(session.requests) == 2

    def test_non_json_body_is_transient(self):
        session = FakeSession(*[_response(200, body="<html>") for _ in range(3)])
        service = YahooMarketDataService(session=session)

        with pytest.raises(TransientMarketDataError):
            asyncio.run(service.fetch_quote("VWCE.DE"))

    def test_missing_price_is_transient(self):
        payload = _chart(price=None)
        session = FakeSession(*[_response(200, payload) for _ in range(3)])
        service = YahooMarketDataService(session=session)

        with pytest.raises(TransientMarketDataError):
            asyncio.run(service.fetch_quote("VWCE.DE"))
