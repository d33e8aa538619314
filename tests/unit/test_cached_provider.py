"""Unit tests for CachedMarketData."""

from datetime import date

import pytest

from stock_screener.data.cached_provider import CachedMarketData
from stock_screener.errors import ExternalDataError
from tests.conftest import InMemoryMarketData, make_bars


@pytest.fixture
def source():
    return InMemoryMarketData(quotes={"AAPL": 150.0}, bars={"AAPL": make_bars([1.0, 2.0, 3.0])})


class TestQuoteFallback:
    """Tests for last-known price fallback."""

    def test_live_quote_is_remembered(self, source):
        """Test that a successful quote seeds the fallback."""
        cached = CachedMarketData(source)

        assert cached.get_quote("AAPL").price == 150.0
        assert cached.last_price("AAPL") == 150.0

    def test_failed_quote_uses_last_known(self, source):
        """Test that a failing source serves the last good price."""
        cached = CachedMarketData(source)
        cached.get_quote("AAPL")
        source.failing.add("AAPL")

        assert cached.get_quote("AAPL").price == 150.0

    def test_failed_quote_uses_stored_fallback(self, source):
        """Test that the stored-price lookup is used when memory is empty."""
        cached = CachedMarketData(source, fallback=lambda symbol: 42.0 if symbol == "MSFT" else None)

        assert cached.get_quote("MSFT").price == 42.0

    def test_no_fallback_raises(self, source):
        """Test that the original error propagates without any known price."""
        cached = CachedMarketData(source, fallback=lambda symbol: None)

        with pytest.raises(ExternalDataError):
            cached.get_quote("MSFT")

    def test_remember_seeds_price(self, source):
        cached = CachedMarketData(source)
        cached.remember("TSLA", 200.0)

        assert cached.get_quote("TSLA").price == 200.0


class TestBarCache:
    """Tests for in-memory bar caching."""

    def test_second_request_served_from_memory(self, source):
        """Test that identical requests hit the source once."""
        cached = CachedMarketData(source)
        start, end = date(2024, 1, 1), date(2024, 1, 31)

        first = cached.get_bars(["AAPL"], "1d", start, end)
        source.bars = {}
        second = cached.get_bars(["AAPL"], "1d", start, end)

        assert list(second["AAPL"]["Close"]) == list(first["AAPL"]["Close"]) == [1.0, 2.0, 3.0]

    def test_missing_symbols_left_out(self, source):
        """Test that symbols without data are absent, not errors."""
        result = CachedMarketData(source).get_bars(["AAPL", "NOPE"], "1d", date(2024, 1, 1), date(2024, 1, 31))

        assert set(result) == {"AAPL"}
