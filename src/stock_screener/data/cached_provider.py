"""Market data wrapper with last-known price fallback."""

import logging
import threading
from datetime import date
from typing import Any, Callable

import pandas as pd

from stock_screener.data.base import MarketDataSource, Quote
from stock_screener.errors import ExternalDataError

logger = logging.getLogger(__name__)


class CachedMarketData(MarketDataSource):
    """
    A wrapper that remembers the last good quote and bar sets of any source.

    When a quote fetch fails the last known price is served instead, first
    from memory and then from the optional fallback lookup (typically the
    stored snapshot price). Bars are cached in memory per request so replays
    over the same range do not hit the source twice.
    """

    def __init__(
        self,
        provider: MarketDataSource,
        fallback: Callable[[str], float | None] | None = None,
    ):
        """
        Initialize the cached source.

        Args:
            provider: The underlying market data source to wrap
            fallback: Optional lookup of a stored price for a symbol
        """
        self.provider = provider
        self.fallback = fallback
        self._quotes: dict[str, Quote] = {}
        self._bars: dict[tuple[str, str, date, date], pd.DataFrame] = {}
        self._lock = threading.Lock()

    def remember(self, symbol: str, price: float) -> None:
        """Seed the last-known price for a symbol."""
        with self._lock:
            self._quotes[symbol] = Quote(symbol=symbol, price=price)

    def last_price(self, symbol: str) -> float | None:
        with self._lock:
            quote = self._quotes.get(symbol)
        return quote.price if quote else None

    def get_quote(self, symbol: str) -> Quote:
        try:
            quote = self.provider.get_quote(symbol)
        except ExternalDataError as e:
            cached = self.last_price(symbol)
            if cached is None and self.fallback is not None:
                cached = self.fallback(symbol)
            if cached is None:
                raise
            logger.warning(f"Quote failed for {symbol}, using last known price {cached}: {e}")
            return Quote(symbol=symbol, price=cached)

        with self._lock:
            self._quotes[symbol] = quote
        return quote

    def get_bars(
        self,
        symbols: list[str],
        timeframe: str,
        start: date,
        end: date,
    ) -> dict[str, pd.DataFrame]:
        result: dict[str, pd.DataFrame] = {}
        missing = []
        for symbol in symbols:
            cached = self._bars.get((symbol, timeframe, start, end))
            if cached is not None:
                logger.debug(f"Cache HIT for {symbol} ({start} to {end})")
                result[symbol] = cached
            else:
                missing.append(symbol)

        if missing:
            logger.debug(f"Cache MISS for {len(missing)} symbols ({start} to {end})")
            fetched = self.provider.get_bars(missing, timeframe, start, end)
            for symbol, df in fetched.items():
                self._bars[(symbol, timeframe, start, end)] = df
                result[symbol] = df
        return result

    def get_fundamentals(self, symbol: str) -> dict[str, Any]:
        # Fundamentals are refreshed on purpose, never served from cache
        return self.provider.get_fundamentals(symbol)
