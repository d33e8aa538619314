"""Abstract base class for market data sources."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import pandas as pd


@dataclass
class Quote:
    """Latest price data for one symbol."""

    symbol: str
    price: float
    timestamp: datetime | None = None
    previous_close: float | None = None
    volume: float | None = None
    market_cap: float | None = None
    name: str | None = None


class MarketDataSource(ABC):
    """Pull-based price source used by refreshes, backtests and live runs."""

    @abstractmethod
    def get_quote(self, symbol: str) -> Quote:
        """
        Get the latest quote for a symbol.

        Args:
            symbol: Stock ticker symbol

        Returns:
            Quote with the current price

        Raises:
            ExternalDataError: If no quote is available
        """
        pass

    @abstractmethod
    def get_bars(
        self,
        symbols: list[str],
        timeframe: str,
        start: date,
        end: date,
    ) -> dict[str, pd.DataFrame]:
        """
        Fetch OHLCV bars for several symbols.

        Args:
            symbols: Ticker symbols
            timeframe: Bar size, e.g. "1d"
            start: First date (inclusive)
            end: Last date (inclusive)

        Returns:
            Mapping of symbol to a DataFrame indexed by timestamp with
            Open/High/Low/Close/Volume columns. Symbols that failed are
            left out instead of aborting the batch.
        """
        pass

    def get_fundamentals(self, symbol: str) -> dict[str, Any]:
        """
        Fundamental fields for a snapshot refresh, keyed by snapshot field name.

        Sources without fundamentals return an empty dict.
        """
        return {}

    def get_close_series(self, symbol: str, start: date, end: date) -> pd.Series | None:
        """Convenience method to get daily closes for one symbol."""
        bars = self.get_bars([symbol], "1d", start, end).get(symbol)
        if bars is None or bars.empty:
            return None
        return bars["Close"]
