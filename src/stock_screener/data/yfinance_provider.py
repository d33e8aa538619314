"""Yahoo Finance market data source."""

import time
from datetime import date, datetime, timedelta
from typing import Any

import pandas as pd
import structlog
import yfinance as yf

from stock_screener.config import DataConfig
from stock_screener.data.base import MarketDataSource, Quote
from stock_screener.errors import ExternalDataError

logger = structlog.get_logger()

OHLCV_COLUMNS = ["Open", "High", "Low", "Close", "Volume"]

# yfinance info key -> (snapshot field, multiplier)
INFO_FIELDS: dict[str, tuple[str, float]] = {
    "trailingPE": ("pe_ratio", 1.0),
    "priceToSalesTrailing12Months": ("ps_ratio", 1.0),
    "priceToBook": ("pb_ratio", 1.0),
    "returnOnEquity": ("roe", 100.0),
    "debtToEquity": ("debt_to_equity", 1.0),
    "currentRatio": ("current_ratio", 1.0),
    "revenueGrowth": ("revenue_growth", 100.0),
    "earningsGrowth": ("earnings_growth", 100.0),
    "dividendYield": ("dividend_yield", 1.0),
    "marketCap": ("market_cap", 1.0),
    "volume": ("volume", 1.0),
    "previousClose": ("previous_close", 1.0),
}


class YFinanceProvider(MarketDataSource):
    """Market data source using Yahoo Finance (yfinance library)."""

    def __init__(self, config: DataConfig | None = None):
        """
        Initialize the Yahoo Finance provider.

        Args:
            config: Data configuration. If None, uses defaults.
        """
        self.config = config or DataConfig()
        self._last_request_time: float = 0

    def _rate_limit(self) -> None:
        """Apply rate limiting between requests."""
        if self.config.rate_limit_delay > 0:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.config.rate_limit_delay:
                time.sleep(self.config.rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    def get_quote(self, symbol: str) -> Quote:
        self._rate_limit()

        try:
            ticker = yf.Ticker(symbol)
            info = ticker.info or {}
            price = info.get("regularMarketPrice") or info.get("currentPrice")

            if price is None:
                # Fallback to last close from history
                hist = ticker.history(period="1d")
                if not hist.empty:
                    price = hist["Close"].iloc[-1]
        except Exception as e:
            logger.error("Failed to get quote", ticker=symbol, error=str(e))
            raise ExternalDataError(f"Quote failed for {symbol}: {e}") from e

        if not price:
            raise ExternalDataError(f"No quote available for {symbol}")

        return Quote(
            symbol=symbol,
            price=float(price),
            timestamp=datetime.now(),
            previous_close=info.get("previousClose"),
            volume=info.get("volume"),
            market_cap=info.get("marketCap"),
            name=info.get("longName") or info.get("shortName"),
        )

    def get_bars(
        self,
        symbols: list[str],
        timeframe: str,
        start: date,
        end: date,
    ) -> dict[str, pd.DataFrame]:
        bars: dict[str, pd.DataFrame] = {}
        for symbol in symbols:
            self._rate_limit()
            try:
                df = yf.Ticker(symbol).history(
                    start=start.isoformat(),
                    # yfinance treats end as exclusive
                    end=(end + timedelta(days=1)).isoformat(),
                    interval=timeframe,
                    auto_adjust=True,  # Adjust for splits/dividends
                )
            except Exception as e:
                logger.error("Failed to fetch bars", ticker=symbol, error=str(e))
                continue

            if df.empty:
                logger.warning("No data returned", ticker=symbol)
                continue

            df = df[[c for c in OHLCV_COLUMNS if c in df.columns]]
            if df.index.tz is not None:
                df.index = df.index.tz_localize(None)

            logger.debug(
                "Fetched bars",
                ticker=symbol,
                rows=len(df),
                start=df.index.min(),
                end=df.index.max(),
            )
            bars[symbol] = df
        return bars

    def get_fundamentals(self, symbol: str) -> dict[str, Any]:
        self._rate_limit()

        try:
            info = yf.Ticker(symbol).info or {}
        except Exception as e:
            raise ExternalDataError(f"Fundamentals failed for {symbol}: {e}") from e

        fields: dict[str, Any] = {}
        for key, (name, multiplier) in INFO_FIELDS.items():
            value = info.get(key)
            if isinstance(value, (int, float)):
                fields[name] = value * multiplier

        cash_flow = info.get("operatingCashflow")
        if cash_flow and fields.get("market_cap"):
            fields["pcf_ratio"] = fields["market_cap"] / cash_flow
        if info.get("longName"):
            fields["company_name"] = info["longName"]
        if info.get("sector"):
            fields["sector"] = info["sector"]
        return fields
