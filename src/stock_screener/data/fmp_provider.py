"""Financial Modeling Prep (FMP) quotes and earnings calendar."""

from datetime import date, datetime
from typing import Any

import pandas as pd
import requests
import structlog

from stock_screener.config import FMPConfig
from stock_screener.data.base import MarketDataSource, Quote
from stock_screener.errors import ExternalDataError
from stock_screener.models.records import EarningsRecord

logger = structlog.get_logger()


class FMPProvider(MarketDataSource):
    """Market data and earnings calendar source using the FMP API."""

    def __init__(self, config: FMPConfig | None = None, session: requests.Session | None = None):
        """
        Initialize the FMP provider.

        Args:
            config: FMP configuration. If None, loads from environment.
            session: Optional requests session (shared connection pool)
        """
        self.config = config or FMPConfig.from_env()
        if not self.config.api_key:
            raise ValueError("FMP API key not found. Set FMP_API_KEY environment variable.")
        self.session = session or requests.Session()

    def _request(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """Make a request to FMP API."""
        url = f"{self.config.base_url}/{endpoint}"
        params = dict(params or {})
        params["apikey"] = self.config.api_key

        try:
            response = self.session.get(url, params=params, timeout=self.config.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error("FMP API request failed", endpoint=endpoint, error=str(e))
            raise ExternalDataError(f"FMP request failed for {endpoint}: {e}") from e

    def get_quote(self, symbol: str) -> Quote:
        data = self._request(f"quote/{symbol}")
        if not data:
            raise ExternalDataError(f"No quote available for {symbol}")
        quote = self._parse_quote(data[0])
        if quote is None:
            raise ExternalDataError(f"Malformed quote for {symbol}")
        return quote

    def get_quotes_batch(self, symbols: list[str]) -> dict[str, Quote]:
        """
        Get quotes for multiple symbols in batches.

        A failed batch is logged and skipped; its symbols are simply absent.
        """
        results: dict[str, Quote] = {}

        for i in range(0, len(symbols), self.config.batch_size):
            batch = symbols[i : i + self.config.batch_size]
            try:
                data = self._request(f"quote/{','.join(batch)}")
            except ExternalDataError as e:
                logger.error("Batch quote failed", batch_start=i, error=str(e))
                continue
            for item in data or []:
                quote = self._parse_quote(item)
                if quote:
                    results[quote.symbol] = quote

        logger.info("Fetched batch quotes", requested=len(symbols), received=len(results))
        return results

    def _parse_quote(self, data: dict) -> Quote | None:
        """Parse raw quote data into a Quote."""
        price = data.get("price")
        if not data.get("symbol") or price is None:
            return None
        timestamp = data.get("timestamp")
        return Quote(
            symbol=data["symbol"],
            price=float(price),
            timestamp=datetime.fromtimestamp(timestamp) if timestamp else datetime.now(),
            previous_close=data.get("previousClose"),
            volume=data.get("volume"),
            market_cap=data.get("marketCap"),
            name=data.get("name"),
        )

    def get_bars(
        self,
        symbols: list[str],
        timeframe: str,
        start: date,
        end: date,
    ) -> dict[str, pd.DataFrame]:
        if timeframe != "1d":
            raise ValueError(f"FMP provider only serves daily bars, got {timeframe!r}")

        bars: dict[str, pd.DataFrame] = {}
        for symbol in symbols:
            try:
                data = self._request(
                    f"historical-price-full/{symbol}",
                    params={"from": start.isoformat(), "to": end.isoformat()},
                )
            except ExternalDataError:
                continue

            historical = (data or {}).get("historical") if isinstance(data, dict) else None
            if not historical:
                logger.warning("No historical data returned", ticker=symbol)
                continue

            df = pd.DataFrame(historical)
            df["date"] = pd.to_datetime(df["date"])
            df = df.set_index("date").sort_index()
            df = df.rename(
                columns={
                    "open": "Open",
                    "high": "High",
                    "low": "Low",
                    "close": "Close",
                    "volume": "Volume",
                }
            )
            bars[symbol] = df[[c for c in ["Open", "High", "Low", "Close", "Volume"] if c in df.columns]]
        return bars

    def get_earnings_calendar(self, start: date, end: date) -> list[EarningsRecord]:
        """
        Fetch the earnings calendar between two dates.

        Rows without a symbol or date are dropped.

        Raises:
            ExternalDataError: If the calendar request fails
        """
        data = self._request(
            "earning_calendar",
            params={"from": start.isoformat(), "to": end.isoformat()},
        )

        records = []
        for item in data or []:
            symbol = item.get("symbol")
            raw_date = item.get("date")
            if not symbol or not raw_date:
                continue
            earnings_date = date.fromisoformat(raw_date[:10])
            fiscal_end = item.get("fiscalDateEnding")
            fiscal_year = int(fiscal_end[:4]) if fiscal_end else earnings_date.year
            records.append(
                EarningsRecord.create(
                    symbol=symbol,
                    earnings_date=earnings_date,
                    estimated_eps=item.get("epsEstimated"),
                    actual_eps=item.get("eps"),
                    fiscal_year=fiscal_year,
                    fiscal_quarter=_fiscal_quarter(fiscal_end),
                )
            )

        logger.info("Fetched earnings calendar", start=str(start), end=str(end), rows=len(records))
        return records


def _fiscal_quarter(fiscal_date_ending: str | None) -> str:
    if not fiscal_date_ending:
        return "N/A"
    month = int(fiscal_date_ending[5:7])
    return f"Q{(month - 1) // 3 + 1}"
