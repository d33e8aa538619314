"""Shared test fixtures."""

from datetime import date, datetime
from typing import Any

import pandas as pd
import pytest

from stock_screener.config import DataConfig, EngineConfig, Settings
from stock_screener.data.base import MarketDataSource, Quote
from stock_screener.data.database import Database
from stock_screener.errors import ExternalDataError
from stock_screener.models.enums import ScreenType
from stock_screener.models.records import FactorBound, ScreenCriteria, StockSnapshot


class InMemoryMarketData(MarketDataSource):
    """Market data source backed by dicts, for testing."""

    def __init__(
        self,
        quotes: dict[str, float] | None = None,
        bars: dict[str, pd.DataFrame] | None = None,
        fundamentals: dict[str, dict[str, Any]] | None = None,
    ):
        self.quotes = dict(quotes or {})
        self.bars = dict(bars or {})
        self.fundamentals = dict(fundamentals or {})
        self.failing: set[str] = set()
        self.quote_calls = 0

    def get_quote(self, symbol: str) -> Quote:
        self.quote_calls += 1
        if symbol in self.failing or symbol not in self.quotes:
            raise ExternalDataError(f"No quote available for {symbol}")
        return Quote(symbol=symbol, price=self.quotes[symbol], timestamp=datetime.now())

    def get_bars(
        self,
        symbols: list[str],
        timeframe: str,
        start: date,
        end: date,
    ) -> dict[str, pd.DataFrame]:
        result = {}
        for symbol in symbols:
            df = self.bars.get(symbol)
            if df is None or symbol in self.failing:
                continue
            mask = (df.index >= pd.Timestamp(start)) & (df.index <= pd.Timestamp(end))
            result[symbol] = df[mask]
        return result

    def get_fundamentals(self, symbol: str) -> dict[str, Any]:
        return dict(self.fundamentals.get(symbol, {}))


def make_bars(closes: list[float], start: str = "2024-01-01") -> pd.DataFrame:
    """Daily OHLCV frame (business days) with the given closes."""
    dates = pd.bdate_range(start, periods=len(closes))
    return pd.DataFrame(
        {
            "Open": closes,
            "High": [c * 1.01 for c in closes],
            "Low": [c * 0.99 for c in closes],
            "Close": closes,
            "Volume": [1_000_000] * len(closes),
        },
        index=dates,
    )


def add_stock(db: Database, symbol: str, **fields) -> None:
    """Store a screenable snapshot (quality 80 unless given)."""
    values = {"current_price": 50.0, "company_name": f"{symbol} Inc", "data_quality": 80}
    values.update(fields)
    db.upsert_stock(symbol, values)


@pytest.fixture
def temp_db(tmp_path) -> Database:
    """Create a temporary database for testing."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def market_data() -> InMemoryMarketData:
    return InMemoryMarketData()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast polling and no config file."""
    return Settings(
        engine=EngineConfig(
            trailing_stop_pct=10.0,
            default_max_positions=3,
            default_initial_capital=10_000.0,
            live_poll_seconds=0.01,
            max_hold_days=None,
        ),
        data=DataConfig(rate_limit_delay=0, max_workers=2),
    )


@pytest.fixture
def value_screen(temp_db) -> ScreenCriteria:
    """A saved screen with P/E at most 20."""
    screen = ScreenCriteria(
        id=None,
        name="Cheap P/E",
        factors={"pe_ratio": FactorBound(max=20.0)},
        screen_type=ScreenType.VALUE,
    )
    temp_db.save_screen(screen)
    return screen


@pytest.fixture
def earnings_screen(temp_db) -> ScreenCriteria:
    screen = ScreenCriteria(
        id=None,
        name="Earnings Beats",
        factors={"pe_ratio": FactorBound(max=40.0)},
        screen_type=ScreenType.EARNINGS,
        allocated_capital=10_000.0,
        min_earnings_surprise=5.0,
        max_positions=5,
    )
    temp_db.save_screen(screen)
    return screen


@pytest.fixture
def sample_snapshot() -> StockSnapshot:
    return StockSnapshot(
        symbol="TEST",
        company_name="Test Corp",
        current_price=50.0,
        pe_ratio=15.0,
        ps_ratio=2.0,
        roe=18.0,
        market_cap=5_000_000_000,
        momentum_3m=12.0,
        data_quality=80,
    )
