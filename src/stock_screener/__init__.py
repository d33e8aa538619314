"""Stock Screener - multi-factor screening, backtesting and paper trading."""

__version__ = "0.1.0"
