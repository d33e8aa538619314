"""Watchlist screening and earnings opportunity scanners."""

from stock_screener.scanners.earnings import EarningsDetector
from stock_screener.scanners.screening import ScreeningPass

__all__ = ["EarningsDetector", "ScreeningPass"]
