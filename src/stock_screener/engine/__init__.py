"""Run orchestration, data refresh and background supervision."""

from stock_screener.engine.earnings_sync import EarningsCalendarSync, SyncResult
from stock_screener.engine.refresh import DataRefresher
from stock_screener.engine.runner import TradingEngine
from stock_screener.engine.tasks import TaskRunner
from stock_screener.engine.watchdog import Watchdog, WatchdogReport

__all__ = [
    "DataRefresher",
    "EarningsCalendarSync",
    "SyncResult",
    "TaskRunner",
    "TradingEngine",
    "Watchdog",
    "WatchdogReport",
]
