"""Data layer: storage, market data, broker and notifications."""

from stock_screener.data.base import MarketDataSource, Quote
from stock_screener.data.broker import Account, BrokerClient, Order, SimulatedBroker
from stock_screener.data.cached_provider import CachedMarketData
from stock_screener.data.database import Database
from stock_screener.data.fmp_provider import FMPProvider
from stock_screener.data.notifications import (
    LogNotificationSink,
    NotificationDispatcher,
    NotificationSink,
)
from stock_screener.data.yfinance_provider import YFinanceProvider

__all__ = [
    "Account",
    "BrokerClient",
    "CachedMarketData",
    "Database",
    "FMPProvider",
    "LogNotificationSink",
    "MarketDataSource",
    "NotificationDispatcher",
    "NotificationSink",
    "Order",
    "Quote",
    "SimulatedBroker",
    "YFinanceProvider",
]
