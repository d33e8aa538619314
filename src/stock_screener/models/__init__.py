"""Data models."""

from stock_screener.models.enums import (
    DataCompleteness,
    ExitReason,
    PositionStatus,
    RefreshStatus,
    RefreshType,
    RunStatus,
    RunType,
    ScreenType,
)
from stock_screener.models.records import (
    BacktestResult,
    EarningsOpportunity,
    EarningsRecord,
    EarningsScan,
    EarningsSummary,
    FactorBound,
    Position,
    RefreshLog,
    RunAggregates,
    RunRecord,
    ScreenCriteria,
    ScreeningResult,
    StockSnapshot,
    Trade,
    WatchlistEntry,
)

__all__ = [
    "BacktestResult",
    "DataCompleteness",
    "EarningsOpportunity",
    "EarningsRecord",
    "EarningsScan",
    "EarningsSummary",
    "ExitReason",
    "FactorBound",
    "Position",
    "PositionStatus",
    "RefreshLog",
    "RefreshStatus",
    "RefreshType",
    "RunAggregates",
    "RunRecord",
    "RunStatus",
    "RunType",
    "ScreenCriteria",
    "ScreenType",
    "ScreeningResult",
    "StockSnapshot",
    "Trade",
    "WatchlistEntry",
]
