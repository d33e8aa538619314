"""Data models for screening, earnings and trading records."""

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from typing import Any

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
from stock_screener.utils.calculations import calculate_surprise


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp or return a datetime as-is."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def parse_date(value: str | date | None) -> date | None:
    """Parse a date from string or return as-is if already a date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _known(cls, row: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys that are dataclass fields of cls."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in row.items() if k in names}


@dataclass(frozen=True)
class StockSnapshot:
    """
    Latest fundamentals and price data for one stock.

    Owned by the data store and overwritten on each refresh; the engine only
    reads it. Numeric fields may arrive as Decimal or string values and are
    normalized by the scorer.
    """

    symbol: str
    company_name: str | None = None
    sector: str | None = None
    current_price: Any = None
    previous_close: Any = None
    pe_ratio: Any = None
    ps_ratio: Any = None
    pb_ratio: Any = None
    pcf_ratio: Any = None
    roe: Any = None
    debt_to_equity: Any = None
    current_ratio: Any = None
    revenue_growth: Any = None
    earnings_growth: Any = None
    dividend_yield: Any = None
    market_cap: Any = None
    volume: Any = None
    momentum_1m: Any = None
    momentum_3m: Any = None
    momentum_6m: Any = None
    momentum_12m: Any = None
    data_quality: int = 0
    data_completeness: DataCompleteness = DataCompleteness.MINIMAL
    has_error: bool = False
    error_message: str | None = None
    last_updated: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StockSnapshot":
        data = _known(cls, row)
        data["has_error"] = bool(data.get("has_error", False))
        data["data_quality"] = int(data.get("data_quality") or 0)
        data["data_completeness"] = DataCompleteness(data.get("data_completeness") or "MINIMAL")
        data["last_updated"] = parse_datetime(data.get("last_updated"))
        return cls(**data)


@dataclass(frozen=True)
class FactorBound:
    """Optional min/max band and weight for one screening factor."""

    min: float | None = None
    max: float | None = None
    weight: float = 1.0

    @property
    def is_bounded(self) -> bool:
        return self.min is not None or self.max is not None

    def to_dict(self) -> dict[str, float | None]:
        return {"min": self.min, "max": self.max, "weight": self.weight}


@dataclass
class ScreenCriteria:
    """
    A named screen: sparse factor bounds plus trading configuration.

    Attributes:
        factors: Mapping of factor name to its FactorBound
        min_score: Score a stock must exceed to qualify
        min_earnings_surprise: Qualifying surprise percent for earnings screens
        max_entries: Cap on watchlist upserts per pass (top-N by score)
    """

    id: int | None
    name: str
    factors: dict[str, FactorBound] = field(default_factory=dict)
    screen_type: ScreenType = ScreenType.VALUE
    description: str | None = None
    is_active: bool = True
    allocated_capital: float | None = None
    current_capital: float | None = None
    min_score: float = 0.0
    min_earnings_surprise: float = 5.0
    max_positions: int | None = None
    max_entries: int | None = None

    @property
    def bounded_factors(self) -> dict[str, FactorBound]:
        return {name: bound for name, bound in self.factors.items() if bound.is_bounded}


@dataclass
class WatchlistEntry:
    """A stock that qualified for a screen, keyed by (ticker, screen_id)."""

    ticker: str
    screen_id: int
    score: float
    pe_ratio: float | None = None
    ps_ratio: float | None = None
    momentum: float | None = None
    market_cap: float | None = None
    current_price: float | None = None
    date_added: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WatchlistEntry":
        data = _known(cls, row)
        data["date_added"] = parse_datetime(data.get("date_added"))
        data["updated_at"] = parse_datetime(data.get("updated_at"))
        return cls(**data)


@dataclass(frozen=True)
class EarningsRecord:
    """
    One scheduled or reported earnings event.

    beat/surprise are derived once actual_eps is known and never change
    afterwards.
    """

    symbol: str
    earnings_date: date
    estimated_eps: float | None = None
    actual_eps: float | None = None
    beat: bool | None = None
    surprise: float | None = None
    fiscal_quarter: str | None = None
    fiscal_year: int | None = None
    id: int | None = None

    @property
    def is_reported(self) -> bool:
        return self.actual_eps is not None

    def with_actual(self, actual_eps: float) -> "EarningsRecord":
        """Return the record updated with its reported EPS."""
        beat, surprise = calculate_surprise(self.estimated_eps, actual_eps)
        return replace(self, actual_eps=actual_eps, beat=beat, surprise=surprise)

    @classmethod
    def create(
        cls,
        symbol: str,
        earnings_date: date,
        estimated_eps: float | None,
        actual_eps: float | None = None,
        **extra: Any,
    ) -> "EarningsRecord":
        """Build a record, deriving beat/surprise when the actual is present."""
        beat, surprise = calculate_surprise(estimated_eps, actual_eps)
        return cls(
            symbol=symbol.upper(),
            earnings_date=earnings_date,
            estimated_eps=estimated_eps,
            actual_eps=actual_eps,
            beat=beat,
            surprise=surprise,
            **extra,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "EarningsRecord":
        data = _known(cls, row)
        data["earnings_date"] = parse_date(data["earnings_date"])
        if data.get("beat") is not None:
            data["beat"] = bool(data["beat"])
        return cls(**data)


@dataclass
class EarningsOpportunity:
    """A watchlist ticker whose reported earnings beat the screen threshold."""

    ticker: str
    earnings_date: date
    surprise: float
    estimated_eps: float | None
    actual_eps: float | None
    current_price: float | None = None
    company_name: str | None = None

    @property
    def opportunity_score(self) -> float:
        return self.surprise

    @property
    def reason(self) -> str:
        return f"Earnings beat by {self.surprise:.1f}%"


@dataclass
class EarningsSummary:
    """Counts over every earnings row considered, including non-qualifying ones."""

    total_monitored: int = 0
    scheduled: int = 0
    reported: int = 0
    beats: int = 0
    qualified_beats: int = 0
    misses: int = 0
    pending: int = 0


@dataclass
class EarningsScan:
    """Opportunities found for a screen plus summary counts."""

    screen_id: int
    opportunities: list[EarningsOpportunity] = field(default_factory=list)
    summary: EarningsSummary = field(default_factory=EarningsSummary)


@dataclass
class Position:
    """A simulated or live holding. Mutated only through PositionManager."""

    ticker: str
    quantity: int
    trailing_stop_pct: float
    entry_price: float | None = None
    entry_time: datetime | None = None
    current_price: float | None = None
    trailing_stop_price: float | None = None
    unrealized_pnl: float = 0.0
    status: PositionStatus = PositionStatus.PENDING
    run_id: int | None = None
    screen_id: int | None = None
    broker_order_id: str | None = None
    exit_price: float | None = None
    exit_time: datetime | None = None
    last_update: datetime | None = None
    id: int | None = None

    @property
    def cost(self) -> float:
        return (self.entry_price or 0.0) * self.quantity

    @property
    def market_value(self) -> float:
        price = self.current_price if self.current_price is not None else self.entry_price
        return (price or 0.0) * self.quantity

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Position":
        data = _known(cls, row)
        data["status"] = PositionStatus(data["status"])
        for key in ("entry_time", "exit_time", "last_update"):
            data[key] = parse_datetime(data.get(key))
        return cls(**data)


@dataclass(frozen=True)
class Trade:
    """Completed round trip, created exactly once when its position closes."""

    ticker: str
    quantity: int
    entry_price: float
    exit_price: float
    entry_time: datetime
    exit_time: datetime
    realized_pnl: float
    hold_time_minutes: int
    exit_reason: ExitReason
    run_id: int | None = None
    position_id: int | None = None
    strategy: str | None = None
    id: int | None = None

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > 0

    @property
    def return_pct(self) -> float:
        cost = self.entry_price * self.quantity
        return self.realized_pnl / cost * 100 if cost else 0.0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Trade":
        data = _known(cls, row)
        data["exit_reason"] = ExitReason(data["exit_reason"])
        data["entry_time"] = parse_datetime(data["entry_time"])
        data["exit_time"] = parse_datetime(data["exit_time"])
        return cls(**data)


@dataclass
class RunAggregates:
    """Run-level statistics computed once on completion or stop."""

    final_capital: float
    total_return: float
    total_return_dollars: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    avg_win_amount: float
    avg_loss_amount: float
    avg_hold_time_days: float
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class RunRecord:
    """A backtest or paper-trading run and, once terminal, its aggregates."""

    id: int | None
    name: str
    screen_id: int
    run_type: RunType
    start_date: date
    end_date: date | None
    starting_capital: float
    max_positions: int
    trailing_stop_pct: float
    status: RunStatus = RunStatus.RUNNING
    current_capital: float | None = None
    description: str | None = None
    notes: str | None = None
    stop_requested: bool = False
    error_message: str | None = None
    created_at: datetime | None = None
    last_update: datetime | None = None
    completed_at: datetime | None = None
    aggregates: RunAggregates | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RunRecord":
        data = _known(cls, row)
        data["run_type"] = RunType(data["run_type"])
        data["status"] = RunStatus(data["status"])
        data["start_date"] = parse_date(data["start_date"])
        data["end_date"] = parse_date(data.get("end_date"))
        data["stop_requested"] = bool(data.get("stop_requested"))
        for key in ("created_at", "last_update", "completed_at"):
            data[key] = parse_datetime(data.get(key))
        if row.get("total_trades") is not None:
            data["aggregates"] = RunAggregates(**_known(RunAggregates, row))
        return cls(**data)


@dataclass
class ScreeningResult:
    """Counts from one screening pass."""

    screen_id: int
    processed: int = 0
    qualified: int = 0
    updated: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class BacktestResult:
    """Completed run plus its trade ledger and per-step equity curve."""

    run: RunRecord
    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[tuple[date, float]] = field(default_factory=list)


@dataclass
class RefreshLog:
    """History record of one data refresh job."""

    id: int
    refresh_type: RefreshType
    status: RefreshStatus
    start_time: datetime
    end_time: datetime | None = None
    stocks_processed: int = 0
    stocks_updated: int = 0
    stocks_skipped: int = 0
    stocks_failed: int = 0
    error_message: str | None = None
    last_update: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RefreshLog":
        data = _known(cls, row)
        data["refresh_type"] = RefreshType(data["refresh_type"])
        data["status"] = RefreshStatus(data["status"])
        data["start_time"] = parse_datetime(data["start_time"])
        data["end_time"] = parse_datetime(data.get("end_time"))
        data["last_update"] = parse_datetime(data.get("last_update"))
        return cls(**data)
