"""Tagged variants for statuses and reasons."""

from enum import Enum


class PositionStatus(str, Enum):
    """Position lifecycle: PENDING -> OPEN -> CLOSED (terminal)."""

    PENDING = "PENDING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    """Why a position was closed."""

    STOP_LOSS = "STOP_LOSS"
    NEGATIVE_NEWS = "NEGATIVE_NEWS"
    TIME_CUTOFF = "TIME_CUTOFF"
    MANUAL = "MANUAL"
    PROFIT_TARGET = "PROFIT_TARGET"


class RunStatus(str, Enum):
    """Run lifecycle. Everything except RUNNING is terminal."""

    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunType(str, Enum):
    """HISTORICAL replays stored bars; LIVE polls current quotes."""

    HISTORICAL = "HISTORICAL"
    LIVE = "LIVE"


class ScreenType(str, Enum):
    """Kind of screen."""

    VALUE = "VALUE"
    GROWTH = "GROWTH"
    MOMENTUM = "MOMENTUM"
    EARNINGS = "EARNINGS"
    CUSTOM = "CUSTOM"


class DataCompleteness(str, Enum):
    """How much fundamental data a snapshot carries."""

    FULL = "FULL"
    PARTIAL = "PARTIAL"
    BASIC = "BASIC"
    MINIMAL = "MINIMAL"


class RefreshType(str, Enum):
    """Kind of stock data refresh job."""

    INITIAL_LOAD = "INITIAL_LOAD"
    FULL_REFRESH = "FULL_REFRESH"
    DELTA_REFRESH = "DELTA_REFRESH"
    MANUAL_REFRESH = "MANUAL_REFRESH"


class RefreshStatus(str, Enum):
    """Refresh job lifecycle."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
