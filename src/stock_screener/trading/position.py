"""Position lifecycle: entry, trailing-stop ratchet, exit rules and close."""

from datetime import datetime, timedelta

import structlog

from stock_screener.errors import PositionStateError, ValidationError
from stock_screener.models.enums import ExitReason, PositionStatus
from stock_screener.models.records import Position, Trade

logger = structlog.get_logger()


def stop_price_for(price: float, trailing_stop_pct: float) -> float:
    """Stop level trailing_stop_pct percent below price."""
    return price * (1 - trailing_stop_pct / 100)


class PositionManager:
    """
    Owns the state machine of one position: PENDING -> OPEN -> CLOSED.

    The trailing stop only ever moves up. CLOSED is terminal: any further
    update, evaluation or close raises PositionStateError.
    """

    def __init__(self, position: Position):
        self.position = position

    @classmethod
    def pending(cls, ticker: str, quantity: int, trailing_stop_pct: float, **extra) -> "PositionManager":
        """Create a PENDING position awaiting its fill."""
        _validate(quantity, trailing_stop_pct)
        return cls(
            Position(
                ticker=ticker,
                quantity=quantity,
                trailing_stop_pct=trailing_stop_pct,
                status=PositionStatus.PENDING,
                **extra,
            )
        )

    @classmethod
    def open(
        cls,
        ticker: str,
        quantity: int,
        entry_price: float,
        entry_time: datetime,
        trailing_stop_pct: float,
        **extra,
    ) -> "PositionManager":
        """Create an OPEN position with its initial trailing stop."""
        manager = cls.pending(ticker, quantity, trailing_stop_pct, **extra)
        manager.activate(entry_price, entry_time)
        return manager

    def activate(self, entry_price: float, entry_time: datetime) -> Position:
        """Fill a PENDING position: PENDING -> OPEN."""
        position = self.position
        if position.status != PositionStatus.PENDING:
            raise PositionStateError(f"Cannot open {position.ticker}: position is {position.status.value}")
        if entry_price is None or entry_price <= 0:
            raise ValidationError(f"Entry price must be positive, got {entry_price}")

        position.entry_price = entry_price
        position.entry_time = entry_time
        position.current_price = entry_price
        position.trailing_stop_price = stop_price_for(entry_price, position.trailing_stop_pct)
        position.unrealized_pnl = 0.0
        position.last_update = entry_time
        position.status = PositionStatus.OPEN
        return position

    @property
    def is_open(self) -> bool:
        return self.position.status == PositionStatus.OPEN

    def _require_open(self, action: str) -> None:
        if not self.is_open:
            raise PositionStateError(
                f"Cannot {action} {self.position.ticker}: position is {self.position.status.value}"
            )

    def on_price_update(self, current_price: float, at: datetime | None = None) -> Position:
        """Ratchet the stop and recompute unrealized P&L for a new price."""
        self._require_open("update")
        position = self.position
        candidate = stop_price_for(current_price, position.trailing_stop_pct)
        position.trailing_stop_price = max(position.trailing_stop_price, candidate)
        position.current_price = current_price
        position.unrealized_pnl = (current_price - position.entry_price) * position.quantity
        position.last_update = at or datetime.now()
        return position

    def evaluate_exit(
        self,
        current_price: float,
        now: datetime,
        cutoff_hour: int | None = None,
        cutoff_minute: int = 0,
        negative_news: bool = False,
        max_hold_days: int | None = None,
        profit_target_pct: float | None = None,
    ) -> ExitReason | None:
        """
        Decide whether the position should exit. The first matching rule wins.

        Order:
            1. price at or below the trailing stop -> STOP_LOSS
            2. negative news signal -> NEGATIVE_NEWS
            3. wall clock at/after the cutoff, or held max_hold_days -> TIME_CUTOFF
            4. gain at/above profit_target_pct -> PROFIT_TARGET

        Returns:
            The exit reason, or None to keep holding
        """
        self._require_open("evaluate")
        position = self.position

        if current_price <= position.trailing_stop_price:
            return ExitReason.STOP_LOSS
        if negative_news:
            return ExitReason.NEGATIVE_NEWS
        if cutoff_hour is not None and (now.hour, now.minute) >= (cutoff_hour, cutoff_minute):
            return ExitReason.TIME_CUTOFF
        if max_hold_days is not None and now - position.entry_time >= timedelta(days=max_hold_days):
            return ExitReason.TIME_CUTOFF
        if profit_target_pct is not None:
            gain_pct = (current_price - position.entry_price) / position.entry_price * 100
            if gain_pct >= profit_target_pct:
                return ExitReason.PROFIT_TARGET
        return None

    def close(self, exit_price: float, exit_time: datetime, reason: ExitReason) -> Trade:
        """OPEN -> CLOSED. Returns the single Trade for this position."""
        self._require_open("close")
        position = self.position
        if exit_time < position.entry_time:
            raise ValidationError(f"Exit time {exit_time} is before entry time {position.entry_time}")

        realized = (exit_price - position.entry_price) * position.quantity
        hold_minutes = int((exit_time - position.entry_time).total_seconds() // 60)

        position.status = PositionStatus.CLOSED
        position.exit_price = exit_price
        position.exit_time = exit_time
        position.current_price = exit_price
        position.unrealized_pnl = 0.0
        position.last_update = exit_time

        logger.debug(
            "Closed position",
            ticker=position.ticker,
            reason=reason.value,
            pnl=round(realized, 2),
        )
        return Trade(
            ticker=position.ticker,
            quantity=position.quantity,
            entry_price=position.entry_price,
            exit_price=exit_price,
            entry_time=position.entry_time,
            exit_time=exit_time,
            realized_pnl=realized,
            hold_time_minutes=hold_minutes,
            exit_reason=reason,
            run_id=position.run_id,
            position_id=position.id,
        )


def _validate(quantity: int, trailing_stop_pct: float) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError(f"Quantity must be positive, got {quantity}")
    if not 0 < trailing_stop_pct < 100:
        raise ValidationError(f"Trailing stop percent must be between 0 and 100, got {trailing_stop_pct}")
