"""Backtest and paper-trading simulator.

Drives PositionManager instances along a time axis in strictly ascending
order. Each step (a) evaluates exits for open positions, (b) opens new
positions among the step's candidates using equal-weight sizing, and
(c) records portfolio equity.
"""

from __future__ import annotations

import math
import time as time_module
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Callable, Iterable

import pandas as pd
import structlog

from stock_screener.data.database import Database
from stock_screener.models.enums import ExitReason
from stock_screener.models.records import Trade
from stock_screener.trading.position import PositionManager

logger = structlog.get_logger()

# ticker, step time, price, previous price -> negative news?
NewsSignal = Callable[[str, datetime, float, "float | None"], bool]
# step time -> candidate tickers, best first
CandidateSource = Callable[[datetime], list[str]]


@dataclass
class SimulationConfig:
    """Trading parameters for one simulated run."""

    initial_capital: float
    max_positions: int
    trailing_stop_pct: float
    cutoff_hour: int | None = None
    cutoff_minute: int = 0
    max_hold_days: int | None = None
    profit_target_pct: float | None = None
    negative_news_drop_pct: float | None = 10.0
    bar_close_hour: int = 16


@dataclass
class SimulationOutcome:
    """What a simulation produced."""

    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[tuple[datetime, float]] = field(default_factory=list)
    stopped: bool = False
    cash: float = 0.0
    peak_open_positions: int = 0


def close_matrix(bars: dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Closing prices as a date-indexed frame with one column per symbol."""
    closes = {}
    for symbol, df in bars.items():
        if df is None or df.empty or "Close" not in df.columns:
            continue
        series = df["Close"].copy()
        series.index = pd.to_datetime(series.index).normalize()
        closes[symbol] = series[~series.index.duplicated(keep="last")]
    if not closes:
        return pd.DataFrame(index=pd.DatetimeIndex([]))
    return pd.DataFrame(closes).sort_index()


class Simulator:
    """
    Replays or polls prices and manages a run's positions.

    Args:
        config: Trading parameters
        db: Optional data store; when given with run_id, positions, trades
            and heartbeats are persisted as they happen
        run_id: Run the positions belong to
        screen_id: Screen the positions came from
        news_signal: Optional negative-news detector. Defaults to a one-step
            price drop of at least config.negative_news_drop_pct percent.
        should_stop: Checked between steps; True stops the run
    """

    def __init__(
        self,
        config: SimulationConfig,
        db: Database | None = None,
        run_id: int | None = None,
        screen_id: int | None = None,
        news_signal: NewsSignal | None = None,
        should_stop: Callable[[], bool] | None = None,
    ):
        self.config = config
        self.db = db
        self.run_id = run_id
        self.screen_id = screen_id
        self.news_signal = news_signal or self._price_drop_signal
        self.should_stop = should_stop or (lambda: False)

        self.cash = float(config.initial_capital)
        self.open_positions: dict[str, PositionManager] = {}
        self.outcome = SimulationOutcome(cash=self.cash)
        self._last_step: datetime | None = None

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def run_historical(
        self,
        prices: pd.DataFrame,
        candidates: CandidateSource,
        start: date | None = None,
        end: date | None = None,
    ) -> SimulationOutcome:
        """
        Replay daily closes.

        Args:
            prices: Date-indexed closes, one column per symbol (see close_matrix)
            candidates: Candidate tickers for each step, best first
            start: First date to replay (inclusive)
            end: Last date to replay (inclusive)
        """
        if prices.empty:
            logger.info("No prices to replay", run_id=self.run_id)
            return self.finish(ExitReason.TIME_CUTOFF)

        frame = prices.sort_index()
        if start is not None:
            frame = frame[frame.index >= pd.Timestamp(start)]
        if end is not None:
            frame = frame[frame.index <= pd.Timestamp(end)]

        logger.info(
            "Starting historical replay",
            run_id=self.run_id,
            steps=len(frame),
            symbols=len(frame.columns),
        )

        for day, row in frame.iterrows():
            if self.should_stop():
                return self.stop()
            at = datetime.combine(day.date(), time(self.config.bar_close_hour))
            step_prices = {symbol: float(price) for symbol, price in row.dropna().items()}
            self.step(at, step_prices, candidates(at))

        return self.finish(ExitReason.TIME_CUTOFF)

    def run_live(
        self,
        candidates: CandidateSource,
        quote: Callable[[str], float | None],
        end_date: date | None = None,
        poll_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time_module.sleep,
        max_steps: int | None = None,
    ) -> SimulationOutcome:
        """
        Poll current quotes until the end date, a stop request or max_steps.

        A failed quote leaves the ticker out of the step, so held positions
        keep their last known price.
        """
        steps = 0
        while True:
            if self.should_stop():
                return self.stop()

            now = clock()
            if end_date is not None and now.date() > end_date:
                break

            step_candidates = candidates(now)
            tickers = list(dict.fromkeys([*self.open_positions, *step_candidates]))
            step_prices = {}
            for ticker in tickers:
                price = quote(ticker)
                if price is not None and price > 0:
                    step_prices[ticker] = price
            self.step(now, step_prices, step_candidates)

            steps += 1
            if max_steps is not None and steps >= max_steps:
                break
            sleep(poll_seconds)

        return self.finish(ExitReason.TIME_CUTOFF)

    # ------------------------------------------------------------------
    # One time step
    # ------------------------------------------------------------------

    def step(self, at: datetime, prices: dict[str, float], candidates: Iterable[str]) -> None:
        """Process one time step. Steps must arrive in ascending time order."""
        if self._last_step is not None and at < self._last_step:
            raise ValueError(f"Step {at} is before previous step {self._last_step}")
        self._last_step = at

        closed_now = self._evaluate_exits(at, prices)
        self._open_candidates(at, prices, candidates, closed_now)

        equity = self.equity()
        self.outcome.equity_curve.append((at, equity))
        self.outcome.peak_open_positions = max(self.outcome.peak_open_positions, len(self.open_positions))
        self.outcome.cash = self.cash
        if self.db is not None and self.run_id is not None:
            self.db.touch_run(self.run_id, current_capital=equity)

    def _evaluate_exits(self, at: datetime, prices: dict[str, float]) -> set[str]:
        closed = set()
        for ticker, manager in list(self.open_positions.items()):
            price = prices.get(ticker)
            if price is None:
                continue
            previous = manager.position.current_price
            manager.on_price_update(price, at)
            reason = manager.evaluate_exit(
                current_price=price,
                now=at,
                cutoff_hour=self.config.cutoff_hour,
                cutoff_minute=self.config.cutoff_minute,
                negative_news=self.news_signal(ticker, at, price, previous),
                max_hold_days=self.config.max_hold_days,
                profit_target_pct=self.config.profit_target_pct,
            )
            if reason is None:
                if self.db is not None and manager.position.id is not None:
                    self.db.update_position(manager.position)
                continue
            self._close(ticker, price, at, reason)
            closed.add(ticker)
        return closed

    def _open_candidates(
        self,
        at: datetime,
        prices: dict[str, float],
        candidates: Iterable[str],
        closed_now: set[str],
    ) -> None:
        if self._past_cutoff(at):
            return

        for ticker in candidates:
            slots = self.config.max_positions - len(self.open_positions)
            if slots <= 0:
                break
            if ticker in self.open_positions or ticker in closed_now:
                continue
            price = prices.get(ticker)
            if price is None or price <= 0:
                continue

            quantity = math.floor(self.cash / slots / price)
            cost = quantity * price
            if quantity < 1 or cost > self.cash:
                continue

            manager = PositionManager.open(
                ticker=ticker,
                quantity=quantity,
                entry_price=price,
                entry_time=at,
                trailing_stop_pct=self.config.trailing_stop_pct,
                run_id=self.run_id,
                screen_id=self.screen_id,
            )
            self.cash -= cost
            self.open_positions[ticker] = manager
            if self.db is not None:
                self.db.add_position(manager.position)
            logger.debug("Opened position", run_id=self.run_id, ticker=ticker, quantity=quantity, price=price)

    def _close(self, ticker: str, price: float, at: datetime, reason: ExitReason) -> Trade:
        manager = self.open_positions.pop(ticker)
        trade = manager.close(price, at, reason)
        if self.db is not None and manager.position.id is not None:
            trade_id = self.db.close_position(manager.position, trade)
            trade = replace(trade, id=trade_id)
        self.cash += price * trade.quantity
        self.outcome.trades.append(trade)
        return trade

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def finish(self, reason: ExitReason) -> SimulationOutcome:
        """Close everything still open at its last price."""
        at = self._last_step or datetime.now()
        for ticker, manager in list(self.open_positions.items()):
            self._close(ticker, manager.position.current_price, at, reason)
        self.outcome.cash = self.cash
        if self.outcome.equity_curve:
            self.outcome.equity_curve.append((at, self.cash))
        logger.info(
            "Simulation finished",
            run_id=self.run_id,
            trades=len(self.outcome.trades),
            cash=round(self.cash, 2),
            stopped=self.outcome.stopped,
        )
        return self.outcome

    def stop(self) -> SimulationOutcome:
        """Liquidate at last prices after a stop request."""
        self.outcome.stopped = True
        return self.finish(ExitReason.MANUAL)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def equity(self) -> float:
        return self.cash + sum(m.position.market_value for m in self.open_positions.values())

    def _past_cutoff(self, at: datetime) -> bool:
        if self.config.cutoff_hour is None:
            return False
        return (at.hour, at.minute) >= (self.config.cutoff_hour, self.config.cutoff_minute)

    def _price_drop_signal(
        self, ticker: str, at: datetime, price: float, previous: float | None
    ) -> bool:
        threshold = self.config.negative_news_drop_pct
        if threshold is None or not previous:
            return False
        return (previous - price) / previous * 100 >= threshold
