"""TradingEngine - entry points for screening, backtests, paper trading and positions."""

from __future__ import annotations

import math
import time as time_module
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime
from typing import Callable

import structlog

from stock_screener.config import Settings, get_settings
from stock_screener.data.base import MarketDataSource
from stock_screener.data.broker import BrokerClient, SimulatedBroker
from stock_screener.data.database import Database
from stock_screener.data.notifications import NotificationDispatcher
from stock_screener.engine.tasks import TaskRunner
from stock_screener.errors import (
    BrokerError,
    ExternalDataError,
    NotFoundError,
    PersistenceConflictError,
    PositionStateError,
    ValidationError,
)
from stock_screener.models.enums import ExitReason, PositionStatus, RunStatus, RunType, ScreenType
from stock_screener.models.records import (
    BacktestResult,
    EarningsOpportunity,
    EarningsScan,
    Position,
    RunRecord,
    ScreenCriteria,
    ScreeningResult,
    Trade,
)
from stock_screener.scanners.earnings import EarningsDetector, is_qualified_beat
from stock_screener.scanners.screening import ScreeningPass
from stock_screener.scoring.modes import ScoringMode
from stock_screener.scoring.scorer import FactorScorer
from stock_screener.trading.metrics import compute_run_aggregates
from stock_screener.trading.position import PositionManager
from stock_screener.trading.simulator import (
    CandidateSource,
    SimulationConfig,
    SimulationOutcome,
    Simulator,
    close_matrix,
)
from stock_screener.utils.logging import bind_run_context, clear_run_context

logger = structlog.get_logger()

# Screens without their own limit may hold this many live positions
DEFAULT_SCREEN_MAX_POSITIONS = 10


class TradingEngine:
    """
    Orchestrates screening, earnings detection, simulation and position management.

    Every entry point validates its input before touching the data store.
    A run that fails after creation is always marked FAILED with a
    completion timestamp and the error message.

    Example usage:
        engine = TradingEngine(Database("data/stock_screener.db"), YFinanceProvider())
        engine.run_oshaughnessy_screening(screen_id=1)
        result = engine.run_backtest(1, date(2024, 1, 1), date(2024, 6, 30))
        print(result.run.aggregates.total_return)
    """

    def __init__(
        self,
        db: Database,
        market_data: MarketDataSource,
        settings: Settings | None = None,
        broker: BrokerClient | None = None,
        notifier: NotificationDispatcher | None = None,
        task_runner: TaskRunner | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time_module.sleep,
    ):
        self.db = db
        self.market_data = market_data
        self.settings = settings or get_settings()
        self.broker = broker or SimulatedBroker(price_lookup=self._quote_or_raise)
        self.notifier = notifier or NotificationDispatcher()
        self.task_runner = task_runner or TaskRunner()
        self.clock = clock
        self.sleep = sleep

        scorer = FactorScorer(ScoringMode(self.settings.screening.scoring_mode))
        self.screening = ScreeningPass(db, scorer, self.settings.engine.min_data_quality)
        self.earnings = EarningsDetector(db)

    # ------------------------------------------------------------------
    # Screening and opportunities
    # ------------------------------------------------------------------

    def run_screening(self, screen_id: int) -> ScreeningResult:
        """Run the screening pass for one screen. Raises NotFoundError if missing."""
        return self.screening.run(screen_id)

    def run_oshaughnessy_screening(self, screen_id: int | None = None) -> list[ScreeningResult]:
        """
        Run the screening pass for one screen, or every active screen.

        A failing screen in the all-screens case is logged and skipped.
        """
        if screen_id is not None:
            return [self.run_screening(screen_id)]

        results = []
        for screen in self.db.list_screens(active_only=True):
            try:
                results.append(self.run_screening(screen.id))
            except Exception as e:
                logger.error("Screening failed", screen_id=screen.id, error=str(e))

        logger.info(
            "Screened active screens",
            screens=len(results),
            processed=sum(r.processed for r in results),
            qualified=sum(r.qualified for r in results),
        )
        return results

    def earnings_scan(
        self, screen_id: int, start: date | None = None, end: date | None = None
    ) -> EarningsScan:
        """Opportunities plus summary counts for a screen."""
        return self.earnings.scan(screen_id, start or self.clock().date(), end)

    def identify_earnings_opportunities(
        self, screen_id: int, start: date | None = None, end: date | None = None
    ) -> list[EarningsOpportunity]:
        return self.earnings_scan(screen_id, start, end).opportunities

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_backtest(
        self,
        screen_id: int,
        start_date: date | None,
        end_date: date | None,
        initial_capital: float | None = None,
        max_positions: int | None = None,
        trailing_stop_pct: float | None = None,
        name: str | None = None,
    ) -> BacktestResult:
        """
        Replay a screen's candidates over a historical date range.

        The run is persisted as HISTORICAL and completed synchronously.

        Raises:
            NotFoundError: If the screen does not exist
            ValidationError: For a bad date range or parameters (nothing persisted)
        """
        engine = self.settings.engine
        screen = self._require_screen(screen_id)
        run = self._validated_run(
            screen=screen,
            run_type=RunType.HISTORICAL,
            start_date=start_date,
            end_date=end_date,
            starting_capital=engine.default_initial_capital if initial_capital is None else initial_capital,
            max_positions=engine.default_max_positions if max_positions is None else max_positions,
            trailing_stop_pct=engine.trailing_stop_pct if trailing_stop_pct is None else trailing_stop_pct,
            name=name or f"Backtest {screen.name} {start_date} to {end_date}",
        )
        if not self.db.get_watchlist(screen_id):
            raise ValidationError(f"Screen {screen_id} has no watchlist entries; run screening first")

        run = self.db.create_run(run)
        outcome = self._drive(run, screen)
        return BacktestResult(
            run=self.db.get_run(run.id),
            trades=outcome.trades,
            equity_curve=[(at.date(), value) for at, value in outcome.equity_curve],
        )

    def create_paper_trading_run(
        self,
        screen_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        run_type: RunType = RunType.LIVE,
        starting_capital: float | None = None,
        max_positions: int | None = None,
        trailing_stop_pct: float | None = None,
        name: str | None = None,
        description: str | None = None,
        start: bool = True,
    ) -> RunRecord:
        """
        Create a RUNNING paper-trading run and (optionally) start driving it.

        The run executes in the background; the returned record reflects the
        moment of creation.
        """
        engine = self.settings.engine
        screen = self._require_screen(screen_id)
        run_type = RunType(run_type)
        start_date = start_date or self.clock().date()
        if run_type == RunType.HISTORICAL and end_date is None:
            raise ValidationError("Historical paper-trading runs need an end date")

        run = self._validated_run(
            screen=screen,
            run_type=run_type,
            start_date=start_date,
            end_date=end_date,
            starting_capital=engine.default_initial_capital if starting_capital is None else starting_capital,
            max_positions=engine.default_max_positions if max_positions is None else max_positions,
            trailing_stop_pct=engine.trailing_stop_pct if trailing_stop_pct is None else trailing_stop_pct,
            name=name or f"Paper {screen.name} {start_date}",
            description=description,
        )
        run = self.db.create_run(run)
        if start:
            self.start_run(run.id)
        return run

    def start_run(self, run_id: int):
        """
        Hand a RUNNING run to the task runner. Returns its future.

        Raises:
            ValidationError: If the run is not RUNNING
            PersistenceConflictError: If the run is already being driven
        """
        run = self._require_run(run_id)
        if run.status != RunStatus.RUNNING:
            raise ValidationError(f"Run {run_id} is {run.status.value}, not RUNNING")
        return self.task_runner.submit(run_id, self.run_paper_trading_backtest, self._ensure_terminal)

    def run_paper_trading_backtest(self, run_id: int) -> RunRecord:
        """
        Drive a persisted run to a terminal state.

        HISTORICAL runs replay daily bars over their date range; LIVE runs
        poll quotes until their end date or a stop request.

        Raises:
            NotFoundError: If the run does not exist
            ValidationError: If the run is not RUNNING
        """
        run = self._require_run(run_id)
        if run.status != RunStatus.RUNNING:
            raise ValidationError(f"Run {run_id} is {run.status.value}, not RUNNING")

        screen = self.db.get_screen(run.screen_id)
        if screen is None:
            error = NotFoundError("Screen", run.screen_id)
            self._mark_failed(run_id, error)
            raise error

        self._drive(run, screen)
        return self.db.get_run(run_id)

    def stop_run(self, run_id: int) -> RunRecord:
        """
        Request a RUNNING run to stop.

        A run driven in this process stops at its next step boundary. A run
        nobody is driving is finalized here: its open positions close at their
        last price and it becomes STOPPED with aggregates over its trades.

        Raises:
            NotFoundError: If the run does not exist
            ValidationError: If the run is not RUNNING
        """
        run = self._require_run(run_id)
        if run.status != RunStatus.RUNNING:
            raise ValidationError(f"Run {run_id} is {run.status.value}, not RUNNING")
        if not self.db.request_stop(run_id):
            raise PersistenceConflictError(f"Run {run_id} finished before it could be stopped")

        logger.info("Stop requested", run_id=run_id)
        if self.task_runner.is_running(run_id):
            return self.db.get_run(run_id)

        now = self.clock()
        for position in self.db.list_positions(status=PositionStatus.OPEN, run_id=run_id):
            trade = PositionManager(position).close(
                position.current_price, max(now, position.entry_time), ExitReason.MANUAL
            )
            self.db.close_position(position, trade)

        trades = self.db.get_trades(run_id)
        self.db.finalize_run(
            run_id, RunStatus.STOPPED, compute_run_aggregates(trades, run.starting_capital)
        )
        return self.db.get_run(run_id)

    def _drive(self, run: RunRecord, screen: ScreenCriteria) -> SimulationOutcome:
        """Simulate a RUNNING run and write its terminal state."""
        bind_run_context(run_id=run.id, screen_id=screen.id)
        try:
            simulator = Simulator(
                config=self._simulation_config(run),
                db=self.db,
                run_id=run.id,
                screen_id=screen.id,
                should_stop=lambda: self.db.is_stop_requested(run.id),
            )
            if run.run_type == RunType.HISTORICAL:
                outcome = self._replay(simulator, run, screen)
            else:
                outcome = simulator.run_live(
                    candidates=self._live_candidates(screen),
                    quote=self._quote_price,
                    end_date=run.end_date,
                    poll_seconds=self.settings.engine.live_poll_seconds,
                    clock=self.clock,
                    sleep=self.sleep,
                )

            aggregates = compute_run_aggregates(
                outcome.trades,
                run.starting_capital,
                [value for _, value in outcome.equity_curve],
            )
            status = RunStatus.STOPPED if outcome.stopped else RunStatus.COMPLETED
            self.db.finalize_run(run.id, status, aggregates)
            self.notifier.notify(
                "run_finished",
                f"Run {run.name} {status.value.lower()}",
                run_id=run.id,
                trades=aggregates.total_trades,
                total_return=aggregates.total_return,
            )
            return outcome
        except Exception as e:
            logger.error("Run failed", error=str(e))
            self._mark_failed(run.id, e)
            raise
        finally:
            clear_run_context()

    def _replay(self, simulator: Simulator, run: RunRecord, screen: ScreenCriteria) -> SimulationOutcome:
        universe, candidates = self._historical_candidates(screen, run.start_date, run.end_date)
        bars = self.market_data.get_bars(universe, "1d", run.start_date, run.end_date) if universe else {}
        missing = sorted(set(universe) - set(bars))
        if missing:
            logger.warning("No bars for candidates", count=len(missing), tickers=missing[:10])
        return simulator.run_historical(close_matrix(bars), candidates, run.start_date, run.end_date)

    def _historical_candidates(
        self, screen: ScreenCriteria, start: date, end: date
    ) -> tuple[list[str], CandidateSource]:
        """
        Tickers to fetch and the per-step candidate list.

        Earnings screens only consider a ticker on the day of its qualifying
        beat; other screens consider the whole watchlist, best score first.
        """
        tickers = [entry.ticker for entry in self.db.get_watchlist(screen.id)]
        if screen.screen_type != ScreenType.EARNINGS:
            return tickers, lambda at: tickers

        by_day: dict[date, list] = defaultdict(list)
        for record in self.db.get_earnings_for_symbols(tickers, start, end):
            if is_qualified_beat(record, screen.min_earnings_surprise):
                by_day[record.earnings_date].append(record)
        ranked = {
            day: [r.symbol for r in sorted(records, key=lambda r: -r.surprise)]
            for day, records in by_day.items()
        }
        universe = sorted({symbol for symbols in ranked.values() for symbol in symbols})
        return universe, lambda at: ranked.get(at.date(), [])

    def _live_candidates(self, screen: ScreenCriteria) -> CandidateSource:
        if screen.screen_type == ScreenType.EARNINGS:
            return lambda at: [
                o.ticker for o in self.earnings.identify_opportunities(screen.id, at.date())
            ]
        return lambda at: [entry.ticker for entry in self.db.get_watchlist(screen.id)]

    def _simulation_config(self, run: RunRecord) -> SimulationConfig:
        engine = self.settings.engine
        live = run.run_type == RunType.LIVE
        return SimulationConfig(
            initial_capital=run.starting_capital,
            max_positions=run.max_positions,
            trailing_stop_pct=run.trailing_stop_pct,
            cutoff_hour=engine.time_cutoff_hour if live else None,
            cutoff_minute=engine.time_cutoff_minute,
            max_hold_days=None if live else engine.max_hold_days,
            profit_target_pct=engine.profit_target_pct,
            negative_news_drop_pct=engine.negative_news_drop_pct,
            bar_close_hour=engine.bar_close_hour,
        )

    def _validated_run(
        self,
        screen: ScreenCriteria,
        run_type: RunType,
        start_date: date | None,
        end_date: date | None,
        starting_capital: float,
        max_positions: int,
        trailing_stop_pct: float,
        name: str,
        description: str | None = None,
    ) -> RunRecord:
        if start_date is None:
            raise ValidationError("A start date is required")
        if run_type == RunType.HISTORICAL and end_date is None:
            raise ValidationError("An end date is required")
        if end_date is not None and end_date < start_date:
            raise ValidationError(f"End date {end_date} is before start date {start_date}")
        if starting_capital is None or starting_capital <= 0:
            raise ValidationError(f"Starting capital must be positive, got {starting_capital}")
        if max_positions < 1:
            raise ValidationError(f"Max positions must be at least 1, got {max_positions}")
        if not 0 < trailing_stop_pct < 100:
            raise ValidationError(f"Trailing stop percent must be between 0 and 100, got {trailing_stop_pct}")

        return RunRecord(
            id=None,
            name=name,
            screen_id=screen.id,
            run_type=run_type,
            start_date=start_date,
            end_date=end_date,
            starting_capital=float(starting_capital),
            max_positions=int(max_positions),
            trailing_stop_pct=float(trailing_stop_pct),
            description=description,
        )

    def _mark_failed(self, run_id: int, error: BaseException) -> None:
        try:
            self.db.finalize_run(run_id, RunStatus.FAILED, error_message=str(error) or type(error).__name__)
        except PersistenceConflictError:
            logger.warning("Run already terminal, not marking FAILED", run_id=run_id)

    def _ensure_terminal(self, run_id: int, error: BaseException | None) -> None:
        """Completion handler for background runs: never leave a run RUNNING."""
        run = self.db.get_run(run_id)
        if run is not None and run.status == RunStatus.RUNNING:
            self._mark_failed(run_id, error or RuntimeError("Run ended without a terminal status"))

    # ------------------------------------------------------------------
    # Live positions
    # ------------------------------------------------------------------

    def execute_opportunities(
        self,
        screen_id: int,
        opportunities: list[EarningsOpportunity] | None = None,
        capital: float | None = None,
    ) -> list[Position]:
        """
        Open live positions for earnings opportunities.

        Capital is split equally over the opportunities taken, which are
        capped at min(screen max positions, account max positions) minus the
        screen's positions already open. A failure on one ticker is logged
        and does not stop the others.
        """
        screen = self._require_screen(screen_id)
        if opportunities is None:
            opportunities = self.identify_earnings_opportunities(screen_id)

        held = {p.ticker for p in self.db.list_positions(status=PositionStatus.OPEN, live_only=True)}
        open_for_screen = [
            p for p in self.db.list_positions(status=PositionStatus.OPEN, live_only=True)
            if p.screen_id == screen_id
        ]
        effective_max = min(
            screen.max_positions or DEFAULT_SCREEN_MAX_POSITIONS,
            self.settings.engine.default_max_positions,
        )
        slots = max(0, effective_max - len(open_for_screen))
        chosen = [o for o in opportunities if o.ticker not in held][:slots]
        if not chosen:
            logger.info("No opportunities to execute", screen_id=screen_id, slots=slots)
            return []

        if capital is None:
            capital = screen.current_capital or screen.allocated_capital or self.settings.engine.default_initial_capital
        if capital <= 0:
            raise ValidationError(f"Capital must be positive, got {capital}")
        per_position = capital / len(chosen)

        opened = []
        for opp in chosen:
            try:
                position = self._open_live(screen, opp, per_position)
            except (BrokerError, ExternalDataError, ValidationError) as e:
                logger.error("Failed to execute opportunity", ticker=opp.ticker, error=str(e))
                continue
            if position is not None:
                opened.append(position)

        logger.info("Executed opportunities", screen_id=screen_id, opened=len(opened), considered=len(chosen))
        return opened

    def _open_live(
        self, screen: ScreenCriteria, opp: EarningsOpportunity, allocation: float
    ) -> Position | None:
        price = opp.current_price or self._quote_or_raise(opp.ticker)
        quantity = math.floor(allocation / price)
        if quantity < 1:
            logger.info("Allocation too small for one share", ticker=opp.ticker, price=price)
            return None

        order = self.broker.create_order(opp.ticker, quantity, "buy")
        entry_price = order.filled_price or price
        manager = PositionManager.open(
            ticker=opp.ticker,
            quantity=quantity,
            entry_price=entry_price,
            entry_time=self.clock(),
            trailing_stop_pct=self.settings.engine.trailing_stop_pct,
            screen_id=screen.id,
            broker_order_id=order.id,
        )
        self.db.add_position(manager.position)
        self._adjust_screen_capital(screen.id, -entry_price * quantity)
        self.notifier.notify(
            "trade_opened",
            f"BUY {quantity} {opp.ticker} @ {entry_price:.2f}",
            ticker=opp.ticker,
            quantity=quantity,
            price=entry_price,
            reason=opp.reason,
        )
        return manager.position

    def monitor_positions(self, now: datetime | None = None) -> list[Trade]:
        """
        Refresh every open live position and sell the ones that hit an exit rule.

        Quote failures fall back to the position's last stored price.
        """
        engine = self.settings.engine
        now = now or self.clock()
        trades = []
        for position in self.db.list_positions(status=PositionStatus.OPEN, live_only=True):
            price = self._quote_price(position.ticker) or position.current_price
            previous = position.current_price
            manager = PositionManager(position)
            manager.on_price_update(price, now)
            dropped = bool(previous) and (previous - price) / previous * 100 >= engine.negative_news_drop_pct
            reason = manager.evaluate_exit(
                current_price=price,
                now=now,
                cutoff_hour=engine.time_cutoff_hour,
                cutoff_minute=engine.time_cutoff_minute,
                negative_news=dropped,
                profit_target_pct=engine.profit_target_pct,
            )
            if reason is None:
                self.db.update_position(position)
                continue
            try:
                trades.append(self._sell(manager, price, now, reason))
            except (BrokerError, ExternalDataError) as e:
                logger.error("Sell order failed", ticker=position.ticker, error=str(e))

        logger.info("Monitored positions", closed=len(trades))
        return trades

    def sell_position(
        self, position_id: int, reason: ExitReason = ExitReason.MANUAL, price: float | None = None
    ) -> Trade:
        """
        Close one OPEN position at the latest price.

        Raises:
            NotFoundError: If the position does not exist
            PositionStateError: If it is not OPEN
            BrokerError: If the sell order is rejected (nothing is changed)
        """
        position = self.db.get_position(position_id)
        if position is None:
            raise NotFoundError("Position", position_id)
        if position.status != PositionStatus.OPEN:
            raise PositionStateError(f"Position {position_id} is {position.status.value}, not OPEN")

        if price is None:
            price = self._quote_price(position.ticker) or position.current_price
        return self._sell(PositionManager(position), price, self.clock(), reason)

    def _sell(self, manager: PositionManager, price: float, at: datetime, reason: ExitReason) -> Trade:
        position = manager.position
        if position.run_id is None:
            order = self.broker.create_order(position.ticker, position.quantity, "sell")
            price = order.filled_price or price

        trade = manager.close(price, max(at, position.entry_time), reason)
        trade = replace(trade, id=self.db.close_position(position, trade))
        if position.screen_id is not None and position.run_id is None:
            self._adjust_screen_capital(position.screen_id, price * position.quantity)

        self.notifier.notify(
            "trade_closed",
            f"SELL {position.quantity} {position.ticker} @ {price:.2f} ({reason.value})",
            ticker=position.ticker,
            quantity=position.quantity,
            price=price,
            pnl=round(trade.realized_pnl, 2),
            reason=reason.value,
        )
        return trade

    def _adjust_screen_capital(self, screen_id: int, delta: float) -> None:
        screen = self.db.get_screen(screen_id)
        if screen is None or not screen.allocated_capital:
            return
        current = screen.current_capital if screen.current_capital is not None else screen.allocated_capital
        self.db.update_screen_capital(screen_id, current + delta)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _quote_price(self, symbol: str) -> float | None:
        try:
            return self.market_data.get_quote(symbol).price
        except ExternalDataError as e:
            logger.warning("Quote unavailable", ticker=symbol, error=str(e))
            return None

    def _quote_or_raise(self, symbol: str) -> float:
        return self.market_data.get_quote(symbol).price

    def _require_screen(self, screen_id: int) -> ScreenCriteria:
        screen = self.db.get_screen(screen_id)
        if screen is None:
            raise NotFoundError("Screen", screen_id)
        return screen

    def _require_run(self, run_id: int) -> RunRecord:
        run = self.db.get_run(run_id)
        if run is None:
            raise NotFoundError("Run", run_id)
        return run
