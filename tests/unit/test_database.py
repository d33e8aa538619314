"""Unit tests for the SQLite store."""

from datetime import date, datetime, timedelta

import pytest

from stock_screener.errors import NotFoundError, PersistenceConflictError, PositionStateError
from stock_screener.models.enums import (
    ExitReason,
    PositionStatus,
    RefreshStatus,
    RefreshType,
    RunStatus,
    RunType,
    ScreenType,
)
from stock_screener.models.records import (
    EarningsRecord,
    FactorBound,
    RunAggregates,
    RunRecord,
    ScreenCriteria,
    WatchlistEntry,
)
from stock_screener.trading.position import PositionManager
from tests.conftest import add_stock


def new_run(db, screen_id, run_type=RunType.HISTORICAL) -> RunRecord:
    return db.create_run(
        RunRecord(
            id=None,
            name="test run",
            screen_id=screen_id,
            run_type=run_type,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
            starting_capital=10_000.0,
            max_positions=3,
            trailing_stop_pct=10.0,
        )
    )


def aggregates(final_capital=10_500.0) -> RunAggregates:
    return RunAggregates(
        final_capital=final_capital,
        total_return=5.0,
        total_return_dollars=500.0,
        total_trades=2,
        winning_trades=1,
        losing_trades=1,
        win_rate=50.0,
        avg_win_amount=700.0,
        avg_loss_amount=-200.0,
        avg_hold_time_days=1.5,
        profit_factor=3.5,
    )


class TestStocks:
    def test_upsert_and_get(self, temp_db):
        add_stock(temp_db, "aapl", pe_ratio="28.5", sector="Technology")

        snapshot = temp_db.get_stock("AAPL")

        assert snapshot.symbol == "AAPL"
        assert snapshot.pe_ratio == 28.5
        assert snapshot.sector == "Technology"
        assert snapshot.has_error is False

    def test_error_flag_removes_from_universe(self, temp_db):
        add_stock(temp_db, "AAA")
        add_stock(temp_db, "BBB")

        temp_db.mark_stock_error("AAA", "delisted")

        assert [s.symbol for s in temp_db.get_screening_universe()] == ["BBB"]
        assert temp_db.get_stock("AAA").error_message == "delisted"

    def test_universe_quality_floor(self, temp_db):
        add_stock(temp_db, "GOOD", data_quality=70)
        add_stock(temp_db, "POOR", data_quality=20)

        assert [s.symbol for s in temp_db.get_screening_universe(30)] == ["GOOD"]


class TestScreens:
    def test_roundtrip(self, temp_db):
        screen = ScreenCriteria(
            id=None,
            name="Growth",
            factors={"revenue_growth": FactorBound(min=10.0, weight=2.0), "pe_ratio": FactorBound()},
            screen_type=ScreenType.GROWTH,
            min_score=4.5,
            max_positions=4,
        )
        screen_id = temp_db.save_screen(screen)

        loaded = temp_db.get_screen(screen_id)

        assert loaded.name == "Growth"
        assert loaded.screen_type == ScreenType.GROWTH
        assert loaded.factors["revenue_growth"] == FactorBound(min=10.0, weight=2.0)
        assert set(loaded.bounded_factors) == {"revenue_growth"}
        assert loaded.min_score == 4.5
        assert loaded.max_positions == 4

    def test_update_missing_screen(self, temp_db):
        with pytest.raises(NotFoundError):
            temp_db.save_screen(ScreenCriteria(id=42, name="ghost"))

    def test_active_filter(self, temp_db, value_screen):
        temp_db.save_screen(ScreenCriteria(id=None, name="Paused", is_active=False))

        assert [s.name for s in temp_db.list_screens(active_only=True)] == [value_screen.name]
        assert len(temp_db.list_screens()) == 2


class TestWatchlist:
    def test_upsert_keeps_date_added(self, temp_db, value_screen):
        added = datetime(2024, 1, 2, 9, 30)
        assert temp_db.upsert_watchlist_entry(
            WatchlistEntry(ticker="AAA", screen_id=value_screen.id, score=6.0, date_added=added)
        )

        inserted = temp_db.upsert_watchlist_entry(
            WatchlistEntry(ticker="AAA", screen_id=value_screen.id, score=8.0)
        )

        entry = temp_db.get_watchlist(value_screen.id)[0]
        assert inserted is False
        assert entry.score == 8.0
        assert entry.date_added == added

    def test_remove(self, temp_db, value_screen):
        temp_db.upsert_watchlist_entry(WatchlistEntry(ticker="AAA", screen_id=value_screen.id, score=6.0))

        assert temp_db.remove_watchlist_entry("aaa", value_screen.id) is True
        assert temp_db.remove_watchlist_entry("AAA", value_screen.id) is False


class TestEarnings:
    def test_duplicate_rejected(self, temp_db):
        record = EarningsRecord.create("AAA", date(2024, 4, 25), 1.0)
        temp_db.add_earnings(record)

        with pytest.raises(PersistenceConflictError):
            temp_db.add_earnings(record)

    def test_actual_recorded_once(self, temp_db):
        record = EarningsRecord.create("AAA", date(2024, 4, 25), 1.0)
        temp_db.add_earnings(record)

        assert temp_db.record_earnings_actual(record.with_actual(1.2)) is True
        assert temp_db.record_earnings_actual(record.with_actual(0.5)) is False

        stored = temp_db.get_earnings("AAA", date(2024, 4, 25))
        assert stored.actual_eps == 1.2
        assert stored.beat is True
        assert stored.surprise == pytest.approx(20.0)

    def test_window_query(self, temp_db):
        for day in (1, 10, 20):
            temp_db.add_earnings(EarningsRecord.create("AAA", date(2024, 4, day), 1.0))
        temp_db.add_earnings(EarningsRecord.create("ZZZ", date(2024, 4, 10), 1.0))

        records = temp_db.get_earnings_for_symbols(["aaa"], date(2024, 4, 5), date(2024, 4, 20))

        assert [r.earnings_date.day for r in records] == [10, 20]


class TestRuns:
    def test_create_and_finalize(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)
        assert run.status == RunStatus.RUNNING

        temp_db.finalize_run(run.id, RunStatus.COMPLETED, aggregates())

        stored = temp_db.get_run(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.current_capital == 10_500.0
        assert stored.aggregates.profit_factor == 3.5
        assert stored.completed_at is not None

    def test_finalize_twice_conflicts(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)
        temp_db.finalize_run(run.id, RunStatus.STOPPED, aggregates())

        with pytest.raises(PersistenceConflictError):
            temp_db.finalize_run(run.id, RunStatus.FAILED, error_message="late")
        assert temp_db.get_run(run.id).status == RunStatus.STOPPED

    def test_finalize_requires_terminal_status(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)

        with pytest.raises(ValueError):
            temp_db.finalize_run(run.id, RunStatus.RUNNING)

    def test_stop_request(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)
        assert temp_db.is_stop_requested(run.id) is False

        assert temp_db.request_stop(run.id) is True
        assert temp_db.is_stop_requested(run.id) is True

        temp_db.finalize_run(run.id, RunStatus.STOPPED)
        assert temp_db.request_stop(run.id) is False

    def test_stale_runs(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)

        assert temp_db.get_stale_runs(timedelta(minutes=15)) == []
        assert [r.id for r in temp_db.get_stale_runs(timedelta(seconds=-1))] == [run.id]


class TestPositions:
    def open_position(self, db, run_id=None):
        manager = PositionManager.open("AAA", 10, 100.0, datetime(2024, 1, 2, 10, 0), 10.0, run_id=run_id)
        db.add_position(manager.position)
        return manager

    def test_close_records_trade(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)
        manager = self.open_position(temp_db, run.id)
        trade = manager.close(110.0, datetime(2024, 1, 3, 10, 0), ExitReason.PROFIT_TARGET)

        trade_id = temp_db.close_position(manager.position, trade)

        stored = temp_db.get_position(manager.position.id)
        assert stored.status == PositionStatus.CLOSED
        assert stored.exit_price == 110.0
        trades = temp_db.get_trades(run.id)
        assert [t.id for t in trades] == [trade_id]
        assert trades[0].realized_pnl == 100.0
        assert trades[0].exit_reason == ExitReason.PROFIT_TARGET
        assert trades[0].hold_time_minutes == 1440

    def test_close_twice_rejected(self, temp_db):
        manager = self.open_position(temp_db)
        trade = manager.close(95.0, datetime(2024, 1, 2, 11, 0), ExitReason.MANUAL)
        temp_db.close_position(manager.position, trade)

        with pytest.raises(PositionStateError):
            temp_db.close_position(manager.position, trade)
        assert len(temp_db.get_trades()) == 1

    def test_update_ignores_closed(self, temp_db):
        manager = self.open_position(temp_db)
        trade = manager.close(95.0, datetime(2024, 1, 2, 11, 0), ExitReason.MANUAL)
        temp_db.close_position(manager.position, trade)

        manager.position.current_price = 500.0
        temp_db.update_position(manager.position)

        assert temp_db.get_position(manager.position.id).current_price == 95.0

    def test_live_filter(self, temp_db, value_screen):
        run = new_run(temp_db, value_screen.id)
        self.open_position(temp_db, run.id)
        live = self.open_position(temp_db)

        positions = temp_db.list_positions(PositionStatus.OPEN, live_only=True)

        assert [p.id for p in positions] == [live.position.id]


class TestRefreshLock:
    def test_lock_is_exclusive(self, temp_db):
        log_id = temp_db.acquire_refresh_lock(RefreshType.FULL_REFRESH)

        with pytest.raises(PersistenceConflictError):
            temp_db.acquire_refresh_lock(RefreshType.MANUAL_REFRESH)

        temp_db.release_refresh_lock(log_id, RefreshStatus.COMPLETED)
        second = temp_db.acquire_refresh_lock(RefreshType.MANUAL_REFRESH)
        assert second != log_id

    def test_rejected_acquire_leaves_no_log(self, temp_db):
        temp_db.acquire_refresh_lock(RefreshType.FULL_REFRESH)

        with pytest.raises(PersistenceConflictError):
            temp_db.acquire_refresh_lock(RefreshType.MANUAL_REFRESH)

        assert len(temp_db.list_refresh_logs()) == 1

    def test_progress_and_release(self, temp_db):
        log_id = temp_db.acquire_refresh_lock(RefreshType.DELTA_REFRESH)
        temp_db.update_refresh_progress(log_id, {"processed": 3, "updated": 2, "failed": 1})
        temp_db.release_refresh_lock(log_id, RefreshStatus.FAILED, "boom")

        log = temp_db.get_refresh_log(log_id)
        assert log.status == RefreshStatus.FAILED
        assert (log.stocks_processed, log.stocks_updated, log.stocks_failed) == (3, 2, 1)
        assert log.error_message == "boom"
        assert log.end_time is not None

    def test_stale_refresh_frees_lock(self, temp_db):
        log_id = temp_db.acquire_refresh_lock(RefreshType.FULL_REFRESH)

        assert temp_db.fail_stale_refreshes(timedelta(minutes=15), "stale") == 0
        assert temp_db.fail_stale_refreshes(timedelta(seconds=-1), "stale") == 1

        assert temp_db.get_refresh_log(log_id).status == RefreshStatus.FAILED
        temp_db.acquire_refresh_lock(RefreshType.MANUAL_REFRESH)
