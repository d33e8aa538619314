"""Unit tests for the position state machine."""

from datetime import datetime, timedelta

import pytest

from stock_screener.errors import PositionStateError, ValidationError
from stock_screener.models.enums import ExitReason, PositionStatus
from stock_screener.trading.position import PositionManager, stop_price_for

ENTRY = datetime(2024, 3, 4, 10, 0)


@pytest.fixture
def manager() -> PositionManager:
    return PositionManager.open(
        ticker="TEST",
        quantity=10,
        entry_price=100.0,
        entry_time=ENTRY,
        trailing_stop_pct=10.0,
    )


class TestTrailingStop:
    """The stop only ever ratchets upward."""

    def test_initial_stop(self, manager):
        assert manager.position.status == PositionStatus.OPEN
        assert manager.position.trailing_stop_price == pytest.approx(90.0)

    def test_ratchet_up_then_hold(self, manager):
        manager.on_price_update(120.0, ENTRY + timedelta(hours=1))
        assert manager.position.trailing_stop_price == pytest.approx(108.0)

        manager.on_price_update(95.0, ENTRY + timedelta(hours=2))
        assert manager.position.trailing_stop_price == pytest.approx(108.0)
        assert manager.position.unrealized_pnl == pytest.approx(-50.0)

    def test_stop_never_decreases(self, manager):
        stops = []
        for price in [101, 130, 80, 125, 140, 60, 139, 141]:
            manager.on_price_update(float(price), ENTRY)
            stops.append(manager.position.trailing_stop_price)

        assert stops == sorted(stops)
        assert stops[-1] == pytest.approx(stop_price_for(141.0, 10.0))


class TestEvaluateExit:
    """Exit rules fire in priority order."""

    def test_stop_loss_beats_negative_news(self, manager):
        reason = manager.evaluate_exit(current_price=89.0, now=ENTRY, negative_news=True)
        assert reason == ExitReason.STOP_LOSS

    def test_negative_news(self, manager):
        reason = manager.evaluate_exit(current_price=99.0, now=ENTRY, negative_news=True)
        assert reason == ExitReason.NEGATIVE_NEWS

    def test_news_beats_cutoff(self, manager):
        late = ENTRY.replace(hour=15, minute=50)
        reason = manager.evaluate_exit(99.0, late, cutoff_hour=15, cutoff_minute=45, negative_news=True)
        assert reason == ExitReason.NEGATIVE_NEWS

    def test_time_cutoff(self, manager):
        at_cutoff = ENTRY.replace(hour=15, minute=45)
        before_cutoff = ENTRY.replace(hour=15, minute=44)

        assert manager.evaluate_exit(101.0, at_cutoff, cutoff_hour=15, cutoff_minute=45) == ExitReason.TIME_CUTOFF
        assert manager.evaluate_exit(101.0, before_cutoff, cutoff_hour=15, cutoff_minute=45) is None

    def test_max_hold_days(self, manager):
        assert manager.evaluate_exit(101.0, ENTRY + timedelta(days=5), max_hold_days=5) == ExitReason.TIME_CUTOFF
        assert manager.evaluate_exit(101.0, ENTRY + timedelta(days=4), max_hold_days=5) is None

    def test_profit_target_after_other_rules(self, manager):
        assert manager.evaluate_exit(120.0, ENTRY, profit_target_pct=20.0) == ExitReason.PROFIT_TARGET
        assert manager.evaluate_exit(119.0, ENTRY, profit_target_pct=20.0) is None

    def test_hold(self, manager):
        assert manager.evaluate_exit(current_price=100.0, now=ENTRY) is None


class TestClose:
    def test_close_produces_trade(self, manager):
        exit_time = ENTRY + timedelta(hours=3, minutes=30)

        trade = manager.close(110.0, exit_time, ExitReason.PROFIT_TARGET)

        assert trade.realized_pnl == pytest.approx(100.0)
        assert trade.hold_time_minutes == 210
        assert trade.exit_reason == ExitReason.PROFIT_TARGET
        assert manager.position.status == PositionStatus.CLOSED
        assert manager.position.exit_price == 110.0

    def test_closed_is_terminal(self, manager):
        manager.close(95.0, ENTRY + timedelta(minutes=5), ExitReason.MANUAL)

        with pytest.raises(PositionStateError):
            manager.on_price_update(100.0)
        with pytest.raises(PositionStateError):
            manager.evaluate_exit(100.0, ENTRY)
        with pytest.raises(PositionStateError):
            manager.close(100.0, ENTRY + timedelta(minutes=10), ExitReason.MANUAL)

    def test_exit_before_entry_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.close(100.0, ENTRY - timedelta(minutes=1), ExitReason.MANUAL)


class TestLifecycle:
    def test_pending_then_activate(self):
        manager = PositionManager.pending("TEST", 5, 15.0)
        assert manager.position.status == PositionStatus.PENDING

        manager.activate(50.0, ENTRY)

        assert manager.is_open
        assert manager.position.trailing_stop_price == pytest.approx(42.5)

    def test_activate_twice_rejected(self, manager):
        with pytest.raises(PositionStateError):
            manager.activate(100.0, ENTRY)

    @pytest.mark.parametrize("quantity,stop_pct", [(0, 10.0), (10, 0.0), (10, 100.0)])
    def test_invalid_parameters(self, quantity, stop_pct):
        with pytest.raises(ValidationError):
            PositionManager.pending("TEST", quantity, stop_pct)

    def test_non_positive_entry_price(self):
        with pytest.raises(ValidationError):
            PositionManager.open("TEST", 10, 0.0, ENTRY, 10.0)
