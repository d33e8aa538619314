"""Unit tests for earnings opportunity detection."""

from datetime import date

import pytest

from stock_screener.errors import NotFoundError, ValidationError
from stock_screener.models.records import EarningsRecord, WatchlistEntry
from stock_screener.scanners.earnings import EarningsDetector, is_qualified_beat
from tests.conftest import add_stock

DAY = date(2024, 4, 25)


def watch(db, screen_id, *tickers):
    for i, ticker in enumerate(tickers):
        db.upsert_watchlist_entry(WatchlistEntry(ticker=ticker, screen_id=screen_id, score=9.0 - i))


def earnings(db, symbol, estimated, actual=None, on=DAY):
    db.add_earnings(EarningsRecord.create(symbol, on, estimated, actual))


@pytest.fixture
def calendar(temp_db, earnings_screen):
    watch(temp_db, earnings_screen.id, "AAA", "BBB", "CCC", "DDD", "EEE")
    earnings(temp_db, "AAA", 1.00, 1.10)  # +10% beat
    earnings(temp_db, "BBB", 1.00, 1.03)  # +3% beat, below threshold
    earnings(temp_db, "CCC", 1.00, 0.90)  # miss
    earnings(temp_db, "DDD", 1.00)  # not reported yet
    earnings(temp_db, "EEE", 1.00, 1.50, on=date(2024, 5, 30))  # outside window
    earnings(temp_db, "ZZZ", 1.00, 2.00)  # not on the watchlist
    return temp_db


class TestIsQualifiedBeat:
    def test_threshold_inclusive(self):
        record = EarningsRecord.create("AAA", DAY, 1.00, 1.05)
        assert is_qualified_beat(record, 5.0) is True
        assert is_qualified_beat(record, 5.1) is False

    def test_unreported(self):
        assert is_qualified_beat(EarningsRecord.create("AAA", DAY, 1.00), 5.0) is False

    def test_surprise_alone_decides(self):
        miss = EarningsRecord.create("AAA", DAY, 1.00, 0.50)
        assert miss.beat is False
        assert is_qualified_beat(miss, 5.0) is False
        assert is_qualified_beat(miss, -50.0) is True

    def test_zero_estimate_never_qualifies(self):
        assert is_qualified_beat(EarningsRecord.create("AAA", DAY, 0.0, 0.25), 0.0) is False


class TestEarningsDetector:
    def test_opportunities_and_summary(self, calendar, earnings_screen):
        scan = EarningsDetector(calendar).scan(earnings_screen.id, DAY)

        assert [o.ticker for o in scan.opportunities] == ["AAA"]
        opp = scan.opportunities[0]
        assert opp.surprise == pytest.approx(10.0)
        assert opp.reason == "Earnings beat by 10.0%"

        summary = scan.summary
        assert summary.total_monitored == 5
        assert summary.scheduled == 4
        assert summary.reported == 3
        assert summary.beats == 2
        assert summary.qualified_beats == 1
        assert summary.misses == 1
        assert summary.pending == 1

    def test_sorted_by_surprise(self, calendar, earnings_screen):
        earnings(calendar, "BBB", 2.00, 2.40, on=date(2024, 4, 26))  # +20%

        opportunities = EarningsDetector(calendar).identify_opportunities(
            earnings_screen.id, DAY, date(2024, 4, 26)
        )

        assert [o.ticker for o in opportunities] == ["BBB", "AAA"]

    def test_current_price_from_snapshot(self, calendar, earnings_screen):
        add_stock(calendar, "AAA", current_price=42.0)

        opp = EarningsDetector(calendar).identify_opportunities(earnings_screen.id, DAY)[0]

        assert opp.current_price == 42.0
        assert opp.company_name == "AAA Inc"

    def test_errored_stock_skipped(self, calendar, earnings_screen):
        add_stock(calendar, "AAA")
        calendar.mark_stock_error("AAA", "halted")

        assert EarningsDetector(calendar).identify_opportunities(earnings_screen.id, DAY) == []

    def test_empty_watchlist(self, temp_db, earnings_screen):
        scan = EarningsDetector(temp_db).scan(earnings_screen.id, DAY)

        assert scan.opportunities == []
        assert scan.summary.total_monitored == 0

    def test_missing_screen(self, temp_db):
        with pytest.raises(NotFoundError):
            EarningsDetector(temp_db).scan(999, DAY)

    def test_reversed_window(self, calendar, earnings_screen):
        with pytest.raises(ValidationError):
            EarningsDetector(calendar).scan(earnings_screen.id, DAY, date(2024, 4, 1))
