"""Unit tests for earnings calendar synchronization."""

from datetime import date

import pytest

from stock_screener.engine.earnings_sync import EarningsCalendarSync
from stock_screener.errors import ValidationError
from stock_screener.models.records import EarningsRecord

DAY = date(2024, 4, 25)


class StaticCalendar:
    """Calendar source returning a fixed list of records."""

    def __init__(self, records):
        self.records = records
        self.requested = []

    def get_earnings_calendar(self, start, end):
        self.requested.append((start, end))
        return list(self.records)


class TestEarningsCalendarSync:
    def test_new_records_added(self, temp_db):
        source = StaticCalendar([
            EarningsRecord.create("AAA", DAY, 1.0),
            EarningsRecord.create("BBB", DAY, 2.0, 2.5),
        ])

        result = EarningsCalendarSync(temp_db, source).sync(DAY, DAY)

        assert result.to_dict() == {"added": 2, "updated": 0, "skipped": 0}
        assert temp_db.get_earnings("BBB", DAY).beat is True

    def test_actual_applied_once(self, temp_db):
        temp_db.add_earnings(EarningsRecord.create("AAA", DAY, 1.0))
        temp_db.add_earnings(EarningsRecord.create("BBB", DAY, 2.0, 2.5))
        source = StaticCalendar([
            EarningsRecord.create("AAA", DAY, 1.0, 0.8),
            EarningsRecord.create("BBB", DAY, 2.0, 9.9),
        ])
        sync = EarningsCalendarSync(temp_db, source)

        first = sync.sync(DAY, DAY)
        second = sync.sync(DAY, DAY)

        assert (first.updated, first.skipped) == (1, 1)
        assert second.to_dict() == {"added": 0, "updated": 0, "skipped": 2}
        stored = temp_db.get_earnings("AAA", DAY)
        assert stored.actual_eps == 0.8
        assert stored.beat is False
        assert stored.surprise == pytest.approx(-20.0)
        assert temp_db.get_earnings("BBB", DAY).actual_eps == 2.5

    def test_duplicate_in_feed_skipped(self, temp_db):
        record = EarningsRecord.create("AAA", DAY, 1.0)
        source = StaticCalendar([record, record])

        result = EarningsCalendarSync(temp_db, source).sync(DAY, DAY)

        assert (result.added, result.skipped) == (1, 1)

    def test_default_window(self, temp_db):
        source = StaticCalendar([])

        EarningsCalendarSync(temp_db, source).sync(DAY)

        assert source.requested == [(DAY, date(2024, 5, 25))]

    def test_reversed_window(self, temp_db):
        with pytest.raises(ValidationError):
            EarningsCalendarSync(temp_db, StaticCalendar([])).sync(DAY, date(2024, 4, 1))
