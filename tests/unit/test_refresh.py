"""Unit tests for DataRefresher."""

from datetime import date
from unittest.mock import Mock

import pytest

from stock_screener.config import DataConfig
from stock_screener.engine.refresh import DataRefresher
from stock_screener.errors import PersistenceConflictError
from stock_screener.models.enums import DataCompleteness, RefreshStatus, RefreshType
from tests.conftest import add_stock, make_bars


@pytest.fixture
def refresher(temp_db, market_data):
    return DataRefresher(temp_db, market_data, DataConfig(max_workers=2, rate_limit_delay=0))


class TestDataRefresher:
    def test_counts_and_error_flag(self, refresher, temp_db, market_data):
        add_stock(temp_db, "CCC")
        market_data.quotes = {"AAA": 50.0, "BBB": 20.0, "CCC": 5.0}
        market_data.failing.add("CCC")
        market_data.fundamentals = {"AAA": {"pe_ratio": 12.0, "sector": "Energy"}}

        log = refresher.refresh(["aaa", "bbb", "ccc"])

        assert log.status == RefreshStatus.COMPLETED
        assert (log.stocks_processed, log.stocks_updated, log.stocks_failed) == (3, 2, 1)
        assert temp_db.get_stock("AAA").pe_ratio == 12.0
        assert temp_db.get_stock("AAA").sector == "Energy"
        failed = temp_db.get_stock("CCC")
        assert failed.has_error is True
        assert "No quote" in failed.error_message

    def test_unknown_failing_symbol_not_created(self, refresher, temp_db):
        log = refresher.refresh(["NOPE"])

        assert log.stocks_failed == 1
        assert temp_db.get_stock("NOPE") is None

    def test_existing_fields_kept_and_error_cleared(self, refresher, temp_db, market_data):
        add_stock(temp_db, "AAA", sector="Technology", roe=21.0)
        temp_db.mark_stock_error("AAA", "timeout")
        market_data.quotes = {"AAA": 75.0}

        refresher.refresh(["AAA"], include_fundamentals=False)

        snapshot = temp_db.get_stock("AAA")
        assert snapshot.current_price == 75.0
        assert snapshot.sector == "Technology"
        assert snapshot.roe == 21.0
        assert snapshot.has_error is False
        assert snapshot.error_message is None

    def test_zero_price_skipped(self, refresher, temp_db, market_data):
        market_data.quotes = {"ZERO": 0.0}

        log = refresher.refresh(["ZERO"])

        assert log.stocks_skipped == 1
        assert temp_db.get_stock("ZERO") is None

    def test_defaults_to_every_known_symbol(self, refresher, temp_db, market_data):
        add_stock(temp_db, "AAA")
        add_stock(temp_db, "BBB")
        market_data.quotes = {"AAA": 1.0, "BBB": 2.0}

        log = refresher.refresh()

        assert log.stocks_updated == 2

    def test_quality_recomputed(self, refresher, temp_db, market_data):
        market_data.quotes = {"AAA": 50.0}
        market_data.fundamentals = {"AAA": {"pe_ratio": 10.0, "market_cap": 1e9, "volume": 1e6}}

        refresher.refresh(["AAA"])

        snapshot = temp_db.get_stock("AAA")
        assert snapshot.data_quality == round(4 / 14 * 100)
        assert snapshot.data_completeness == DataCompleteness.PARTIAL

    def test_momentum(self, refresher, temp_db, market_data):
        closes = [100.0 + i for i in range(70)]
        market_data.quotes = {"AAA": closes[-1]}
        market_data.bars = {"AAA": make_bars(closes, start="2024-09-02")}

        refresher.refresh(["AAA"], include_fundamentals=False, include_momentum=True, today=date(2024, 12, 31))

        snapshot = temp_db.get_stock("AAA")
        assert snapshot.momentum_1m == pytest.approx((169 - 149) / 149 * 100, abs=1e-3)
        assert snapshot.momentum_3m == pytest.approx((169 - 107) / 107 * 100, abs=1e-3)
        assert snapshot.momentum_6m is None

    def test_lock_conflict(self, refresher, temp_db):
        temp_db.acquire_refresh_lock(RefreshType.FULL_REFRESH)

        with pytest.raises(PersistenceConflictError):
            refresher.refresh(["AAA"])

    def test_failure_releases_lock(self, refresher, temp_db, monkeypatch):
        monkeypatch.setattr(refresher.executor, "execute", Mock(side_effect=RuntimeError("pool broken")))

        with pytest.raises(RuntimeError):
            refresher.refresh(["AAA"])

        log = temp_db.list_refresh_logs()[0]
        assert log.status == RefreshStatus.FAILED
        assert log.error_message == "pool broken"
        temp_db.acquire_refresh_lock(RefreshType.MANUAL_REFRESH)

    def test_heartbeat_during_batch(self, temp_db, market_data, monkeypatch):
        market_data.quotes = {"AAA": 50.0, "BBB": 20.0, "CCC": 5.0}
        market_data.failing.add("AAA")
        seen = []
        original = market_data.get_quote

        def get_quote(symbol):
            seen.append(temp_db.list_refresh_logs()[0])
            return original(symbol)

        monkeypatch.setattr(market_data, "get_quote", get_quote)
        refresher = DataRefresher(
            temp_db, market_data, DataConfig(max_workers=1, rate_limit_delay=0), heartbeat_seconds=0
        )

        refresher.refresh(["AAA", "BBB", "CCC"], include_fundamentals=False)

        assert [log.stocks_processed for log in seen] == [0, 1, 2]
        assert seen[2].stocks_failed == 1
        assert seen[1].last_update > seen[0].last_update
        assert seen[2].last_update > seen[1].last_update

    def test_heartbeat_throttled(self, temp_db, market_data, monkeypatch):
        market_data.quotes = {"AAA": 50.0, "BBB": 20.0}
        seen = []
        original = market_data.get_quote

        def get_quote(symbol):
            seen.append(temp_db.list_refresh_logs()[0])
            return original(symbol)

        monkeypatch.setattr(market_data, "get_quote", get_quote)
        refresher = DataRefresher(
            temp_db, market_data, DataConfig(max_workers=1, rate_limit_delay=0), heartbeat_seconds=3600
        )

        log = refresher.refresh(["AAA", "BBB"], include_fundamentals=False)

        assert [entry.stocks_processed for entry in seen] == [0, 0]
        assert log.stocks_processed == 2
