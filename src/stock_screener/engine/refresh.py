"""Stock snapshot refresh jobs guarded by the single refresh lock."""

import time
from datetime import date, datetime, timedelta
from typing import Any

import structlog

from stock_screener.config import DataConfig
from stock_screener.data.base import MarketDataSource
from stock_screener.data.database import Database
from stock_screener.models.enums import RefreshStatus, RefreshType
from stock_screener.models.records import RefreshLog
from stock_screener.utils.calculations import (
    calculate_data_quality,
    calculate_momentum,
    determine_data_completeness,
)
from stock_screener.utils.parallel import ParallelExecutor

logger = structlog.get_logger()

# Calendar days of history fetched to cover the 12-month momentum window
MOMENTUM_LOOKBACK_DAYS = 380

# Minimum seconds between refresh log heartbeats while a batch is in flight
HEARTBEAT_SECONDS = 30.0


class DataRefresher:
    """
    Pulls quotes (and optionally fundamentals and momentum) into stock snapshots.

    Only one refresh runs at a time across processes: the job claims the
    refresh lock first and always releases it, leaving its log COMPLETED or
    FAILED. A symbol that fails to fetch is flagged on its snapshot and
    counted, never raised. While the batch runs the log is touched at least
    every heartbeat_seconds so the watchdog does not mistake it for stale.
    """

    def __init__(
        self,
        db: Database,
        market_data: MarketDataSource,
        config: DataConfig | None = None,
        executor: ParallelExecutor | None = None,
        heartbeat_seconds: float = HEARTBEAT_SECONDS,
    ):
        self.db = db
        self.market_data = market_data
        self.config = config or DataConfig()
        self.executor = executor or ParallelExecutor(max_workers=self.config.max_workers)
        self.heartbeat_seconds = heartbeat_seconds

    def refresh(
        self,
        symbols: list[str] | None = None,
        refresh_type: RefreshType = RefreshType.MANUAL_REFRESH,
        include_fundamentals: bool = True,
        include_momentum: bool = False,
        today: date | None = None,
    ) -> RefreshLog:
        """
        Refresh snapshots for the given symbols, or every known symbol.

        Raises:
            PersistenceConflictError: If another refresh holds the lock
        """
        log_id = self.db.acquire_refresh_lock(refresh_type)
        counts = {"processed": 0, "updated": 0, "skipped": 0, "failed": 0}
        try:
            if symbols is None:
                symbols = self.db.list_symbols(stale_first=True)
            symbols = list(dict.fromkeys(s.upper() for s in symbols))
            today = today or date.today()
            logger.info("Starting refresh", log_id=log_id, symbols=len(symbols), refresh_type=refresh_type.value)

            summary = self.executor.execute(
                lambda symbol: self._fetch(symbol, include_fundamentals, include_momentum, today),
                symbols,
                on_progress=self._heartbeat(log_id),
            )
            logger.debug("Fetched refresh batch", log_id=log_id, fetched=summary.succeeded, failed=summary.failed)
            existing = self.db.get_stocks(symbols)
            for symbol, result in summary.results.items():
                counts["processed"] += 1
                if not result.success:
                    counts["failed"] += 1
                    if symbol in existing:
                        self.db.mark_stock_error(symbol, result.error or "fetch failed")
                    logger.warning("Refresh failed for symbol", ticker=symbol, error=result.error)
                    continue

                fields = self._merge(existing.get(symbol), result.result)
                if fields is None:
                    counts["skipped"] += 1
                    continue
                self.db.upsert_stock(symbol, fields)
                counts["updated"] += 1

            self.db.update_refresh_progress(log_id, counts)
        except Exception as e:
            logger.error("Refresh failed", log_id=log_id, error=str(e))
            self.db.update_refresh_progress(log_id, counts)
            self.db.release_refresh_lock(log_id, RefreshStatus.FAILED, str(e))
            raise

        self.db.release_refresh_lock(log_id, RefreshStatus.COMPLETED)
        logger.info("Refresh complete", log_id=log_id, **counts)
        return self.db.get_refresh_log(log_id)

    def _heartbeat(self, log_id: int):
        """Progress callback that writes running counts to the log, throttled."""
        progress = {"processed": 0, "failed": 0}
        last_beat = time.monotonic()

        def on_progress(completed, total, symbol, result):
            nonlocal last_beat
            progress["processed"] = completed
            if not result.success:
                progress["failed"] += 1
            now = time.monotonic()
            if now - last_beat >= self.heartbeat_seconds:
                self.db.update_refresh_progress(log_id, progress)
                last_beat = now

        return on_progress

    def _fetch(
        self, symbol: str, include_fundamentals: bool, include_momentum: bool, today: date
    ) -> dict[str, Any]:
        quote = self.market_data.get_quote(symbol)
        fields: dict[str, Any] = {
            "current_price": quote.price,
            "previous_close": quote.previous_close,
            "volume": quote.volume,
            "market_cap": quote.market_cap,
            "company_name": quote.name,
        }
        if include_fundamentals:
            fields.update(self.market_data.get_fundamentals(symbol))
        if include_momentum:
            close = self.market_data.get_close_series(
                symbol, today - timedelta(days=MOMENTUM_LOOKBACK_DAYS), today
            )
            if close is not None:
                fields.update(calculate_momentum(close))
        return {k: v for k, v in fields.items() if v is not None}

    @staticmethod
    def _merge(snapshot, fetched: dict[str, Any]) -> dict[str, Any] | None:
        """New snapshot fields, or None when the fetch brought nothing usable."""
        if not fetched.get("current_price"):
            return None

        merged: dict[str, Any] = {}
        if snapshot is not None:
            for name in (
                "company_name", "sector", "pe_ratio", "ps_ratio", "pb_ratio", "pcf_ratio",
                "roe", "debt_to_equity", "current_ratio", "revenue_growth",
                "earnings_growth", "dividend_yield", "market_cap", "volume",
                "momentum_1m", "momentum_3m", "momentum_6m", "momentum_12m",
            ):
                value = getattr(snapshot, name)
                if value is not None:
                    merged[name] = value
        merged.update(fetched)
        merged["data_quality"] = calculate_data_quality(merged)
        merged["data_completeness"] = determine_data_completeness(merged)
        merged["has_error"] = False
        merged["error_message"] = None
        merged["last_updated"] = datetime.now()
        return merged
