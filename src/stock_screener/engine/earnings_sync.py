"""Earnings calendar synchronization from the FMP earnings endpoint."""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Protocol

import structlog

from stock_screener.data.database import Database
from stock_screener.errors import PersistenceConflictError, ValidationError
from stock_screener.models.records import EarningsRecord

logger = structlog.get_logger()

# Default sync window looks this many days ahead of today
DEFAULT_WINDOW_DAYS = 30


class EarningsCalendarSource(Protocol):
    def get_earnings_calendar(self, start: date, end: date) -> list[EarningsRecord]: ...


@dataclass
class SyncResult:
    """Counts from one calendar sync."""

    added: int = 0
    updated: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"added": self.added, "updated": self.updated, "skipped": self.skipped}


class EarningsCalendarSync:
    """
    Mirrors the external earnings calendar into the data store.

    New events are inserted. An event whose actual EPS just became available
    gets its one-time actual/beat/surprise update. Everything else, including
    events already reported, is left untouched.
    """

    def __init__(self, db: Database, source: EarningsCalendarSource):
        self.db = db
        self.source = source

    def sync(self, start: date | None = None, end: date | None = None) -> SyncResult:
        """
        Sync the calendar between start (default today) and end (default start + 30 days).

        Raises:
            ValidationError: If end is before start
            ExternalDataError: If the calendar cannot be fetched
        """
        start = start or date.today()
        end = end or start + timedelta(days=DEFAULT_WINDOW_DAYS)
        if end < start:
            raise ValidationError(f"End date {end} is before start date {start}")

        result = SyncResult()
        for record in self.source.get_earnings_calendar(start, end):
            existing = self.db.get_earnings(record.symbol, record.earnings_date)
            if existing is None:
                try:
                    self.db.add_earnings(record)
                    result.added += 1
                except PersistenceConflictError:
                    # Duplicate row in the same feed
                    result.skipped += 1
                continue

            if not existing.is_reported and record.is_reported:
                if self.db.record_earnings_actual(existing.with_actual(record.actual_eps)):
                    result.updated += 1
                    continue
            result.skipped += 1

        logger.info("Earnings calendar synced", start=str(start), end=str(end), **result.to_dict())
        return result
