"""Earnings opportunity detection for a screen's watchlist."""

from datetime import date

import structlog

from stock_screener.data.database import Database
from stock_screener.errors import NotFoundError, ValidationError
from stock_screener.models.records import (
    EarningsOpportunity,
    EarningsRecord,
    EarningsScan,
    EarningsSummary,
)
from stock_screener.utils.calculations import to_float

logger = structlog.get_logger()


def is_qualified_beat(record: EarningsRecord, min_surprise: float) -> bool:
    """A reported result whose surprise reaches the screen threshold."""
    return record.surprise is not None and record.surprise >= min_surprise


class EarningsDetector:
    """
    Cross-references a screen's watchlist with the earnings calendar.

    Read-only: nothing is persisted. Tickers with no earnings in the window,
    unreported earnings or misses are excluded from the opportunities but
    counted in the summary.
    """

    def __init__(self, db: Database):
        self.db = db

    def scan(
        self,
        screen_id: int,
        start: date | None = None,
        end: date | None = None,
    ) -> EarningsScan:
        """
        Find qualifying earnings beats for a screen's watchlist.

        Args:
            screen_id: Screen whose watchlist is monitored
            start: First earnings date to consider (default: today)
            end: Last earnings date to consider (default: start)

        Returns:
            EarningsScan with opportunities (largest surprise first) and summary counts

        Raises:
            NotFoundError: If the screen does not exist
            ValidationError: If end is before start
        """
        screen = self.db.get_screen(screen_id)
        if screen is None:
            raise NotFoundError("Screen", screen_id)

        start = start or date.today()
        end = end or start
        if end < start:
            raise ValidationError(f"End date {end} is before start date {start}")

        tickers = [entry.ticker for entry in self.db.get_watchlist(screen_id)]
        summary = EarningsSummary(total_monitored=len(tickers))
        scan = EarningsScan(screen_id=screen_id, summary=summary)
        if not tickers:
            logger.info("No watchlist items to monitor", screen_id=screen_id)
            return scan

        records = self.db.get_earnings_for_symbols(tickers, start, end)
        best: dict[str, EarningsRecord] = {}
        for record in records:
            summary.scheduled += 1
            if not record.is_reported:
                summary.pending += 1
                continue
            summary.reported += 1
            if record.beat:
                summary.beats += 1
            elif record.beat is False:
                summary.misses += 1
            if is_qualified_beat(record, screen.min_earnings_surprise):
                summary.qualified_beats += 1
                current = best.get(record.symbol)
                if current is None or record.earnings_date >= current.earnings_date:
                    best[record.symbol] = record

        snapshots = self.db.get_stocks(best)
        for symbol, record in best.items():
            snapshot = snapshots.get(symbol)
            if snapshot is not None and snapshot.has_error:
                logger.warning("Skipping opportunity with stock data errors", ticker=symbol)
                continue
            scan.opportunities.append(
                EarningsOpportunity(
                    ticker=symbol,
                    earnings_date=record.earnings_date,
                    surprise=record.surprise,
                    estimated_eps=record.estimated_eps,
                    actual_eps=record.actual_eps,
                    current_price=to_float(snapshot.current_price) if snapshot else None,
                    company_name=snapshot.company_name if snapshot else None,
                )
            )

        scan.opportunities.sort(key=lambda o: (-o.surprise, o.ticker))
        logger.info(
            "Earnings scan complete",
            screen_id=screen_id,
            start=str(start),
            end=str(end),
            opportunities=len(scan.opportunities),
            min_surprise=screen.min_earnings_surprise,
            **vars(summary),
        )
        return scan

    def identify_opportunities(
        self,
        screen_id: int,
        start: date | None = None,
        end: date | None = None,
    ) -> list[EarningsOpportunity]:
        """Opportunities only; see scan() for summary counts."""
        return self.scan(screen_id, start, end).opportunities
