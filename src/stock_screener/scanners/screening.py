"""Screening pass: score the stock universe and maintain a screen's watchlist."""

from typing import Callable

import structlog

from stock_screener.data.database import Database
from stock_screener.errors import NotFoundError
from stock_screener.models.records import (
    ScreenCriteria,
    ScreeningResult,
    StockSnapshot,
    WatchlistEntry,
)
from stock_screener.scoring.scorer import FactorScore, FactorScorer
from stock_screener.utils.calculations import clamp_for_storage, to_float

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, str], None]


def build_watchlist_entry(
    screen_id: int, snapshot: StockSnapshot, scored: FactorScore
) -> WatchlistEntry:
    """Watchlist row for a scored snapshot, clamped to storage limits."""

    def clamped(field: str, value) -> float | None:
        return clamp_for_storage(field, to_float(value))

    return WatchlistEntry(
        ticker=snapshot.symbol,
        screen_id=screen_id,
        score=clamp_for_storage("score", scored.score),
        pe_ratio=clamped("pe_ratio", snapshot.pe_ratio),
        ps_ratio=clamped("ps_ratio", snapshot.ps_ratio),
        momentum=clamped("momentum", snapshot.momentum_3m),
        market_cap=clamped("market_cap", snapshot.market_cap),
        current_price=clamped("current_price", snapshot.current_price),
    )


class ScreeningPass:
    """
    Applies the FactorScorer across the stock universe for one screen.

    Qualifying tickers are upserted into the watchlist keyed on
    (ticker, screen_id): existing rows get a fresh score and display fields,
    new rows are inserted with date_added = now. Tickers that stop
    qualifying are left in place; removing them is an explicit separate
    operation so manually curated entries are never lost.
    """

    def __init__(
        self,
        db: Database,
        scorer: FactorScorer | None = None,
        min_data_quality: int = 30,
    ):
        """
        Initialize the screening pass.

        Args:
            db: Data store with snapshots, screens and watchlists
            scorer: Factor scorer. If None, uses weighted scoring.
            min_data_quality: Snapshots below this quality are not screened
        """
        self.db = db
        self.scorer = scorer or FactorScorer()
        self.min_data_quality = min_data_quality

    def run(self, screen_id: int, on_progress: ProgressCallback | None = None) -> ScreeningResult:
        """
        Screen the universe for one screen.

        Args:
            screen_id: Screen to run
            on_progress: Optional callback(current, total, ticker)

        Returns:
            ScreeningResult with processed/qualified/updated/inserted/skipped/failed counts

        Raises:
            NotFoundError: If the screen does not exist
        """
        criteria = self.db.get_screen(screen_id)
        if criteria is None:
            raise NotFoundError("Screen", screen_id)

        universe = self.db.get_screening_universe(self.min_data_quality)
        logger.info(
            "Starting screening pass",
            screen_id=screen_id,
            screen=criteria.name,
            universe=len(universe),
            factors=sorted(criteria.bounded_factors),
        )

        result = ScreeningResult(screen_id=screen_id)
        qualifying = self._score_universe(criteria, universe, result, on_progress)

        if criteria.max_entries is not None and len(qualifying) > criteria.max_entries:
            result.skipped += len(qualifying) - criteria.max_entries
            qualifying = qualifying[: criteria.max_entries]

        for snapshot, scored in qualifying:
            try:
                inserted = self.db.upsert_watchlist_entry(
                    build_watchlist_entry(screen_id, snapshot, scored)
                )
            except Exception as e:
                logger.error("Failed to upsert watchlist entry", ticker=snapshot.symbol, error=str(e))
                result.failed += 1
                continue
            if inserted:
                result.inserted += 1
            else:
                result.updated += 1

        logger.info("Screening pass complete", **result.to_dict())
        return result

    def _score_universe(
        self,
        criteria: ScreenCriteria,
        universe: list[StockSnapshot],
        result: ScreeningResult,
        on_progress: ProgressCallback | None,
    ) -> list[tuple[StockSnapshot, FactorScore]]:
        """Score every snapshot; returns qualifying ones, best score first."""
        qualifying = []
        for i, snapshot in enumerate(universe, start=1):
            if on_progress:
                on_progress(i, len(universe), snapshot.symbol)
            result.processed += 1
            try:
                scored = self.scorer.evaluate(snapshot, criteria)
            except (ValueError, TypeError) as e:
                logger.warning("Failed to score stock", ticker=snapshot.symbol, error=str(e))
                result.failed += 1
                continue

            if scored.qualified:
                result.qualified += 1
                qualifying.append((snapshot, scored))
            else:
                result.skipped += 1

        qualifying.sort(key=lambda pair: (-pair[1].score, pair[0].symbol))
        return qualifying
