"""Cleanup of RUNNING runs and refresh jobs that stopped making progress."""

from dataclasses import dataclass
from datetime import timedelta

import structlog

from stock_screener.data.database import Database
from stock_screener.errors import PersistenceConflictError
from stock_screener.models.enums import RunStatus

logger = structlog.get_logger()


@dataclass
class WatchdogReport:
    failed_runs: list[int]
    failed_refreshes: int


class Watchdog:
    """
    Marks RUNNING records FAILED once their last heartbeat is older than stale_after.

    Runs heartbeat on every simulation step, so a run idle past the threshold
    has lost its driver (crash or restart).
    """

    def __init__(self, db: Database, stale_after: timedelta = timedelta(minutes=15)):
        self.db = db
        self.stale_after = stale_after

    def mark_stale_runs_failed(self, threshold: timedelta | None = None) -> list[int]:
        """Fail stale RUNNING runs. Returns the IDs that were marked."""
        threshold = threshold or self.stale_after
        minutes = int(threshold.total_seconds() // 60)
        marked = []
        for run in self.db.get_stale_runs(threshold):
            try:
                self.db.finalize_run(
                    run.id,
                    RunStatus.FAILED,
                    error_message=f"No progress for over {minutes} minutes; marked stale",
                )
            except PersistenceConflictError:
                # Finished between the query and the update
                continue
            marked.append(run.id)
            logger.warning("Marked stale run failed", run_id=run.id, last_update=str(run.last_update))
        return marked

    def check(self) -> WatchdogReport:
        """Fail stale runs and stale refresh jobs."""
        runs = self.mark_stale_runs_failed()
        refreshes = self.db.fail_stale_refreshes(
            self.stale_after, "Refresh made no progress; marked stale"
        )
        if refreshes:
            logger.warning("Marked stale refreshes failed", count=refreshes)
        return WatchdogReport(failed_runs=runs, failed_refreshes=refreshes)
