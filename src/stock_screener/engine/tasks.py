"""Supervised background execution of runs."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from stock_screener.errors import PersistenceConflictError

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runs each submitted run on a worker thread.

    Whatever happens inside the task, the completion handler runs
    afterwards (finally semantics) so the caller can guarantee a terminal
    state write for the run.
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="run-worker")
        self._futures: dict[int, Future] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        run_id: int,
        func: Callable[[int], Any],
        on_complete: Callable[[int, BaseException | None], None],
    ) -> Future:
        """
        Start func(run_id) in the background.

        Args:
            run_id: Run being driven
            func: The work; exceptions are logged and passed to on_complete
            on_complete: Called with (run_id, error or None) after func ends

        Raises:
            PersistenceConflictError: If the run is already being driven
        """

        def supervised():
            error: BaseException | None = None
            try:
                return func(run_id)
            except Exception as e:
                error = e
                logger.error(f"Run {run_id} failed: {e}")
                return None
            finally:
                try:
                    on_complete(run_id, error)
                finally:
                    with self._lock:
                        self._futures.pop(run_id, None)

        with self._lock:
            if run_id in self._futures:
                raise PersistenceConflictError(f"Run {run_id} is already in progress")
            future = self._executor.submit(supervised)
            self._futures[run_id] = future
        logger.info(f"Submitted run {run_id}")
        return future

    def is_running(self, run_id: int) -> bool:
        with self._lock:
            future = self._futures.get(run_id)
        return future is not None and not future.done()

    def wait(self, run_id: int, timeout: float | None = None) -> Any:
        """Block until a submitted run finishes. Returns its result (None on failure)."""
        with self._lock:
            future = self._futures.get(run_id)
        return future.result(timeout=timeout) if future is not None else None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
