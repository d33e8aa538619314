"""Parallel execution utilities for per-symbol batch operations."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)
R = TypeVar("R")


@dataclass
class TaskResult:
    """Result of a parallel task execution."""

    item: Any
    success: bool
    result: Any | None
    error: str | None


@dataclass
class BatchSummary:
    """Outcome of a batch: per-item results plus succeeded/failed counts."""

    results: dict[Any, TaskResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results.values() if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results.values() if not r.success)


class ParallelExecutor:
    """
    Execute per-symbol tasks in parallel using a thread pool.

    Quote and bar fetches are I/O-bound, so threads are enough. A failing
    symbol is recorded in its TaskResult and never aborts the batch.
    """

    def __init__(self, max_workers: int = 10):
        """
        Initialize the parallel executor.

        Args:
            max_workers: Maximum number of concurrent workers (default: 10)
        """
        self.max_workers = max_workers

    def execute(
        self,
        func: Callable[[T], R],
        items: list[T],
        on_progress: Callable[[int, int, T, TaskResult], None] | None = None,
    ) -> BatchSummary:
        """
        Execute a function on each item in parallel.

        Args:
            func: Function to execute on each item
            items: Items to process; duplicates are processed once
            on_progress: Optional callback(completed, total, item, result)

        Returns:
            BatchSummary with one TaskResult per distinct item
        """
        summary = BatchSummary()
        unique = list(dict.fromkeys(items))
        if not unique:
            return summary

        if self.max_workers <= 1:
            for i, item in enumerate(unique, start=1):
                task_result = self._execute_single(func, item)
                summary.results[item] = task_result
                if on_progress:
                    on_progress(i, len(unique), item, task_result)
            return summary

        completed_count = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_item = {
                executor.submit(self._execute_single, func, item): item
                for item in unique
            }

            for future in as_completed(future_to_item):
                item = future_to_item[future]
                task_result = future.result()
                summary.results[item] = task_result
                completed_count += 1
                if on_progress:
                    on_progress(completed_count, len(unique), item, task_result)

        return summary

    def _execute_single(self, func: Callable[[T], R], item: T) -> TaskResult:
        """Run func on one item, capturing any exception in the TaskResult."""
        try:
            return TaskResult(item=item, success=True, result=func(item), error=None)
        except Exception as e:
            logger.debug(f"Error processing {item}: {e}")
            return TaskResult(item=item, success=False, result=None, error=str(e))
