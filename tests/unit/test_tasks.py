"""Unit tests for TaskRunner."""

import threading

import pytest

from stock_screener.engine.tasks import TaskRunner
from stock_screener.errors import PersistenceConflictError


@pytest.fixture
def runner():
    runner = TaskRunner(max_workers=2)
    yield runner
    runner.shutdown()


class TestTaskRunner:
    def test_result_and_completion(self, runner):
        completed = []

        future = runner.submit(1, lambda run_id: run_id * 10, lambda run_id, error: completed.append((run_id, error)))

        assert future.result(timeout=5) == 10
        assert completed == [(1, None)]

    def test_failure_passed_to_handler(self, runner):
        completed = []

        def explode(run_id):
            raise RuntimeError("boom")

        future = runner.submit(7, explode, lambda run_id, error: completed.append(error))

        assert future.result(timeout=5) is None
        assert isinstance(completed[0], RuntimeError)

    def test_duplicate_submission_rejected(self, runner):
        release = threading.Event()
        runner.submit(3, lambda run_id: release.wait(5), lambda run_id, error: None)

        try:
            assert runner.is_running(3)
            with pytest.raises(PersistenceConflictError, match="already in progress"):
                runner.submit(3, lambda run_id: None, lambda run_id, error: None)
        finally:
            release.set()

    def test_not_running_after_completion(self, runner):
        future = runner.submit(4, lambda run_id: None, lambda run_id, error: None)
        future.result(timeout=5)

        assert runner.is_running(4) is False
        assert runner.wait(4) is None
