"""Tests for queue helpers and arq tasks."""

from datetime import datetime
from uuid import uuid4

import pytest
from arq import Retry

from price_harvester.core.enums import FailureKind, FeedErrorCode, RunStatus, RunTrigger
from price_harvester.ingestion import jobs
from price_harvester.ingestion.config import HarvesterRegistry
from price_harvester.ingestion.errors import FeedError
from price_harvester.ingestion.queue import EnqueuedRun, make_job_id
from price_harvester.ingestion.runner import RunOutcome


class StubRunner:
    """Returns or raises a preset result and records its calls."""

    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple] = []

    async def run(self, feed_id, trigger, attempt=1, max_attempts=3):
        self.calls.append((feed_id, trigger, attempt, max_attempts))
        if self.error is not None:
            raise self.error
        return self.result


class StubScheduler:
    async def tick(self):
        return [
            EnqueuedRun(feed_id=uuid4(), trigger=RunTrigger.SCHEDULED, job_id="a"),
            EnqueuedRun(feed_id=uuid4(), trigger=RunTrigger.SCHEDULED, job_id="b", enqueued=False),
        ]

    async def drain_manual_runs(self):
        return []

    def prune_runs(self):
        return 4


def _ctx(runner: StubRunner, job_try: int = 1) -> dict:
    return {"registry": HarvesterRegistry(), "runner": runner, "job_try": job_try}


class TestQueueHelpers:
    """Tests for job ids and backoff."""

    def test_make_job_id(self) -> None:
        """Job ids combine feed, trigger and a second-resolution time."""
        feed_id = uuid4()

        job_id = make_job_id(feed_id, RunTrigger.MANUAL, datetime(2025, 3, 1, 12, 30, 5))

        assert job_id == f"{feed_id}-manual-20250301T123005"

    def test_retry_delay(self) -> None:
        """Backoff doubles per attempt."""
        assert [jobs.retry_delay(n, 30) for n in (1, 2, 3)] == [30, 60, 120]
        assert jobs.retry_delay(0, 30) == 30


class TestRunFeedTask:
    """Tests for the run_feed task."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """The outcome is returned as a dictionary."""
        feed_id = uuid4()
        runner = StubRunner(RunOutcome(feed_id=feed_id, status=RunStatus.SUCCEEDED))

        result = await jobs.run_feed(_ctx(runner, job_try=2), str(feed_id), "manual")

        assert result["status"] == "succeeded"
        assert runner.calls == [(str(feed_id), RunTrigger.MANUAL, 2, 3)]

    @pytest.mark.asyncio
    async def test_retryable_failure_becomes_retry(self) -> None:
        """Transient failures are retried with exponential backoff."""
        error = FeedError(FeedErrorCode.BAD_STATUS, "503", FailureKind.TRANSIENT)

        with pytest.raises(Retry) as exc_info:
            await jobs.run_feed(_ctx(StubRunner(error=error), job_try=2), str(uuid4()))

        assert exc_info.value.defer_score == 60_000

    @pytest.mark.asyncio
    async def test_missing_feed_is_not_retried(self) -> None:
        """A deleted feed ends the job with an error payload."""
        runner = StubRunner(error=ValueError("Feed x not found"))

        result = await jobs.run_feed(_ctx(runner), "x")

        assert result == {"feed_id": "x", "error": "Feed x not found"}


class TestCronTasks:
    """Tests for the periodic tasks."""

    @pytest.mark.asyncio
    async def test_scheduler_tasks(self) -> None:
        """Cron tasks report what they did."""
        ctx = {"scheduler": StubScheduler()}

        assert await jobs.scheduler_tick(ctx) == {"enqueued": ["a"]}
        assert await jobs.drain_manual_runs(ctx) == {"enqueued": []}
        assert await jobs.prune_runs(ctx) == {"deleted": 4}

    @pytest.mark.asyncio
    async def test_resolve_products(self, database) -> None:
        """Unknown ids are reported as missing."""
        missing = str(uuid4())
        ctx = {"database": database, "registry": HarvesterRegistry()}

        result = await jobs.resolve_products(ctx, [missing])

        assert result["missing"] == [missing]
        assert result["resolver_version"] == "1.2.0"
        assert (await jobs.resolve_products(ctx))["total"] == 0

    def test_worker_settings(self) -> None:
        """The worker registers the run and resolve tasks."""
        assert jobs.run_feed in jobs.WorkerSettings.functions
        assert jobs.resolve_products in jobs.WorkerSettings.functions
        assert jobs.WorkerSettings.max_tries == 3
