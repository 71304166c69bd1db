"""Tests for the feed scheduler."""

import asyncio
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from price_harvester.core.enums import FeedStatus, RunStatus, RunTrigger
from price_harvester.core.schema import FeedRun
from price_harvester.db.models import FeedDB
from price_harvester.db.repositories import FeedRepository, FeedRunRepository, next_run_after
from price_harvester.ingestion.config import SchedulerConfig
from price_harvester.ingestion.queue import make_job_id
from price_harvester.ingestion.scheduler import FeedScheduler

from conftest import FakeQueue

NOW = datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture
def scheduler(database, queue) -> FeedScheduler:
    return FeedScheduler(database, queue, SchedulerConfig(batch_size=10))


class TestNextRunAfter:
    """Tests for schedule advancement."""

    def test_keeps_cadence(self) -> None:
        """An on-time feed moves one interval from its previous slot."""
        assert next_run_after(NOW - timedelta(minutes=5), 6, NOW) == NOW + timedelta(hours=6, minutes=-5)

    def test_restarts_when_far_behind(self) -> None:
        """A feed more than one interval late restarts from now."""
        assert next_run_after(NOW - timedelta(days=2), 6, NOW) == NOW + timedelta(hours=6)
        assert next_run_after(None, 6, NOW) == NOW + timedelta(hours=6)


class TestTick:
    """Tests for FeedScheduler.tick."""

    @pytest.mark.asyncio
    async def test_claims_due_feed(self, database, make_feed, scheduler: FeedScheduler, queue) -> None:
        """A due feed is enqueued once and its next run advanced."""
        feed = make_feed(next_run_at=NOW - timedelta(minutes=1))

        enqueued = await scheduler.tick(NOW)

        assert [r.job_id for r in enqueued] == [make_job_id(feed.id, RunTrigger.SCHEDULED, NOW)]
        assert enqueued[0].trigger == RunTrigger.SCHEDULED
        with database.session() as s:
            assert FeedRepository(s).get_by_id(feed.id).next_run_at > NOW

        assert await scheduler.tick(NOW) == []
        assert len(queue.jobs) == 1

    @pytest.mark.asyncio
    async def test_skips_not_due_and_not_enabled(self, make_feed, scheduler: FeedScheduler) -> None:
        """Future, paused, failed and unscheduled feeds are not claimed."""
        make_feed("future", next_run_at=NOW + timedelta(hours=1))
        make_feed("paused", next_run_at=NOW - timedelta(hours=1), status=FeedStatus.PAUSED)
        make_feed("failed", next_run_at=NOW - timedelta(hours=1), status=FeedStatus.FAILED)
        make_feed("unscheduled")

        assert await scheduler.tick(NOW) == []

    @pytest.mark.asyncio
    async def test_manual_pending_is_left_to_drain(
        self, session: Session, make_feed, scheduler: FeedScheduler
    ) -> None:
        """A feed waiting for its manual run is not also scheduled."""
        feed = make_feed(next_run_at=NOW - timedelta(hours=1))
        FeedRepository(session).request_manual_run(feed.id)
        session.commit()

        assert await scheduler.tick(NOW) == []

    @pytest.mark.asyncio
    async def test_batch_size(self, database, make_feed, queue) -> None:
        """At most batch_size feeds are claimed per tick, oldest first."""
        for i in range(3):
            make_feed(f"feed-{i}", next_run_at=NOW - timedelta(minutes=10 - i))
        scheduler = FeedScheduler(database, queue, SchedulerConfig(batch_size=2))

        first = await scheduler.tick(NOW)
        second = await scheduler.tick(NOW)

        assert len(first) == 2
        assert len(second) == 1

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_swallowed(
        self, database, make_feed, scheduler: FeedScheduler, queue
    ) -> None:
        """A queue outage loses one cycle but keeps the schedule moving."""
        feed = make_feed(next_run_at=NOW - timedelta(minutes=1))
        queue.fail_enqueue = True

        assert await scheduler.tick(NOW) == []
        with database.session() as s:
            assert FeedRepository(s).get_by_id(feed.id).next_run_at > NOW

    def test_concurrent_ticks_claim_disjoint_feeds(self, database, make_feed) -> None:
        """Two schedulers ticking at once never claim the same feed."""
        due = {
            make_feed(f"feed-{i}", next_run_at=NOW - timedelta(minutes=i + 1)).id
            for i in range(20)
        }
        barrier = threading.Barrier(2)
        claimed: list[set] = [set(), set()]

        def tick(slot: int) -> None:
            scheduler = FeedScheduler(database, FakeQueue(), SchedulerConfig(batch_size=50))
            barrier.wait()
            claimed[slot] = {run.feed_id for run in asyncio.run(scheduler.tick(NOW))}

        threads = [threading.Thread(target=tick, args=(slot,)) for slot in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert claimed[0] | claimed[1] == due
        assert claimed[0].isdisjoint(claimed[1])

    def test_claim_uses_skip_locked(self) -> None:
        """The claim query renders FOR UPDATE SKIP LOCKED on PostgreSQL."""
        stmt = (
            select(FeedDB)
            .where(FeedDB.status == FeedStatus.ENABLED.value)
            .with_for_update(skip_locked=True)
        )

        assert "FOR UPDATE SKIP LOCKED" in str(stmt.compile(dialect=postgresql.dialect()))


class TestManualRuns:
    """Tests for draining manual run requests."""

    @pytest.mark.asyncio
    async def test_drain_enqueues_once(
        self, session: Session, make_feed, scheduler: FeedScheduler, queue
    ) -> None:
        """Pending manual runs are enqueued once, even for paused feeds."""
        feed = make_feed(status=FeedStatus.PAUSED)
        FeedRepository(session).request_manual_run(feed.id)
        session.commit()

        first = await scheduler.drain_manual_runs(NOW)
        second = await scheduler.drain_manual_runs(NOW + timedelta(seconds=15))

        assert [r.trigger for r in first] == [RunTrigger.MANUAL]
        assert second == []
        assert len(queue.jobs) == 1

    @pytest.mark.asyncio
    async def test_drain_tolerates_queue_failure(
        self, session: Session, make_feed, scheduler: FeedScheduler, queue
    ) -> None:
        """The flag stays set so the next drain retries."""
        feed = make_feed()
        FeedRepository(session).request_manual_run(feed.id)
        session.commit()
        queue.fail_enqueue = True

        assert await scheduler.drain_manual_runs(NOW) == []

        queue.fail_enqueue = False
        assert len(await scheduler.drain_manual_runs(NOW)) == 1

    def test_request_unknown_feed(self, session: Session) -> None:
        """Flagging a missing feed reports False."""
        assert FeedRepository(session).request_manual_run("00000000-0000-0000-0000-000000000000") is False


class TestPruneRuns:
    """Tests for run retention."""

    def test_prunes_only_old_terminal_runs(
        self, database, session: Session, feed, scheduler: FeedScheduler
    ) -> None:
        """Old finished runs go; recent and running runs stay."""
        runs = FeedRunRepository(session)
        old = NOW - timedelta(days=40)
        for status in (RunStatus.SUCCEEDED, RunStatus.FAILED):
            runs.create(FeedRun(feed_id=feed.id, status=status, started_at=old, finished_at=old))
        running = runs.create(FeedRun(feed_id=feed.id, status=RunStatus.RUNNING, started_at=old))
        recent = runs.create(
            FeedRun(
                feed_id=feed.id,
                status=RunStatus.SUCCEEDED,
                started_at=NOW - timedelta(days=1),
                finished_at=NOW - timedelta(days=1),
            )
        )
        session.commit()

        deleted = scheduler.prune_runs(retention_days=30, batch_size=1, now=NOW)

        assert deleted == 2
        with database.session() as s:
            remaining = {r.id for r in FeedRunRepository(s).list_for_feed(feed.id)}
        assert remaining == {running.id, recent.id}
