"""
Feed Scheduler Module
=====================

Finds due feeds, claims them and hands them to the work queue.

The claim and the next_run_at advance happen in one transaction using a
locking read that skips rows another scheduler already holds. Enqueueing
happens after commit: a crash in between costs at most one missed cycle,
never a double run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from price_harvester.core.enums import RunTrigger
from price_harvester.core.schema import utc_now
from price_harvester.db.engine import Database
from price_harvester.db.repositories import FeedRepository, FeedRunRepository
from price_harvester.ingestion.config import SchedulerConfig
from price_harvester.ingestion.queue import EnqueuedRun, WorkQueue, make_job_id

logger = logging.getLogger(__name__)


class FeedScheduler:
    """Periodic scheduler for feed runs."""

    def __init__(
        self, database: Database, queue: WorkQueue, config: SchedulerConfig | None = None
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            database: Database client
            queue: Work queue that receives run_feed jobs
            config: Batch and retention settings
        """
        self.database = database
        self.queue = queue
        self.config = config or SchedulerConfig()

    async def tick(self, now: datetime | None = None) -> list[EnqueuedRun]:
        """
        Claim due feeds and enqueue one scheduled run per feed.

        Args:
            now: Current time (naive UTC); defaults to utc_now()

        Returns:
            Runs handed to the queue
        """
        now = now or utc_now()
        with self.database.session() as session:
            claimed = FeedRepository(session).claim_due(now, limit=self.config.batch_size)
            session.commit()

        if claimed:
            logger.info(f"Claimed {len(claimed)} due feeds")

        enqueued: list[EnqueuedRun] = []
        for feed in claimed:
            job_id = make_job_id(feed.id, RunTrigger.SCHEDULED, now)
            try:
                enqueued.append(await self.queue.enqueue(feed.id, RunTrigger.SCHEDULED, job_id))
            except Exception as e:
                # next_run_at is already advanced; the feed runs next cycle
                logger.error(f"Failed to enqueue scheduled run for feed {feed.name}: {e}")
        return enqueued

    async def drain_manual_runs(self, now: datetime | None = None) -> list[EnqueuedRun]:
        """
        Enqueue pending manual runs that are not already queued or running.

        The runner clears manual_run_pending when it starts, so a feed
        stays pending until its job actually begins.
        """
        now = now or utc_now()
        with self.database.session() as session:
            pending = FeedRepository(session).list_manual_pending(limit=self.config.batch_size)
            session.commit()

        enqueued: list[EnqueuedRun] = []
        for feed in pending:
            try:
                if await self.queue.has_pending(feed.id, RunTrigger.MANUAL):
                    logger.debug(f"Manual run for feed {feed.name} already queued")
                    continue
                job_id = make_job_id(feed.id, RunTrigger.MANUAL, now)
                enqueued.append(await self.queue.enqueue(feed.id, RunTrigger.MANUAL, job_id))
            except Exception as e:
                logger.error(f"Failed to enqueue manual run for feed {feed.name}: {e}")
        return enqueued

    def prune_runs(
        self,
        retention_days: int | None = None,
        batch_size: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Delete terminal runs past the configured retention window."""
        return prune_runs(
            self.database,
            retention_days if retention_days is not None else self.config.retention_days,
            batch_size or self.config.prune_batch_size,
            now=now,
        )


def prune_runs(
    database: Database, retention_days: int, batch_size: int, now: datetime | None = None
) -> int:
    """
    Delete terminal runs older than the retention window.

    Each batch commits separately. Running runs are never deleted.

    Args:
        database: Database client
        retention_days: Age in days past which finished runs are deleted
        batch_size: Rows deleted per transaction
        now: Reference time; defaults to utc_now()

    Returns:
        Total runs deleted
    """
    cutoff = (now or utc_now()) - timedelta(days=retention_days)

    total = 0
    while True:
        with database.session() as session:
            deleted = FeedRunRepository(session).delete_terminal_before(cutoff, batch_size)
            session.commit()
        total += deleted
        if deleted < batch_size:
            break

    if total:
        logger.info(f"Pruned {total} feed runs finished before {cutoff.isoformat()}")
    return total
