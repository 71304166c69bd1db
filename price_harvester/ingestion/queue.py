"""
Work Queue Module
=================

Job queue boundary used by the scheduler. The arq implementation gives:

- enqueue with a unique job id (arq refuses a second job with the same id)
- manual priority: manual jobs are backdated in the queue so they sort
  ahead of scheduled jobs that are already due
- pending checks over queued and in-progress jobs

Retries with exponential backoff are applied by the worker (see jobs.py).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import in_progress_key_prefix

from price_harvester.core.enums import RunTrigger
from price_harvester.core.schema import utc_now
from price_harvester.ingestion.config import QueueConfig

logger = logging.getLogger(__name__)

RUN_FEED_TASK = "run_feed"


def make_job_id(feed_id: UUID | str, trigger: RunTrigger, at: datetime | None = None) -> str:
    """Job id for a feed run, e.g. '<feed>-scheduled-20250101T120000'."""
    at = at or utc_now()
    return f"{feed_id}-{trigger.value}-{at.strftime('%Y%m%dT%H%M%S')}"


@dataclass
class EnqueuedRun:
    """A feed run handed to the queue."""

    feed_id: UUID
    trigger: RunTrigger
    job_id: str
    enqueued: bool = True


class WorkQueue(ABC):
    """Abstract job queue for feed runs."""

    @abstractmethod
    async def enqueue(self, feed_id: UUID, trigger: RunTrigger, job_id: str) -> EnqueuedRun:
        """
        Enqueue one feed run.

        Args:
            feed_id: Feed to run
            trigger: SCHEDULED or MANUAL; manual runs get priority
            job_id: Unique job id; a duplicate id is not enqueued twice

        Returns:
            EnqueuedRun with enqueued=False if the id already existed
        """
        pass

    @abstractmethod
    async def has_pending(self, feed_id: UUID, trigger: RunTrigger | None = None) -> bool:
        """
        Check for a queued or running job for a feed.

        Args:
            feed_id: Feed UUID
            trigger: Only consider jobs of this trigger kind

        Returns:
            True if such a job is queued or in progress
        """
        pass

    async def close(self) -> None:
        """Release the queue connection."""


class ArqWorkQueue(WorkQueue):
    """arq/Redis implementation of WorkQueue."""

    def __init__(self, redis: ArqRedis, config: QueueConfig | None = None) -> None:
        """
        Initialize with an existing arq pool.

        Args:
            redis: arq Redis pool
            config: Queue settings
        """
        self.redis = redis
        self.config = config or QueueConfig.from_dict(None)

    @classmethod
    async def connect(cls, config: QueueConfig) -> ArqWorkQueue:
        """Open a pool from queue settings."""
        redis = await create_pool(redis_settings(config))
        return cls(redis, config)

    async def enqueue(self, feed_id: UUID, trigger: RunTrigger, job_id: str) -> EnqueuedRun:
        defer_until = None
        if trigger == RunTrigger.MANUAL:
            defer_until = datetime.now(UTC) - timedelta(seconds=self.config.manual_priority_seconds)

        job = await self.redis.enqueue_job(
            RUN_FEED_TASK,
            str(feed_id),
            trigger.value,
            _job_id=job_id,
            _defer_until=defer_until,
        )
        if job is None:
            logger.info(f"Job {job_id} already exists, not enqueued again")
            return EnqueuedRun(feed_id=feed_id, trigger=trigger, job_id=job_id, enqueued=False)

        logger.info(f"Enqueued {trigger.value} run for feed {feed_id} as {job_id}")
        return EnqueuedRun(feed_id=feed_id, trigger=trigger, job_id=job_id)

    async def has_pending(self, feed_id: UUID, trigger: RunTrigger | None = None) -> bool:
        feed = str(feed_id)
        for job in await self.redis.queued_jobs():
            if job.function != RUN_FEED_TASK or not job.args or job.args[0] != feed:
                continue
            if trigger is None or (len(job.args) > 1 and job.args[1] == trigger.value):
                return True

        prefix = f"{feed}-{trigger.value}-" if trigger else f"{feed}-"
        async for _ in self.redis.scan_iter(match=f"{in_progress_key_prefix}{prefix}*"):
            return True
        return False

    async def close(self) -> None:
        await self.redis.close()


def redis_settings(config: QueueConfig) -> RedisSettings:
    """arq connection settings from queue config."""
    return RedisSettings(host=config.redis_host, port=config.redis_port, database=config.redis_db)
