"""
Background Jobs Module
======================

arq tasks for the harvester. Uses Redis as the job queue backend.

Long-lived clients (database, queue, emitter, runner) are built once in
startup() and released in shutdown(); tasks read them from the arq ctx.
"""

from __future__ import annotations

import logging
from typing import Any

from arq import Retry, cron
from arq.connections import RedisSettings

from price_harvester.core.enums import RunTrigger
from price_harvester.db.engine import Database
from price_harvester.ingestion.config import QueueConfig, load_registry
from price_harvester.ingestion.errors import FeedError
from price_harvester.ingestion.notifications import build_emitter
from price_harvester.ingestion.queue import ArqWorkQueue, redis_settings
from price_harvester.ingestion.resolver import ProductResolver
from price_harvester.ingestion.runner import FeedRunner
from price_harvester.ingestion.scheduler import FeedScheduler
from price_harvester.ingestion.storage import get_default_storage

logger = logging.getLogger(__name__)

MAX_TRIES = 3


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings from environment."""
    return redis_settings(QueueConfig.from_dict(None))


def retry_delay(job_try: int, base_seconds: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_seconds * 2 ** (max(job_try, 1) - 1)


async def startup(ctx: dict[str, Any]) -> None:
    """Build the process-wide clients."""
    registry = load_registry()
    database = Database.from_env()
    emitter = build_emitter(
        registry.notifications.webhook_url, timeout=registry.notifications.webhook_timeout
    )
    ctx["registry"] = registry
    ctx["database"] = database
    ctx["emitter"] = emitter
    ctx["runner"] = FeedRunner.from_registry(
        database,
        registry,
        upload_storage=get_default_storage(registry.fetch.upload_dir),
        emitter=emitter,
    )
    ctx["scheduler"] = FeedScheduler(
        database, ArqWorkQueue(ctx["redis"], registry.queue), registry.scheduler
    )
    logger.info(f"Worker started (config: {registry.config_path or 'defaults'})")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Release the clients built in startup()."""
    emitter = ctx.get("emitter")
    if emitter is not None:
        await emitter.close()
    database = ctx.get("database")
    if database is not None:
        database.dispose()


async def run_feed(ctx: dict[str, Any], feed_id: str, trigger: str = "scheduled") -> dict[str, Any]:
    """
    Run one feed.

    Retryable transport failures are turned into arq retries with
    exponential backoff; the runner has already marked the run failed.

    Args:
        ctx: arq context
        feed_id: Feed UUID
        trigger: RunTrigger value

    Returns:
        RunOutcome as dictionary
    """
    registry = ctx["registry"]
    job_try = ctx.get("job_try", 1)
    max_tries = min(registry.queue.max_tries, MAX_TRIES)

    try:
        outcome = await ctx["runner"].run(
            feed_id, RunTrigger(trigger), attempt=job_try, max_attempts=max_tries
        )
    except FeedError as e:
        defer = retry_delay(job_try, registry.queue.backoff_base_seconds)
        logger.warning(f"Feed {feed_id} attempt {job_try} failed ({e.code.value}); retrying in {defer}s")
        raise Retry(defer=defer) from e
    except ValueError as e:
        logger.error(f"run_feed: {e}")
        return {"feed_id": feed_id, "error": str(e)}
    except Exception:
        logger.exception(f"Unexpected error running feed {feed_id}")
        raise

    return outcome.to_dict()


async def scheduler_tick(ctx: dict[str, Any]) -> dict[str, Any]:
    """Claim due feeds and enqueue their runs."""
    enqueued = await ctx["scheduler"].tick()
    return {"enqueued": [run.job_id for run in enqueued if run.enqueued]}


async def drain_manual_runs(ctx: dict[str, Any]) -> dict[str, Any]:
    """Enqueue pending manual runs."""
    enqueued = await ctx["scheduler"].drain_manual_runs()
    return {"enqueued": [run.job_id for run in enqueued if run.enqueued]}


async def prune_runs(ctx: dict[str, Any]) -> dict[str, Any]:
    """Delete terminal runs past the retention window."""
    return {"deleted": ctx["scheduler"].prune_runs()}


async def resolve_products(
    ctx: dict[str, Any], product_ids: list[str] | None = None
) -> dict[str, Any]:
    """
    Resolve the given source products, or re-resolve stale links.

    Args:
        ctx: arq context
        product_ids: Source product IDs; None re-resolves links from
            other resolver versions
    """
    database: Database = ctx["database"]
    registry = ctx["registry"]
    with database.session() as session:
        resolver = ProductResolver(session, registry.resolver)
        if product_ids is None:
            summary = resolver.resolve_stale()
        else:
            summary = resolver.resolve_batch(product_ids)
        session.commit()
    return {
        "resolver_version": summary.resolver_version,
        "total": summary.total,
        "matched": summary.matched,
        "needs_review": summary.needs_review,
        "unmatched": summary.unmatched,
        "missing": summary.missing,
    }


class WorkerSettings:
    """arq worker settings."""

    functions = [run_feed, resolve_products]
    cron_jobs = [
        cron(scheduler_tick, second=0, run_at_startup=True),
        cron(drain_manual_runs, second={0, 15, 30, 45}),
        cron(prune_runs, hour=3, minute=15, second=0),
        cron(resolve_products, hour=4, minute=0, second=0),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    max_tries = MAX_TRIES
    max_jobs = 10
    job_timeout = 3600  # 1 hour
    keep_result = 86400  # 24 hours
