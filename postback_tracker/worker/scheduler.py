"""APScheduler job definitions for queue processing."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from postback_tracker.config import settings
from postback_tracker.worker.processor import queue_processor

logger = logging.getLogger(__name__)


async def process_postback_queue():
    """Scheduled batch run."""
    try:
        await queue_processor.run_batch()
    except Exception as e:
        logger.error("Error processing postback queue: %s", e, exc_info=True)


async def reclaim_stale_entries():
    try:
        await queue_processor.reclaim_stale()
    except Exception as e:
        logger.error("Error reclaiming stale queue entries: %s", e, exc_info=True)


async def cleanup_queue():
    try:
        await queue_processor.cleanup()
    except Exception as e:
        logger.error("Error cleaning up postback queue: %s", e, exc_info=True)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Queue batches run every settings.queue_process_interval_seconds
    - Stale processing claims are reclaimed every settings.queue_reclaim_interval_seconds
    - Old completed/failed entries are removed daily at 4 AM when cleanup is enabled

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    process_interval = max(1, int(settings.queue_process_interval_seconds))
    reclaim_interval = max(1, int(settings.queue_reclaim_interval_seconds))

    # max_instances=1 keeps runs of one scheduler from overlapping; claims
    # keep runs from different processes apart
    scheduler.add_job(
        process_postback_queue,
        IntervalTrigger(seconds=process_interval),
        id="process_postback_queue",
        name="Process pending postbacks",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        reclaim_stale_entries,
        IntervalTrigger(seconds=reclaim_interval),
        id="reclaim_stale_entries",
        name="Reclaim stale processing claims",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    if settings.queue_cleanup_enabled:
        scheduler.add_job(
            cleanup_queue,
            CronTrigger(hour=4, minute=0),
            id="cleanup_queue",
            name="Remove old queue entries",
            max_instances=1,
            replace_existing=True,
        )

    logger.info(
        "Scheduler configured: queue batch of %d every %d seconds, stale reclaim every %d seconds, %s",
        settings.queue_batch_size,
        process_interval,
        reclaim_interval,
        "cleanup at 4 AM" if settings.queue_cleanup_enabled else "cleanup disabled",
    )

    return scheduler
