"""
Periodic queue maintenance on APScheduler.

  prune_finalized_jobs  every hour, deletes finalized jobs past the retention window
  rescue_stuck_jobs     every 5 minutes, fails jobs left running by a dead worker

Setup (FastAPI lifespan or the standalone worker):

    scheduler = start_scheduler(queue, worker)
    ...
    shutdown_scheduler(scheduler)
"""
from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from retirement_queue.core.config import settings
from retirement_queue.services.job_queue import JobQueue, JobWorker

logger = logging.getLogger(__name__)


def start_scheduler(queue: JobQueue, worker: JobWorker) -> AsyncIOScheduler:
    """
    Starts the maintenance scheduler on the running event loop.
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        prune_finalized_jobs,
        trigger=IntervalTrigger(hours=1),
        args=[queue],
        id="prune_finalized_jobs",
        name="Prune finalized jobs",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=300,
    )

    scheduler.add_job(
        rescue_stuck_jobs,
        trigger=IntervalTrigger(minutes=5),
        args=[worker],
        id="rescue_stuck_jobs",
        name="Rescue stuck jobs",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=60,
    )

    scheduler.start()
    logger.info("Maintenance scheduler started, 2 jobs registered")
    return scheduler


def shutdown_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler shut down")


async def prune_finalized_jobs(queue: JobQueue) -> int:
    try:
        removed = queue.prune_finalized(timedelta(hours=settings.JOB_RETENTION_HOURS))
    except Exception as e:
        logger.error(f"Job: prune_finalized_jobs failed: {e}", exc_info=True)
        return 0
    if removed:
        logger.info(f"Job: prune_finalized_jobs removed {removed} jobs")
    return removed


async def rescue_stuck_jobs(worker: JobWorker) -> int:
    try:
        rescued = worker.rescue_stuck(timedelta(minutes=settings.JOB_RESCUE_AFTER_MINUTES))
    except Exception as e:
        logger.error(f"Job: rescue_stuck_jobs failed: {e}", exc_info=True)
        return 0
    if rescued:
        logger.warning(f"Job: rescue_stuck_jobs failed {rescued} stuck jobs")
    return rescued
