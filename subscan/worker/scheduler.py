"""APScheduler job definitions for the reconciliation loops."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from subscan import metrics
from subscan.config import settings
from subscan.worker.dispatcher import analysis_dispatcher
from subscan.worker.sweeper import promotion_sweeper
from subscan.worker.watchdog import liveness_watchdog

logger = logging.getLogger(__name__)


async def run_dispatch_job() -> None:
    """Dispatch every ready scan."""
    try:
        summary = await analysis_dispatcher.dispatch()
        if summary.dispatched or summary.failed:
            logger.info(f"Scheduled dispatch: {summary.to_dict()}")
        metrics.record_scheduler_run("dispatch", True)
    except Exception as e:
        logger.error(f"Scheduled dispatch failed: {e}", exc_info=True)
        metrics.record_scheduler_run("dispatch", False)


async def run_sweep_job() -> None:
    """Promote completed classifications into subscriptions."""
    try:
        await promotion_sweeper.sweep()
        metrics.record_scheduler_run("sweep", True)
    except Exception as e:
        logger.error(f"Scheduled sweep failed: {e}", exc_info=True)
        metrics.record_scheduler_run("sweep", False)


async def run_watchdog_job() -> None:
    """Repair stalled scans."""
    try:
        await liveness_watchdog.run()
        metrics.record_scheduler_run("watchdog", True)
    except Exception as e:
        logger.error(f"Scheduled watchdog failed: {e}", exc_info=True)
        metrics.record_scheduler_run("watchdog", False)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Dispatch every settings.dispatch_interval_seconds
    - Promotion sweep every settings.sweep_interval_seconds
    - Liveness watchdog every settings.watchdog_interval_seconds

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_dispatch_job,
        IntervalTrigger(seconds=settings.dispatch_interval_seconds),
        id="analysis_dispatch",
        name="Dispatch scans ready for analysis",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        run_sweep_job,
        IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id="promotion_sweep",
        name="Promote detected subscriptions",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        run_watchdog_job,
        IntervalTrigger(seconds=settings.watchdog_interval_seconds),
        id="liveness_watchdog",
        name="Scan liveness watchdog",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: dispatch every %d seconds, sweep every %d seconds, "
        "watchdog every %d seconds",
        settings.dispatch_interval_seconds,
        settings.sweep_interval_seconds,
        settings.watchdog_interval_seconds,
    )

    return scheduler
