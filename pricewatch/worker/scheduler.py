"""APScheduler job definitions."""

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pricewatch.config import settings
from pricewatch.worker.check_worker import CheckWorker

logger = logging.getLogger(__name__)


def setup_scheduler(worker: CheckWorker) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    One interval job runs ``worker.run_cycle`` every
    ``settings.check_interval_minutes``. The first cycle fires immediately.

    Returns:
        Configured scheduler instance (not started)
    """
    scheduler = AsyncIOScheduler()
    interval = max(1, int(settings.check_interval_minutes))

    scheduler.add_job(
        worker.run_cycle,
        IntervalTrigger(minutes=interval),
        id="product_checks",
        name="Re-check tracked products",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=settings.misfire_grace_seconds,
        replace_existing=True,
        next_run_time=datetime.now(timezone.utc),
    )

    logger.info(
        "Scheduler configured: product checks every %d minutes, up to %d products per cycle, "
        "concurrency %d",
        interval,
        worker.batch_size,
        worker.concurrency,
    )
    return scheduler
