"""Scheduler host entry point."""

import argparse
import asyncio
import logging
import sys

from pricewatch import metrics
from pricewatch.config import ConfigurationError, settings, validate_settings
from pricewatch.db.session import AsyncSessionLocal, engine, init_db
from pricewatch.logging_config import setup_logging
from pricewatch.notify.dispatcher import NotificationDispatcher
from pricewatch.worker.check_worker import CheckWorker
from pricewatch.worker.product_lock import build_product_lock
from pricewatch.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)


def build_worker() -> CheckWorker:
    dispatcher = NotificationDispatcher(session_factory=AsyncSessionLocal)
    return CheckWorker(
        session_factory=AsyncSessionLocal,
        lock=build_product_lock(settings, engine=engine),
        on_events=dispatcher.handle,
    )


async def run(once: bool = False) -> int:
    """
    Start the service.

    Args:
        once: Run a single check cycle and exit instead of scheduling
    """
    logger.info("Starting price watch worker...")
    await init_db()

    worker = build_worker()
    scheduler = None
    try:
        if once:
            summary = await worker.run_cycle()
            return 1 if summary.error else 0

        metrics.start_metrics_server(settings.metrics_port)
        scheduler = setup_scheduler(worker)
        scheduler.start()
        logger.info("Scheduler started")

        await asyncio.Event().wait()
        return 0
    finally:
        logger.info("Shutting down...")
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        await worker.close()
        await engine.dispose()
        logger.info("Shutdown complete")


def cli(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Re-check tracked products for price and stock changes")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one check cycle and exit",
    )
    args = parser.parse_args(argv)

    setup_logging()
    try:
        validate_settings(settings)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        return asyncio.run(run(once=args.once))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(cli())
