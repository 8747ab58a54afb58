# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mya_recovery.config.settings import settings
from mya_recovery.jobs.recovery_job import drain, run_maintenance
from mya_recovery.services.db_service import db_service
from mya_recovery.utils.logging import setup_logging

setup_logging()
logger = logging.getLogger("SchedulerService")

MAINTENANCE_INTERVAL_MINUTES = 15


async def run_recovery_drain():
    logger.info("Starting scheduled recovery drain...")
    results = await drain()
    logger.info(f"Scheduled recovery drain processed {len(results)} schedules.")


async def run_recovery_maintenance():
    summary = await run_maintenance()
    logger.info(f"Recovery maintenance finished: {summary}")


async def main():
    await db_service.create_indexes()

    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    # Job 1: Drain due recovery schedules
    scheduler.add_job(
        run_recovery_drain,
        'interval',
        minutes=settings.recovery_drain_interval_minutes,
        id="recovery_drain_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: run_recovery_drain (every {settings.recovery_drain_interval_minutes} minutes).")

    # Job 2: Requeue stuck schedules and expire stale sessions
    scheduler.add_job(
        run_recovery_maintenance,
        'interval',
        minutes=MAINTENANCE_INTERVAL_MINUTES,
        id="recovery_maintenance_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: run_recovery_maintenance (every {MAINTENANCE_INTERVAL_MINUTES} minutes).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
