"""APScheduler setup for the daily review sync job."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.config import get_settings
from app.core.database import async_session_maker
from app.services.errors import SyncError
from app.services.sync import create_orchestrator

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_scheduled_sync():
    """Run the daily review sync job across all accounts."""
    logger.info("Starting scheduled review sync job")

    orchestrator = create_orchestrator(async_session_maker)
    try:
        result = await orchestrator.sync_all()
        logger.info(
            f"Scheduled sync completed: {result.status}, "
            f"{result.locations_count} locations, {result.locations_failed} failed"
        )
    except SyncError as e:
        # The run record, when one was opened, already carries the failure
        logger.error(f"Scheduled sync failed: {e}")
    finally:
        await orchestrator.close()


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=settings.tz)

    scheduler.add_job(
        run_scheduled_sync,
        CronTrigger(hour=settings.sync_hour, minute=settings.sync_minute),
        id="daily_review_sync",
        name="Daily Google review sync",
        replace_existing=True,
        # A manual trigger may still be running; never stack scheduled runs
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - daily review sync at {settings.sync_hour}:{settings.sync_minute:02d}")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
