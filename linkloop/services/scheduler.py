"""Background job scheduler.

APScheduler-based jobs for periodic feed syncs, the stale-data sweep and
the daily recap.
"""

import asyncio
import uuid

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from linkloop.cgm import reconciler
from linkloop.config import settings
from linkloop.database import get_db_session
from linkloop.logging_config import get_logger
from linkloop.services import alert_pipeline, daily_summary
from linkloop.services.notification_dispatcher import dispatcher

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def _sync_owner(semaphore: asyncio.Semaphore, owner_id: uuid.UUID) -> bool:
    async with semaphore:
        try:
            # New session per account to isolate errors
            async with get_db_session() as db:
                outcome = await reconciler.sync_all(db, owner_id)
        except Exception as e:
            logger.error(
                "Unexpected error in scheduled CGM sync",
                owner_id=str(owner_id),
                error=str(e),
            )
            return False

    for connection_type, error in outcome.errors.items():
        logger.warning(
            "Scheduled CGM sync failed",
            owner_id=str(owner_id),
            connection_type=connection_type.value,
            error_code=error.code,
            error=error.message,
        )
    return outcome.ok


async def sync_all_connections() -> None:
    """Sync every connected feed, a bounded number at a time.

    Accounts are independent, so one account's failure never stops the
    others. Syncs already running for a connection are waited on through
    the per-connection lock rather than duplicated.
    """
    logger.info("Starting scheduled CGM sync")

    async with get_db_session() as db:
        owner_ids = await reconciler.list_connected_owners(db)

    if not owner_ids:
        logger.info("No connected CGM feeds to sync")
        return

    semaphore = asyncio.Semaphore(settings.cgm_sync_concurrency)
    results = await asyncio.gather(
        *(_sync_owner(semaphore, owner_id) for owner_id in owner_ids)
    )
    success_count = sum(1 for ok in results if ok)

    logger.info(
        "Scheduled CGM sync completed",
        success_count=success_count,
        error_count=len(results) - success_count,
    )


async def check_stale_feeds() -> None:
    """Raise no_data alerts for owners whose connected feeds went quiet."""
    async with get_db_session() as db:
        owner_ids = await reconciler.list_connected_owners(db)

    if not owner_ids:
        return

    alert_count = 0
    error_count = 0
    for owner_id in owner_ids:
        try:
            async with get_db_session() as db:
                outcome = await alert_pipeline.check_stale_feed(db, owner_id)
                if outcome is not None:
                    alert_count += 1
        except Exception as e:
            logger.error(
                "Stale data check failed for owner",
                owner_id=str(owner_id),
                error=str(e),
            )
            error_count += 1

    logger.info(
        "Stale data check completed",
        owners_checked=len(owner_ids),
        alerts=alert_count,
        errors=error_count,
    )


async def send_daily_summaries() -> None:
    """Send the daily recap for every owner with an active care circle."""
    async with get_db_session() as db:
        owner_ids = await daily_summary.list_owners_with_circle(db)

    if not owner_ids:
        return

    sent = 0
    error_count = 0
    for owner_id in owner_ids:
        try:
            async with get_db_session() as db:
                sent += await daily_summary.send_daily_summary(
                    db, owner_id, dispatcher.backend
                )
        except Exception as e:
            logger.error(
                "Daily summary failed for owner",
                owner_id=str(owner_id),
                error=str(e),
            )
            error_count += 1

    logger.info(
        "Daily summaries completed",
        owners=len(owner_ids),
        notifications=sent,
        errors=error_count,
    )


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.cgm_sync_enabled:
        scheduler.add_job(
            sync_all_connections,
            trigger=IntervalTrigger(minutes=settings.cgm_sync_interval_minutes),
            id="cgm_sync",
            name="CGM Feed Sync",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled CGM sync job",
            interval_minutes=settings.cgm_sync_interval_minutes,
        )

    if settings.stale_data_check_enabled:
        scheduler.add_job(
            check_stale_feeds,
            trigger=IntervalTrigger(minutes=settings.stale_data_check_interval_minutes),
            id="stale_data_check",
            name="Stale Data Check",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled stale data check job",
            interval_minutes=settings.stale_data_check_interval_minutes,
        )

    if settings.daily_summary_enabled:
        scheduler.add_job(
            send_daily_summaries,
            trigger=CronTrigger(
                hour=settings.daily_summary_hour_utc, minute=0, timezone="UTC"
            ),
            id="daily_summary",
            name="Daily Summary",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled daily summary job",
            hour_utc=settings.daily_summary_hour_utc,
        )

    scheduler.start()
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler
