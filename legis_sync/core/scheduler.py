from typing import Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from legis_sync.core.config import Settings, settings
from legis_sync.core.errors import capture_exception
from legis_sync.core.logging_config import get_logger
from legis_sync.services.sync import SyncOrchestrator, SyncOutcome

logger = get_logger(__name__)


async def job_incremental_sync(
    orchestrator: SyncOrchestrator,
    entities: Optional[Iterable[str]] = None,
    job_name: str = "incremental",
) -> Optional[SyncOutcome]:
    """Scheduled incremental sync. Never raises into the scheduler."""
    logger.info("scheduled sync starting", job=job_name)
    try:
        outcome = await orchestrator.run_incremental(entities=entities)
    except Exception as e:
        capture_exception(e, context={"job": job_name})
        return None
    logger.info("scheduled sync done", job=job_name, status=outcome.status, processed=outcome.processed)
    return outcome


def start_scheduler(
    orchestrator: SyncOrchestrator,
    scheduler: Optional[AsyncIOScheduler] = None,
    config: Settings = settings,
) -> AsyncIOScheduler:
    """
    Register the sync jobs and start the scheduler on the running event loop.

    Job configuration for durability:
    - max_instances=1: a slow run is never overlapped by the next trigger
    - misfire_grace_time: late execution is allowed within the grace period, then skipped
    - coalesce=True: several missed runs collapse into one
    """
    scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    # Full incremental sync once a day, off-peak
    scheduler.add_job(
        job_incremental_sync,
        CronTrigger(hour=config.DAILY_SYNC_HOUR, minute=0, timezone="UTC"),
        args=[orchestrator, config.INCREMENTAL_ENTITIES, "daily"],
        id="job_daily_sync",
        max_instances=1,
        misfire_grace_time=3600,  # 1 hour
        coalesce=True,
        replace_existing=True,
    )

    # Quick sync of fast-moving entities (new bills) during the day
    scheduler.add_job(
        job_incremental_sync,
        IntervalTrigger(minutes=config.QUICK_SYNC_INTERVAL_MINUTES),
        args=[orchestrator, config.QUICK_SYNC_ENTITIES, "quick"],
        id="job_quick_sync",
        max_instances=1,
        misfire_grace_time=600,  # 10 minutes
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "scheduler started",
        daily_sync_hour=config.DAILY_SYNC_HOUR,
        quick_sync_minutes=config.QUICK_SYNC_INTERVAL_MINUTES,
    )
    return scheduler


def shutdown_scheduler(scheduler: AsyncIOScheduler, wait: bool = False) -> None:
    """Stop triggering jobs. Running jobs are cancelled with the event loop."""
    if scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("scheduler stopped")
