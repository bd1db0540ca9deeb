"""
APScheduler jobs for background sync.

Every few minutes each entity is re-synced over a trailing window of its
last-modified field, which picks up new documents and edits (including
date moves) without a full window scan. A second job expires jobs whose
worker died so their windows can be synced again.
"""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from acusync.acumatica.kinds import ENTITIES
from acusync.config import get_settings
from acusync.engine import Failure, JobHandle

logger = logging.getLogger(__name__)


def build_scheduler(sync_engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        sync_engine: SyncEngine the jobs run against.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _incremental_sync,
        trigger="cron",
        minute=f"*/{settings.scheduled_sync_minutes}",
        id="incremental_sync",
        replace_existing=True,
        max_instances=1,
        kwargs={"sync_engine": sync_engine},
    )
    scheduler.add_job(
        _expire_stale_jobs,
        trigger="interval",
        minutes=settings.job_expiry_minutes,
        id="expire_stale_jobs",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine},
    )

    return scheduler


async def _incremental_sync(sync_engine) -> None:
    """Sync every entity over the trailing lookback window of LastModifiedDateTime."""
    settings = get_settings()
    end = datetime.utcnow()
    start = end - timedelta(hours=settings.scheduled_lookback_hours)
    logger.info("Incremental sync starting for %s..%s", start.isoformat(), end.isoformat())

    for name, config in ENTITIES.items():
        result = await sync_engine.sync_window(
            name,
            start,
            end,
            source="scheduled_sync",
            date_field=config.modified_field,
            wait_seconds=settings.job_expiry_minutes * 60,
        )
        if isinstance(result, Failure):
            logger.error("Incremental %s sync failed: %s", name, result.message)
        elif isinstance(result, JobHandle):
            logger.info("Incremental %s sync still running as job %s", name, result.job_id)
        else:
            logger.info(
                "Incremental %s sync %s: %d created, %d updated, %d errors",
                name, result.status, result.created, result.updated, len(result.errors),
            )


async def _expire_stale_jobs(sync_engine) -> None:
    try:
        sync_engine.tracker.expire_stale()
    except Exception as exc:
        logger.error("Expiring stale jobs failed: %s", exc)
