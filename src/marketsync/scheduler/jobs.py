"""
APScheduler jobs for background sync.

Nightly full sync (cron, `full_sync_hour` UTC) runs every stage in order.
The live job (interval, `live_sync_minutes`) keeps sales and current
listings fresh between full syncs.

Job bodies catch everything so one failed run never stops the scheduler.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from marketsync.clock import utcnow
from marketsync.config import get_settings
from marketsync.errors import StageBusyError

logger = logging.getLogger(__name__)

LIVE_STAGES = ("sales", "listings")


def build_scheduler(service) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        service: SyncService the jobs drive.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_full_sync,
        trigger="cron",
        hour=settings.full_sync_hour,
        minute=0,
        id="nightly_full_sync",
        replace_existing=True,
        kwargs={"service": service},
    )
    scheduler.add_job(
        _live_sync,
        trigger="interval",
        minutes=settings.live_sync_minutes,
        id="live_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"service": service},
    )

    return scheduler


async def _nightly_full_sync(service) -> None:
    logger.info("Nightly full sync starting at %s", utcnow().isoformat())
    try:
        result = await service.run_full_sync(
            trigger="scheduled", triggered_by=get_settings().triggered_by
        )
        logger.info(
            "Nightly full sync %s: %d processed, %d failed",
            "completed" if result.success else "failed",
            result.records_processed,
            result.records_failed,
        )
    except StageBusyError as exc:
        logger.warning("Nightly full sync skipped: %s", exc)
    except Exception as exc:
        logger.error("Nightly full sync failed: %s", exc)


async def _live_sync(service) -> None:
    """Refresh sales then listings. A busy stage is skipped, not waited for."""
    for stage_name in LIVE_STAGES:
        try:
            result = await service.run_stage(
                stage_name, trigger="scheduled", triggered_by=get_settings().triggered_by
            )
            logger.info(
                "Live %s sync %s: %d processed",
                stage_name,
                "completed" if result.success else "failed",
                result.records_processed,
            )
        except StageBusyError as exc:
            logger.warning("Live %s sync skipped: %s", stage_name, exc)
        except Exception as exc:
            logger.error("Live %s sync failed: %s", stage_name, exc)
