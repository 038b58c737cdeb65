"""
APScheduler jobs for background sync.

An interval job walks every user with an active, unexpired Dexcom
credential and runs a scheduled sync for each, least recently synced
first and capped per pass to stay inside the vendor rate limit. Users
skipped this pass are picked up by the next one.

The scheduler runs inside the `python -m cgmsync` process.
"""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cgmsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _scheduled_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="dexcom_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine},
    )

    return scheduler


def build_sync_service(engine, settings):
    """Wire a DexcomSyncService from settings (shared with the CLI)."""
    from cgmsync.dexcom.backfill import build_backfill_trigger
    from cgmsync.dexcom.client import client_factory_from_settings
    from cgmsync.dexcom.sync_service import DexcomSyncService
    from cgmsync.scheduler.locks import UserSyncLock

    return DexcomSyncService(
        engine,
        client_factory_from_settings(settings),
        backfill=build_backfill_trigger(settings),
        lock=UserSyncLock(engine, ttl_seconds=settings.lock_ttl_seconds),
        lookback=timedelta(hours=settings.default_lookback_hours),
        session_lookback=timedelta(days=settings.session_lookback_days),
    )


async def _scheduled_sync(engine) -> None:
    """
    Interval job: sync every eligible user once.

    Never raises, so the scheduler stays alive.
    """
    from cgmsync.dexcom.credentials import CredentialStore

    settings = get_settings()
    logger.info("Scheduled Dexcom sync starting at %s", datetime.utcnow().isoformat())

    try:
        service = build_sync_service(engine, settings)
        credentials = CredentialStore(engine).list_syncable(
            datetime.utcnow(), limit=settings.max_users_per_run
        )
    except Exception as exc:
        logger.error("Scheduled sync could not start: %s", exc)
        return

    synced = 0
    for credential in credentials:
        try:
            result = await service.sync_user(credential.user_id, sync_type="scheduled")
            synced += 1
            logger.info(
                "Synced user %s: %d readings (%s)",
                credential.user_id, result.glucose_readings, result.status,
            )
        except Exception as exc:
            logger.warning("Scheduled sync failed for user %s: %s", credential.user_id, exc)

    logger.info("Scheduled sync finished: %d/%d users synced", synced, len(credentials))
