"""
Main entrypoint: runs the sync scheduler, or a one-off sync.

FastAPI runs separately under uvicorn (for the /sync trigger endpoint).

Usage:
    python -m cgmsync                   # starts the interval scheduler
    python -m cgmsync sync <user_id>    # sync one user now and print the result
    uvicorn cgmsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import json
import logging
import sys

from cgmsync.config import get_settings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once(user_id: str) -> int:
    from cgmsync.db.engine import get_engine
    from cgmsync.errors import SyncError
    from cgmsync.scheduler.jobs import build_sync_service

    service = build_sync_service(get_engine(), get_settings())
    try:
        result = await service.sync_user(user_id, sync_type="manual")
    except SyncError as exc:
        logger.error("Sync failed for user %s: %s", user_id, exc.message)
        return 1

    print(json.dumps({
        "status": result.status,
        "glucoseReadings": result.glucose_readings,
        "devicesProcessed": result.devices_processed,
        "sensorsProcessed": result.sensors_processed,
        "newSensors": result.new_sensors,
        "updatedSensors": result.updated_sensors,
        "errors": result.errors,
    }, indent=2))
    return 0


async def _run_scheduler() -> None:
    from cgmsync.db.engine import get_engine
    from cgmsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (Dexcom sync every %d minutes). Press Ctrl+C to stop.",
        settings.sync_interval_minutes,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m cgmsync sync <user_id>` or just `python -m cgmsync`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        if len(sys.argv) < 3:
            print("usage: python -m cgmsync sync <user_id>", file=sys.stderr)
            sys.exit(2)
        sys.exit(asyncio.run(_run_once(sys.argv[2])))
    else:
        asyncio.run(_run_scheduler())
