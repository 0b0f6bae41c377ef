"""
Main entrypoint: runs the sync scheduler, or one sync on demand.

FastAPI runs separately under uvicorn.

Usage:
    python -m freightsync                          # starts the scheduler
    python -m freightsync sync <connection_id>     # one full sync, then exit
    python -m freightsync retry <sync_log_id>      # retry failed records
    uvicorn freightsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

from freightsync.config import get_settings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _print_log(log) -> None:
    print(
        f"{log.sync_type} {log.id}: {log.status} "
        f"({log.records_processed} processed, {log.records_created} created, "
        f"{log.records_updated} updated, {log.records_failed} failed)"
    )
    for err in log.error_details or []:
        print(f"  {err['record_id']}: {err['error_code']} {err['error_message']}")


async def _run_once(command: str, target_id: str) -> int:
    from freightsync.db.engine import get_engine
    from freightsync.scheduler.jobs import _build_service
    from freightsync.sync.service import UnknownConnectionError, UnknownSyncLogError

    service = _build_service(get_engine())
    try:
        if command == "sync":
            log = await service.full_sync(target_id)
        else:
            log = await service.retry_failed(target_id)
    except (UnknownConnectionError, UnknownSyncLogError) as exc:
        logger.error("%s", exc)
        return 1
    _print_log(log)
    return 0 if log.status == "completed" else 2


async def _run_scheduler() -> None:
    from freightsync.db.engine import get_engine
    from freightsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (nightly full sync at %02d:00 UTC)",
        settings.full_sync_hour,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    # Dispatch on first argument: `sync <id>`, `retry <id>` or nothing
    if len(sys.argv) > 2 and sys.argv[1] in ("sync", "retry"):
        sys.exit(asyncio.run(_run_once(sys.argv[1], sys.argv[2])))
    elif len(sys.argv) > 1:
        print(__doc__)
        sys.exit(1)
    else:
        asyncio.run(_run_scheduler())
