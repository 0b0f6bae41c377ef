"""
APScheduler jobs for background sync.

Nightly full sync of every active connection catches anything the on-demand
trigger missed. Connections with hourly mappings are also synced every hour.

The scheduler runs in the `python -m freightsync` process.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from freightsync.config import get_settings
from freightsync.models.integration import IntegrationConnection, SyncMapping
from freightsync.models.sync import utcnow

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
        _nightly_full_sync,
        trigger="cron",
        hour=settings.full_sync_hour,
        minute=0,
        id="nightly_full_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _hourly_sync,
        trigger="cron",
        minute=15,
        id="hourly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


def _build_service(engine):
    from freightsync.sync.service import IntegrationSyncService, rest_adapter_factory

    settings = get_settings()
    return IntegrationSyncService(
        engine=engine,
        adapter_factory=rest_adapter_factory(settings.http_timeout_seconds),
        retry_config=settings.retry_config(),
        concurrency=settings.sync_concurrency,
        token_expiry_buffer_seconds=settings.token_expiry_buffer_seconds,
    )


def _active_connection_ids(engine, frequency=None):
    with Session(engine) as s:
        query = select(IntegrationConnection.id).where(IntegrationConnection.is_active == True)  # noqa: E712
        if frequency is not None:
            query = query.where(
                IntegrationConnection.id.in_(
                    select(SyncMapping.connection_id).where(
                        SyncMapping.sync_frequency == frequency,
                        SyncMapping.is_active == True,  # noqa: E712
                    )
                )
            )
        return list(s.exec(query).all())


async def _sync_connections(engine, connection_ids) -> None:
    service = _build_service(engine)
    for connection_id in connection_ids:
        try:
            log = await service.full_sync(connection_id)
            logger.info("Connection %s synced: %s", connection_id, log.status)
        except Exception as exc:
            # One broken connection must not stop the others
            logger.error("Full sync of connection %s failed: %s", connection_id, exc)


async def _nightly_full_sync(engine) -> None:
    """Nightly job: full sync of every active connection."""
    logger.info("Nightly full sync starting at %s", utcnow().isoformat())
    try:
        connection_ids = _active_connection_ids(engine)
    except Exception as exc:
        logger.error("Nightly full sync failed: %s", exc)
        return
    await _sync_connections(engine, connection_ids)


async def _hourly_sync(engine) -> None:
    """Hourly job: full sync of connections that have hourly mappings."""
    try:
        connection_ids = _active_connection_ids(engine, frequency="hourly")
    except Exception as exc:
        logger.error("Hourly sync failed: %s", exc)
        return
    if connection_ids:
        logger.info("Hourly sync of %d connection(s)", len(connection_ids))
    await _sync_connections(engine, connection_ids)
