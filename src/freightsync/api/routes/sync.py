"""Sync trigger, retry, status and statistics routes."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from freightsync.config import get_settings
from freightsync.db.engine import get_engine, get_session
from freightsync.models.integration import (
    SYNC_STATUSES,
    IntegrationConnection,
    SyncLog,
    SyncMapping,
)
from freightsync.models.sync import SYNC_TYPE_FULL, SYNC_TYPE_PULL, SYNC_TYPE_PUSH
from freightsync.sync.service import IntegrationSyncService, rest_adapter_factory
from freightsync.sync.sync_log import calculate_sync_duration, calculate_sync_stats

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    connection_id: str
    mapping_id: Optional[str] = None  # required for push / pull
    sync_type: str = SYNC_TYPE_FULL


class SyncStatusResponse(BaseModel):
    id: Optional[str]
    status: str
    sync_type: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_seconds: Optional[float]
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_details: Optional[List[Dict[str, Any]]] = None


def get_sync_service() -> IntegrationSyncService:
    """Dependency building the service from settings; overridden in tests."""
    settings = get_settings()
    return IntegrationSyncService(
        engine=get_engine(),
        adapter_factory=rest_adapter_factory(settings.http_timeout_seconds),
        retry_config=settings.retry_config(),
        concurrency=settings.sync_concurrency,
        token_expiry_buffer_seconds=settings.token_expiry_buffer_seconds,
    )


async def _do_sync(service: IntegrationSyncService, request: SyncTriggerRequest) -> None:
    """Background task: run the requested sync. Failures end up in the SyncLog."""
    try:
        if request.sync_type == SYNC_TYPE_PUSH:
            await service.push_sync(request.connection_id, request.mapping_id)
        elif request.sync_type == SYNC_TYPE_PULL:
            await service.pull_sync(request.connection_id, request.mapping_id)
        else:
            await service.full_sync(request.connection_id)
    except Exception as exc:
        logger.error("Triggered %s sync failed: %s", request.sync_type, exc)


async def _do_retry(service: IntegrationSyncService, sync_log_id: str) -> None:
    try:
        await service.retry_failed(sync_log_id)
    except Exception as exc:
        logger.error("Retry of sync log %s failed: %s", sync_log_id, exc)


def _status_response(log: SyncLog) -> SyncStatusResponse:
    return SyncStatusResponse(
        id=log.id,
        status=log.status,
        sync_type=log.sync_type,
        started_at=log.started_at,
        completed_at=log.completed_at,
        duration_seconds=calculate_sync_duration(log),
        records_processed=log.records_processed,
        records_created=log.records_created,
        records_updated=log.records_updated,
        records_failed=log.records_failed,
        error_details=log.error_details,
    )


@router.post("/trigger", status_code=202)
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    service: IntegrationSyncService = Depends(get_sync_service),
):
    """
    Start a sync for a connection. Returns immediately; the sync runs in the
    background and records its outcome in a SyncLog.
    """
    if request.sync_type not in (SYNC_TYPE_FULL, SYNC_TYPE_PUSH, SYNC_TYPE_PULL):
        raise HTTPException(status_code=422, detail=f"Unknown sync_type {request.sync_type}")
    if session.get(IntegrationConnection, request.connection_id) is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    if request.sync_type != SYNC_TYPE_FULL:
        if not request.mapping_id:
            raise HTTPException(status_code=422, detail="mapping_id is required")
        mapping = session.get(SyncMapping, request.mapping_id)
        if mapping is None or mapping.connection_id != request.connection_id:
            raise HTTPException(status_code=404, detail="Mapping not found")

    background_tasks.add_task(_do_sync, service, request)
    return {
        "message": "Sync started",
        "connection_id": request.connection_id,
        "mapping_id": request.mapping_id,
        "sync_type": request.sync_type,
    }


@router.post("/logs/{sync_log_id}/retry", status_code=202)
async def retry_sync(
    sync_log_id: str,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    service: IntegrationSyncService = Depends(get_sync_service),
):
    """Re-push the records that failed in a previous run."""
    if session.get(SyncLog, sync_log_id) is None:
        raise HTTPException(status_code=404, detail="Sync log not found")
    background_tasks.add_task(_do_retry, service, sync_log_id)
    return {"message": "Retry started", "sync_log_id": sync_log_id}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    connection_id: Optional[str] = None,
    session: Session = Depends(get_session),
):
    """Return the most recent sync run, optionally for one connection."""
    query = select(SyncLog)
    if connection_id:
        query = query.where(SyncLog.connection_id == connection_id)
    log = session.exec(query.order_by(SyncLog.started_at.desc())).first()
    if not log:
        return SyncStatusResponse(
            id=None,
            status="never_run",
            sync_type=None,
            started_at=None,
            completed_at=None,
            duration_seconds=None,
        )
    return _status_response(log)


@router.get("/logs", response_model=List[SyncStatusResponse])
def list_sync_logs(
    connection_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    session: Session = Depends(get_session),
):
    if status is not None and status not in SYNC_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown status {status}")
    query = select(SyncLog)
    if connection_id:
        query = query.where(SyncLog.connection_id == connection_id)
    if status:
        query = query.where(SyncLog.status == status)
    logs = session.exec(query.order_by(SyncLog.started_at.desc()).limit(limit)).all()
    return [_status_response(log) for log in logs]


@router.get("/stats")
def sync_stats(
    connection_id: Optional[str] = None,
    session: Session = Depends(get_session),
):
    """Aggregate counters over all sync runs (or one connection's)."""
    query = select(SyncLog)
    if connection_id:
        query = query.where(SyncLog.connection_id == connection_id)
    return calculate_sync_stats(session.exec(query).all())
