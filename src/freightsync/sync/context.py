"""
Sync context accumulator.

Pure functions over the frozen SyncContext dataclass. Every function returns
a new context and keeps two invariants:

    records_processed == records_created + records_updated + records_failed
    len(errors) == records_failed

Concurrent producers must fold their results into the context sequentially.
"""
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from freightsync.models.sync import (
    OPERATION_CREATE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    RecordSyncResult,
    SyncContext,
    SyncError,
    SyncResult,
    utcnow,
)

UNKNOWN_ERROR_CODE = "UNKNOWN_ERROR"


def create_sync_context(
    connection_id: str, mapping_id: Optional[str], sync_type: str
) -> SyncContext:
    return SyncContext(
        connection_id=connection_id,
        mapping_id=mapping_id,
        sync_type=sync_type,
        started_at=utcnow(),
    )


def record_create(ctx: SyncContext) -> SyncContext:
    return replace(
        ctx,
        records_processed=ctx.records_processed + 1,
        records_created=ctx.records_created + 1,
    )


def record_update(ctx: SyncContext) -> SyncContext:
    return replace(
        ctx,
        records_processed=ctx.records_processed + 1,
        records_updated=ctx.records_updated + 1,
    )


def record_failure(
    ctx: SyncContext,
    record_id: str,
    error_code: str,
    error_message: str,
    mapping_id: Optional[str] = None,
) -> SyncContext:
    """Count a failed record; the error is tagged with the context's mapping
    unless `mapping_id` names another one."""
    error = SyncError(
        record_id=record_id,
        error_code=error_code,
        error_message=error_message,
        timestamp=utcnow().isoformat(),
        mapping_id=mapping_id or ctx.mapping_id,
    )
    return replace(
        ctx,
        records_processed=ctx.records_processed + 1,
        records_failed=ctx.records_failed + 1,
        errors=ctx.errors + (error,),
    )


def update_context_from_results(
    ctx: SyncContext, results: Iterable[RecordSyncResult]
) -> SyncContext:
    """Fold record_create / record_update / record_failure over results, in order."""
    for result in results:
        if not result.success:
            ctx = record_failure(
                ctx,
                result.local_id,
                result.error_code or UNKNOWN_ERROR_CODE,
                result.error or "Unknown error",
            )
        elif result.operation == OPERATION_CREATE:
            ctx = record_create(ctx)
        else:
            ctx = record_update(ctx)
    return ctx


def merge_contexts(ctx: SyncContext, other: SyncContext) -> SyncContext:
    """Add `other`'s counters and errors onto `ctx` (identity fields from ctx)."""
    return replace(
        ctx,
        records_processed=ctx.records_processed + other.records_processed,
        records_created=ctx.records_created + other.records_created,
        records_updated=ctx.records_updated + other.records_updated,
        records_failed=ctx.records_failed + other.records_failed,
        errors=ctx.errors + other.errors,
    )


def context_status(ctx: SyncContext) -> str:
    if ctx.records_failed == 0:
        return STATUS_COMPLETED
    if ctx.records_processed > 0 and ctx.records_created + ctx.records_updated == 0:
        return STATUS_FAILED
    return STATUS_PARTIAL


def context_to_result(
    ctx: SyncContext, log_id: str, completed_at: Optional[datetime] = None
) -> SyncResult:
    return SyncResult(
        id=log_id,
        connection_id=ctx.connection_id,
        mapping_id=ctx.mapping_id,
        sync_type=ctx.sync_type,
        started_at=ctx.started_at,
        completed_at=completed_at or utcnow(),
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
        status=context_status(ctx),
        error_details=list(ctx.errors),
    )
