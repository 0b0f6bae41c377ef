"""
Batch processor: pushes each record to the external system independently.

For every SyncRecord:
  1. existing_mappings[local_id] present  → adapter.update_record(external_id, data)
     otherwise                            → adapter.create_record(data)
  2. the call is wrapped in retry_with_backoff
  3. the outcome becomes one RecordSyncResult

Results come back in input order. A failing record never stops the batch.
"""
import asyncio
import logging
from typing import Any, List, Mapping, Optional, Sequence

from freightsync.models.sync import (
    DEFAULT_RETRY_CONFIG,
    OPERATION_CREATE,
    OPERATION_UPDATE,
    OperationResult,
    RecordSyncResult,
    RetryConfig,
    SyncRecord,
)
from freightsync.sync.adapter import ExternalApiAdapter
from freightsync.sync.retry import SleepFn, TokenRefreshFn, retry_with_backoff, sleep

logger = logging.getLogger(__name__)


def _as_operation_result(response) -> OperationResult:
    return OperationResult(
        success=response.success,
        data=response.external_id,
        error=response.error,
        error_code=response.error_code,
    )


async def _sync_one(
    record: SyncRecord,
    existing_mappings: Mapping[str, Any],
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig,
    on_token_expired: Optional[TokenRefreshFn],
    sleep_fn: SleepFn,
) -> RecordSyncResult:
    existing = existing_mappings.get(record.local_id)

    if existing is not None:
        operation = OPERATION_UPDATE
        external_id = existing.external_id

        async def call() -> OperationResult:
            response = await adapter.update_record(external_id, record.data)
            result = _as_operation_result(response)
            result.data = external_id
            return result
    else:
        operation = OPERATION_CREATE

        async def call() -> OperationResult:
            return _as_operation_result(await adapter.create_record(record.data))

    outcome = await retry_with_backoff(call, retry_config, on_token_expired, sleep_fn)

    if not outcome.success:
        logger.info(
            "Record %s %s failed: %s (%s)",
            record.local_id, operation, outcome.error, outcome.error_code,
        )
        return RecordSyncResult(
            local_id=record.local_id,
            success=False,
            operation=operation,
            error=outcome.error,
            error_code=outcome.error_code,
        )
    return RecordSyncResult(
        local_id=record.local_id,
        success=True,
        operation=operation,
        external_id=outcome.data,
    )


async def process_sync_batch(
    records: Sequence[SyncRecord],
    existing_mappings: Mapping[str, Any],
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_token_expired: Optional[TokenRefreshFn] = None,
    *,
    concurrency: int = 1,
    sleep_fn: SleepFn = sleep,
) -> List[RecordSyncResult]:
    """
    Create or update every record on the external system.

    Args:
        records: Units of work; processed independently.
        existing_mappings: local_id → ExternalIdMapping (anything with an
            external_id attribute) for records already known remotely.
        adapter: External system capabilities.
        retry_config: Retry limits applied per record.
        on_token_expired: Optional token refresh hook, see retry_with_backoff.
        concurrency: Records in flight at once. 1 keeps strict array order.
        sleep_fn: Backoff delay function (milliseconds).

    Returns:
        One RecordSyncResult per record, in input order.
    """
    if concurrency <= 1:
        results = []
        for record in records:
            results.append(await _sync_one(
                record, existing_mappings, adapter, retry_config,
                on_token_expired, sleep_fn,
            ))
        return results

    semaphore = asyncio.Semaphore(concurrency)

    async def bounded(record: SyncRecord) -> RecordSyncResult:
        async with semaphore:
            return await _sync_one(
                record, existing_mappings, adapter, retry_config,
                on_token_expired, sleep_fn,
            )

    return list(await asyncio.gather(*(bounded(r) for r in records)))
