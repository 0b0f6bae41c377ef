"""
Sync orchestrators: push, pull, full sync and retry-failed.

Each one composes the retry policy, the batch processor and the context
accumulator around a single SyncContext. None of them raise for adapter or
loader failures; failures are reported through the returned context and
result objects and the caller persists them as a SyncLog.

Data access (sync mappings, external-id mappings, local records) is never
queried here. The caller passes the data in, or passes loader callables for
full sync.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from freightsync.models.sync import (
    DEFAULT_RETRY_CONFIG,
    SYNC_TYPE_FULL,
    SYNC_TYPE_PULL,
    SYNC_TYPE_PUSH,
    OperationResult,
    RecordSyncResult,
    RetryConfig,
    SyncContext,
    SyncRecord,
)
from freightsync.sync.adapter import ExternalApiAdapter
from freightsync.sync.batch import process_sync_batch
from freightsync.sync.context import (
    create_sync_context,
    merge_contexts,
    record_create,
    record_failure,
    update_context_from_results,
)
from freightsync.sync.field_mapping import (
    apply_field_mappings,
    filter_active_mappings,
    filter_records,
)
from freightsync.sync.retry import SleepFn, TokenRefreshFn, retry_with_backoff, sleep

logger = logging.getLogger(__name__)

NOT_SUPPORTED = "NOT_SUPPORTED"
MAPPING_ERROR = "MAPPING_ERROR"

RecordsLoader = Callable[[Any], Awaitable[List[Dict[str, Any]]]]
ExistingMappingsLoader = Callable[[Any], Awaitable[List[Any]]]


# ─── Inputs / outputs ────────────────────────────────────────────────────────

@dataclass
class PushSyncInput:
    connection: Any
    mapping: Any
    records: List[Dict[str, Any]]
    existing_mappings: List[Any]
    adapter: ExternalApiAdapter
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG
    on_token_expired: Optional[TokenRefreshFn] = None


@dataclass
class PushSyncPreparation:
    context: SyncContext
    prepared_records: List[SyncRecord]
    mapping_lookup: Dict[str, Any]


@dataclass
class PushSyncOutcome:
    context: SyncContext
    results: List[RecordSyncResult]


@dataclass
class PullSyncInput:
    connection: Any
    mapping: Any
    adapter: ExternalApiAdapter
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG
    on_token_expired: Optional[TokenRefreshFn] = None


@dataclass
class PullSyncOutcome:
    context: SyncContext
    data: Optional[List[Dict[str, Any]]]
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class FullSyncInput:
    connection: Any
    mappings: List[Any]


@dataclass
class FullSyncPreparation:
    context: SyncContext
    active_mappings: List[Any]


@dataclass
class MappingSyncResult:
    mapping_id: str
    success: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error: Optional[str] = None


@dataclass
class FullSyncOutcome:
    context: SyncContext
    mapping_results: List[MappingSyncResult] = field(default_factory=list)
    # Per mapping id: push results and pulled remote records
    record_results: Dict[str, List[RecordSyncResult]] = field(default_factory=dict)
    pulled_records: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)


@dataclass
class RetryFailedInput:
    sync_log: Any
    failed_record_ids: List[str]
    records: List[Dict[str, Any]]
    existing_mappings: List[Any]
    adapter: ExternalApiAdapter
    mapping: Any = None
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG
    on_token_expired: Optional[TokenRefreshFn] = None


@dataclass
class RetryFailedOutcome:
    context: SyncContext
    results: List[RecordSyncResult]


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _local_id(record: Dict[str, Any]) -> str:
    return str(record.get("id", ""))


def build_mapping_lookup(existing_mappings: Sequence[Any], local_table: Optional[str] = None) -> Dict[str, Any]:
    """local_id → external-id mapping, optionally restricted to one local table."""
    return {
        m.local_id: m
        for m in existing_mappings
        if local_table is None or m.local_table == local_table
    }


def _to_sync_record(row: Dict[str, Any], mapping=None) -> SyncRecord:
    # Mappings without field mappings send the row unchanged
    if mapping is not None and mapping.field_mappings:
        payload = apply_field_mappings(row, mapping.field_mappings)
    else:
        payload = dict(row)
    return SyncRecord(local_id=_local_id(row), data=payload)


def prepare_records(
    records: Sequence[Dict[str, Any]], mapping=None, apply_filters: bool = True
) -> List[SyncRecord]:
    """
    Turn raw local rows into SyncRecords.

    With a mapping, rows are filtered by its conditions (unless apply_filters
    is False) and their payloads built from its field mappings.
    """
    rows = list(records)
    if mapping is not None and apply_filters:
        rows = filter_records(rows, mapping.filter_conditions)
    return [_to_sync_record(row, mapping) for row in rows]


def failed_record_ids_from_log(sync_log, mapping_id: Optional[str] = None) -> List[str]:
    """
    Record ids listed in a SyncLog's error_details, deduplicated, in order.

    With `mapping_id`, only errors raised under that mapping are kept. An
    error without its own mapping_id belongs to the log's mapping.
    """
    seen = []
    for err in sync_log.error_details or []:
        if not isinstance(err, dict):
            err = err.to_dict()
        if mapping_id is not None:
            owner = err.get("mapping_id") or getattr(sync_log, "mapping_id", None)
            if owner != mapping_id:
                continue
        record_id = err.get("record_id")
        if record_id and record_id not in seen:
            seen.append(record_id)
    return seen


# ─── Push ────────────────────────────────────────────────────────────────────

def execute_push_sync(input: PushSyncInput) -> PushSyncPreparation:
    """
    Prepare a push: external-id lookup for the mapping's table plus the
    records to send. No network call is made here; drive the prepared
    records through process_sync_batch (or use run_push_sync).
    """
    context = create_sync_context(input.connection.id, input.mapping.id, SYNC_TYPE_PUSH)
    lookup = build_mapping_lookup(input.existing_mappings, input.mapping.local_table)
    prepared = prepare_records(input.records, input.mapping)
    return PushSyncPreparation(
        context=context, prepared_records=prepared, mapping_lookup=lookup
    )


async def run_push_sync(
    input: PushSyncInput, *, concurrency: int = 1, sleep_fn: SleepFn = sleep
) -> PushSyncOutcome:
    prep = execute_push_sync(input)
    results = await process_sync_batch(
        prep.prepared_records,
        prep.mapping_lookup,
        input.adapter,
        input.retry_config,
        input.on_token_expired,
        concurrency=concurrency,
        sleep_fn=sleep_fn,
    )
    context = update_context_from_results(prep.context, results)
    logger.info(
        "Push sync %s: %d processed, %d failed",
        input.mapping.id, context.records_processed, context.records_failed,
    )
    return PushSyncOutcome(context=context, results=results)


# ─── Pull ────────────────────────────────────────────────────────────────────

async def execute_pull_sync(
    input: PullSyncInput, *, sleep_fn: SleepFn = sleep
) -> PullSyncOutcome:
    """
    Fetch the mapping's remote entity.

    Every fetched record counts as a create; no dedup against local state
    happens at this layer.
    """
    context = create_sync_context(input.connection.id, input.mapping.id, SYNC_TYPE_PULL)
    adapter = input.adapter

    if adapter.fetch_records is None:
        message = "Adapter does not support pulling records"
        context = record_failure(context, input.mapping.id, NOT_SUPPORTED, message)
        return PullSyncOutcome(
            context=context, data=None, error=message, error_code=NOT_SUPPORTED
        )

    params = {
        "remote_entity": input.mapping.remote_entity,
        "mapping_id": input.mapping.id,
        "field_mappings": input.mapping.field_mappings,
    }

    async def fetch() -> OperationResult:
        response = await adapter.fetch_records(params)
        return OperationResult(
            success=response.success,
            data=response.data,
            error=response.error,
            error_code=response.error_code,
        )

    outcome = await retry_with_backoff(
        fetch, input.retry_config, input.on_token_expired, sleep_fn
    )

    if not outcome.success:
        context = record_failure(
            context,
            input.mapping.id,
            outcome.error_code or "UNKNOWN_ERROR",
            outcome.error or "Fetch failed",
        )
        return PullSyncOutcome(
            context=context, data=None, error=outcome.error, error_code=outcome.error_code
        )

    data = list(outcome.data or [])
    for _ in data:
        context = record_create(context)
    return PullSyncOutcome(context=context, data=data)


# ─── Full sync ───────────────────────────────────────────────────────────────

def prepare_full_sync(input: FullSyncInput) -> FullSyncPreparation:
    return FullSyncPreparation(
        context=create_sync_context(input.connection.id, None, SYNC_TYPE_FULL),
        active_mappings=filter_active_mappings(input.mappings),
    )


def _mapping_result(mapping_id: str, ctx: SyncContext, error: Optional[str] = None) -> MappingSyncResult:
    return MappingSyncResult(
        mapping_id=mapping_id,
        success=error is None,
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
        error=error,
    )


async def execute_full_sync(
    input: FullSyncInput,
    get_mapping_records: RecordsLoader,
    get_existing_mappings: ExistingMappingsLoader,
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_token_expired: Optional[TokenRefreshFn] = None,
    *,
    adapter_for_mapping: Optional[Callable[[Any], ExternalApiAdapter]] = None,
    concurrency: int = 1,
    sleep_fn: SleepFn = sleep,
) -> FullSyncOutcome:
    """
    Run every active mapping of a connection into one full_sync context.

    A mapping whose loaders raise is recorded as a failed MappingSyncResult
    (plus one context error keyed by the mapping id) and the remaining
    mappings still run.

    Args:
        get_mapping_records: async (mapping) -> local rows to push.
        get_existing_mappings: async (mapping) -> ExternalIdMapping rows.
        adapter: Adapter used for every mapping unless adapter_for_mapping
            is given.
        adapter_for_mapping: Optional per-mapping adapter factory.
    """
    prep = prepare_full_sync(input)
    context = prep.context
    outcome = FullSyncOutcome(context=context)

    for mapping in prep.active_mappings:
        mapping_adapter = adapter_for_mapping(mapping) if adapter_for_mapping else adapter
        try:
            if mapping.sync_direction == "pull":
                pulled = await execute_pull_sync(
                    PullSyncInput(
                        connection=input.connection,
                        mapping=mapping,
                        adapter=mapping_adapter,
                        retry_config=retry_config,
                        on_token_expired=on_token_expired,
                    ),
                    sleep_fn=sleep_fn,
                )
                mapping_ctx = pulled.context
                if pulled.data is None:
                    result = _mapping_result(mapping.id, mapping_ctx, pulled.error or pulled.error_code)
                else:
                    outcome.pulled_records[mapping.id] = pulled.data
                    result = _mapping_result(mapping.id, mapping_ctx)
            else:
                rows = await get_mapping_records(mapping)
                existing = await get_existing_mappings(mapping)
                pushed = await run_push_sync(
                    PushSyncInput(
                        connection=input.connection,
                        mapping=mapping,
                        records=rows,
                        existing_mappings=existing,
                        adapter=mapping_adapter,
                        retry_config=retry_config,
                        on_token_expired=on_token_expired,
                    ),
                    concurrency=concurrency,
                    sleep_fn=sleep_fn,
                )
                mapping_ctx = pushed.context
                outcome.record_results[mapping.id] = pushed.results
                result = _mapping_result(mapping.id, mapping_ctx)
        except Exception as exc:
            logger.warning("Full sync mapping %s failed: %s", mapping.id, exc)
            message = str(exc) or type(exc).__name__
            context = record_failure(
                context, mapping.id, MAPPING_ERROR, message, mapping_id=mapping.id
            )
            outcome.mapping_results.append(MappingSyncResult(
                mapping_id=mapping.id, success=False, error=message,
            ))
            continue

        context = merge_contexts(context, mapping_ctx)
        outcome.mapping_results.append(result)

    outcome.context = context
    return outcome


# ─── Retry failed ────────────────────────────────────────────────────────────

async def retry_failed_sync(
    input: RetryFailedInput, *, concurrency: int = 1, sleep_fn: SleepFn = sleep
) -> RetryFailedOutcome:
    """Re-push only the records that failed in a previous run."""
    failed_ids = {str(i) for i in input.failed_record_ids}
    rows = [r for r in input.records if _local_id(r) in failed_ids]

    log = input.sync_log
    mapping = input.mapping
    context = create_sync_context(
        log.connection_id,
        mapping.id if mapping is not None else log.mapping_id,
        SYNC_TYPE_PUSH,
    )

    lookup = build_mapping_lookup(
        input.existing_mappings, mapping.local_table if mapping is not None else None
    )
    # Filter conditions already selected these rows in the original run
    prepared = prepare_records(rows, mapping, apply_filters=False)

    results = await process_sync_batch(
        prepared,
        lookup,
        input.adapter,
        input.retry_config,
        input.on_token_expired,
        concurrency=concurrency,
        sleep_fn=sleep_fn,
    )
    context = update_context_from_results(context, results)
    logger.info(
        "Retried %d failed records of sync log %s: %d still failing",
        len(results), log.id, context.records_failed,
    )
    return RetryFailedOutcome(context=context, results=results)
