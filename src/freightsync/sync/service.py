"""
IntegrationSyncService: runs the sync orchestrators and persists the outcome.

Flow for every sync run:
  1. Create SyncLog (status="running")
  2. Check the connection's token: no usable token and no refresh token
     → log fails with TOKEN_REAUTH_REQUIRED, no external call is made;
     expired/expiring with a refresh token → refresh first
  3. Run the orchestrator (push / pull / full sync / retry-failed) with a
     token refresh hook that stores rotated tokens on the connection
  4. Upsert ExternalIdMapping rows for successful creates
  5. Finish SyncLog from the context (completed / partial / failed) and
     stamp connection.last_sync_at / last_error

Record-level failures are data and end up in SyncLog.error_details.
Anything else (database errors, bad loaders in push/pull) marks the SyncLog
failed and is re-raised.
"""
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlmodel import Session, select

from freightsync.models.integration import (
    ExternalIdMapping,
    IntegrationConnection,
    SyncLog,
    SyncMapping,
)
from freightsync.models.sync import (
    OPERATION_CREATE,
    SYNC_TYPE_FULL,
    SYNC_TYPE_PULL,
    SYNC_TYPE_PUSH,
    RecordSyncResult,
    RetryConfig,
    SyncContext,
    SyncResult,
    TokenRefreshResult,
    utcnow,
)
from freightsync.sync.adapter import ExternalApiAdapter, RestAdapter, refresh_access_token
from freightsync.sync.context import (
    context_to_result,
    create_sync_context,
    merge_contexts,
    record_failure,
)
from freightsync.sync.field_mapping import filter_active_mappings
from freightsync.sync.orchestrators import (
    FullSyncInput,
    PullSyncInput,
    PushSyncInput,
    RetryFailedInput,
    execute_full_sync,
    execute_pull_sync,
    failed_record_ids_from_log,
    retry_failed_sync,
    run_push_sync,
)
from freightsync.sync.retry import TOKEN_REFRESH_FAILED, SleepFn, TokenRefreshFn, sleep
from freightsync.sync.sync_log import ensure_transition
from freightsync.sync.tokens import (
    check_token_status,
    create_token_refresh_fn,
    is_token_expiring,
)

logger = logging.getLogger(__name__)

TOKEN_REAUTH_REQUIRED = "TOKEN_REAUTH_REQUIRED"
SYNC_EXCEPTION = "SYNC_EXCEPTION"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

AdapterFactory = Callable[[IntegrationConnection, SyncMapping], ExternalApiAdapter]
RecordLoader = Callable[[SyncMapping], Awaitable[List[Dict[str, Any]]]]
ConnectionRefreshCallback = Callable[
    [IntegrationConnection, str], Awaitable[TokenRefreshResult]
]
PulledRecordsSink = Callable[[SyncMapping, List[Dict[str, Any]]], Awaitable[None]]


# ── Exceptions ────────────────────────────────────────────────────────────────

class UnknownConnectionError(LookupError):
    """Raised when a connection id does not exist."""


class UnknownMappingError(LookupError):
    """Raised when a mapping id does not exist or belongs to another connection."""


class UnknownSyncLogError(LookupError):
    """Raised when a sync log id does not exist."""


class InvalidTableNameError(ValueError):
    """Raised when a mapping's local_table is not a plain SQL identifier."""


# ── Default collaborators ─────────────────────────────────────────────────────

class LocalTableLoader:
    """Loads every row of a mapping's local table from the application DB."""

    def __init__(self, engine):
        self.engine = engine

    async def __call__(self, mapping: SyncMapping) -> List[Dict[str, Any]]:
        table = mapping.local_table
        if not _TABLE_NAME_RE.match(table or ""):
            raise InvalidTableNameError(f"Invalid local table name: {table!r}")
        quoted = ".".join(f'"{part}"' for part in table.split("."))
        with self.engine.connect() as conn:
            rows = conn.execute(text(f"SELECT * FROM {quoted}")).mappings().all()
        return [dict(row) for row in rows]


def rest_adapter_factory(timeout: float = 30.0) -> AdapterFactory:
    def build(connection: IntegrationConnection, mapping: SyncMapping) -> ExternalApiAdapter:
        return RestAdapter.for_mapping(connection, mapping, timeout=timeout).as_adapter()
    return build


# ── Service ───────────────────────────────────────────────────────────────────

class IntegrationSyncService:
    """Orchestrates external-system sync runs for integration connections."""

    def __init__(
        self,
        engine,
        adapter_factory: Optional[AdapterFactory] = None,
        record_loader: Optional[RecordLoader] = None,
        refresh_callback: Optional[ConnectionRefreshCallback] = None,
        retry_config: Optional[RetryConfig] = None,
        *,
        on_records_pulled: Optional[PulledRecordsSink] = None,
        concurrency: int = 1,
        token_expiry_buffer_seconds: int = 300,
        sleep_fn: SleepFn = sleep,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            adapter_factory: (connection, mapping) -> ExternalApiAdapter.
                Defaults to a RestAdapter per mapping.
            record_loader: async (mapping) -> local rows to push. Defaults to
                reading the mapping's local_table from `engine`.
            refresh_callback: async (connection, refresh_token) ->
                TokenRefreshResult. Defaults to an OAuth2 refresh grant.
            retry_config: Retry limits for every external call.
            on_records_pulled: async (mapping, records) hook receiving the
                records fetched by pull mappings.
            concurrency: Records in flight at once per batch.
            token_expiry_buffer_seconds: Refresh tokens this close to expiry
                before the run starts.
            sleep_fn: Backoff delay function (milliseconds).
        """
        self.engine = engine
        self.adapter_factory = adapter_factory or rest_adapter_factory()
        self.record_loader = record_loader or LocalTableLoader(engine)
        self.refresh_callback = refresh_callback or refresh_access_token
        self.retry_config = retry_config or RetryConfig()
        self.on_records_pulled = on_records_pulled
        self.concurrency = concurrency
        self.token_expiry_buffer_seconds = token_expiry_buffer_seconds
        self.sleep_fn = sleep_fn

    # ─── Public entry points ──────────────────────────────────────────────────

    async def push_sync(
        self,
        connection_id: str,
        mapping_id: str,
        records: Optional[List[Dict[str, Any]]] = None,
    ) -> SyncLog:
        """
        Push local records of one mapping to the external system.

        Args:
            records: Rows to push; loaded with record_loader when omitted.
        """
        connection = self._get_connection(connection_id)
        mapping = self._get_mapping(connection.id, mapping_id)
        return await self._run(
            connection, mapping.id, SYNC_TYPE_PUSH,
            lambda refresh, adapters: self._push(connection, mapping, records, refresh, adapters),
        )

    async def pull_sync(self, connection_id: str, mapping_id: str) -> SyncLog:
        """Fetch one mapping's remote entity and hand the records to on_records_pulled."""
        connection = self._get_connection(connection_id)
        mapping = self._get_mapping(connection.id, mapping_id)
        return await self._run(
            connection, mapping.id, SYNC_TYPE_PULL,
            lambda refresh, adapters: self._pull(connection, mapping, refresh, adapters),
        )

    async def full_sync(self, connection_id: str) -> SyncLog:
        """Run every active mapping of the connection under one full_sync log."""
        connection = self._get_connection(connection_id)
        return await self._run(
            connection, None, SYNC_TYPE_FULL,
            lambda refresh, adapters: self._full(connection, refresh, adapters),
        )

    async def retry_failed(self, sync_log_id: str) -> SyncLog:
        """
        Re-push the records listed in a previous log's error_details.

        Produces a new SyncLog; records that succeeded originally are never
        sent again.
        """
        with Session(self.engine) as s:
            original = s.get(SyncLog, sync_log_id)
        if original is None:
            raise UnknownSyncLogError(f"Sync log {sync_log_id} not found")

        connection = self._get_connection(original.connection_id)
        if original.mapping_id:
            mappings = [self._get_mapping(connection.id, original.mapping_id)]
            sync_type = SYNC_TYPE_PUSH
        else:
            mappings = [
                m for m in filter_active_mappings(self._get_mappings(connection.id))
                if m.sync_direction != "pull"
            ]
            sync_type = SYNC_TYPE_FULL

        return await self._run(
            connection, original.mapping_id, sync_type,
            lambda refresh, adapters: self._retry(connection, original, mappings, sync_type, refresh, adapters),
        )

    # ─── Run lifecycle ────────────────────────────────────────────────────────

    async def _run(self, connection, mapping_id, sync_type, body) -> SyncLog:
        log = self._create_sync_log(connection.id, mapping_id, sync_type)
        adapters: List[ExternalApiAdapter] = []
        try:
            status = check_token_status(connection)
            if status.requires_reauth:
                logger.warning("Connection %s needs re-authentication", connection.id)
                ctx = record_failure(
                    create_sync_context(connection.id, mapping_id, sync_type),
                    connection.id,
                    TOKEN_REAUTH_REQUIRED,
                    "Access token expired and no refresh token is available",
                )
                return self._finish_sync_log(log, ctx, connection.id)

            refresh = self._token_refresh_hook(connection, adapters)
            expiring = connection.token_expires_at is not None and is_token_expiring(
                connection.token_expires_at, self.token_expiry_buffer_seconds
            )
            if refresh is not None and (status.expired or expiring):
                result = await refresh()
                if not result.success:
                    ctx = record_failure(
                        create_sync_context(connection.id, mapping_id, sync_type),
                        connection.id,
                        TOKEN_REFRESH_FAILED,
                        result.error or "Token refresh failed",
                    )
                    return self._finish_sync_log(log, ctx, connection.id)

            ctx = await body(refresh, adapters)
            return self._finish_sync_log(log, ctx, connection.id)

        except Exception as exc:
            logger.exception("Sync %s for connection %s crashed", sync_type, connection.id)
            ctx = record_failure(
                create_sync_context(connection.id, mapping_id, sync_type),
                connection.id,
                SYNC_EXCEPTION,
                str(exc) or type(exc).__name__,
            )
            self._finish_sync_log(log, ctx, connection.id)
            raise
        finally:
            for adapter in adapters:
                if adapter.aclose is not None:
                    await adapter.aclose()

    def _adapter(self, connection, mapping, adapters: List[ExternalApiAdapter]) -> ExternalApiAdapter:
        adapter = self.adapter_factory(connection, mapping)
        adapters.append(adapter)
        return adapter

    def _token_refresh_hook(
        self, connection: IntegrationConnection, adapters: List[ExternalApiAdapter]
    ) -> Optional[TokenRefreshFn]:
        """Refresh hook that persists rotated tokens and hands them to live adapters."""

        async def refresh_and_store(refresh_token: str) -> TokenRefreshResult:
            result = await self.refresh_callback(connection, refresh_token)
            if result.success:
                self._store_tokens(connection, result)
                for adapter in adapters:
                    if adapter.on_token_refreshed is not None:
                        adapter.on_token_refreshed(result.access_token)
                logger.info("Refreshed access token for connection %s", connection.id)
            return result

        return create_token_refresh_fn(connection, refresh_and_store)

    # ─── Mode bodies ──────────────────────────────────────────────────────────

    async def _push(self, connection, mapping, records, refresh, adapters) -> SyncContext:
        if records is None:
            records = await self.record_loader(mapping)
        outcome = await run_push_sync(
            PushSyncInput(
                connection=connection,
                mapping=mapping,
                records=records,
                existing_mappings=self._get_external_ids(connection.id, mapping.local_table),
                adapter=self._adapter(connection, mapping, adapters),
                retry_config=self.retry_config,
                on_token_expired=refresh,
            ),
            concurrency=self.concurrency,
            sleep_fn=self.sleep_fn,
        )
        self._store_external_ids(connection.id, mapping.local_table, outcome.results)
        return outcome.context

    async def _pull(self, connection, mapping, refresh, adapters) -> SyncContext:
        outcome = await execute_pull_sync(
            PullSyncInput(
                connection=connection,
                mapping=mapping,
                adapter=self._adapter(connection, mapping, adapters),
                retry_config=self.retry_config,
                on_token_expired=refresh,
            ),
            sleep_fn=self.sleep_fn,
        )
        if outcome.data is not None and self.on_records_pulled is not None:
            await self.on_records_pulled(mapping, outcome.data)
        return outcome.context

    async def _full(self, connection, refresh, adapters) -> SyncContext:
        mappings = self._get_mappings(connection.id)
        by_id = {m.id: m for m in mappings}

        async def existing_for(mapping):
            return self._get_external_ids(connection.id, mapping.local_table)

        outcome = await execute_full_sync(
            FullSyncInput(connection=connection, mappings=mappings),
            self.record_loader,
            existing_for,
            adapter=None,
            retry_config=self.retry_config,
            on_token_expired=refresh,
            adapter_for_mapping=lambda m: self._adapter(connection, m, adapters),
            concurrency=self.concurrency,
            sleep_fn=self.sleep_fn,
        )
        for mapping_id, results in outcome.record_results.items():
            self._store_external_ids(connection.id, by_id[mapping_id].local_table, results)
        if self.on_records_pulled is not None:
            for mapping_id, records in outcome.pulled_records.items():
                await self.on_records_pulled(by_id[mapping_id], records)

        for mr in outcome.mapping_results:
            logger.info(
                "Full sync mapping %s: success=%s processed=%d failed=%d%s",
                mr.mapping_id, mr.success, mr.records_processed, mr.records_failed,
                f" ({mr.error})" if mr.error else "",
            )
        return outcome.context

    async def _retry(self, connection, original, mappings, sync_type, refresh, adapters) -> SyncContext:
        ctx = create_sync_context(connection.id, original.mapping_id, sync_type)
        for mapping in mappings:
            # Local ids repeat across tables; only resend ids that failed under this mapping
            failed_ids = failed_record_ids_from_log(original, mapping.id)
            if not failed_ids:
                continue
            records = await self.record_loader(mapping)
            outcome = await retry_failed_sync(
                RetryFailedInput(
                    sync_log=original,
                    failed_record_ids=failed_ids,
                    records=records,
                    existing_mappings=self._get_external_ids(connection.id, mapping.local_table),
                    adapter=self._adapter(connection, mapping, adapters),
                    mapping=mapping,
                    retry_config=self.retry_config,
                    on_token_expired=refresh,
                ),
                concurrency=self.concurrency,
                sleep_fn=self.sleep_fn,
            )
            self._store_external_ids(connection.id, mapping.local_table, outcome.results)
            ctx = merge_contexts(ctx, outcome.context)
        return ctx

    # ─── Persistence helpers ──────────────────────────────────────────────────

    def _get_connection(self, connection_id: str) -> IntegrationConnection:
        with Session(self.engine) as s:
            connection = s.get(IntegrationConnection, connection_id)
        if connection is None:
            raise UnknownConnectionError(f"Connection {connection_id} not found")
        return connection

    def _get_mapping(self, connection_id: str, mapping_id: str) -> SyncMapping:
        with Session(self.engine) as s:
            mapping = s.get(SyncMapping, mapping_id)
        if mapping is None or mapping.connection_id != connection_id:
            raise UnknownMappingError(
                f"Mapping {mapping_id} not found for connection {connection_id}"
            )
        return mapping

    def _get_mappings(self, connection_id: str) -> List[SyncMapping]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncMapping)
                .where(SyncMapping.connection_id == connection_id)
                .order_by(SyncMapping.created_at)
            ).all())

    def _get_external_ids(self, connection_id: str, local_table: str) -> List[ExternalIdMapping]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(ExternalIdMapping).where(
                    ExternalIdMapping.connection_id == connection_id,
                    ExternalIdMapping.local_table == local_table,
                )
            ).all())

    def _store_external_ids(
        self, connection_id: str, local_table: str, results: List[RecordSyncResult]
    ) -> None:
        """Insert mappings for new remote records; touch synced_at on updates."""
        successes = [r for r in results if r.success and r.external_id]
        if not successes:
            return
        with Session(self.engine) as s:
            for r in successes:
                existing = s.exec(
                    select(ExternalIdMapping).where(
                        ExternalIdMapping.connection_id == connection_id,
                        ExternalIdMapping.local_table == local_table,
                        ExternalIdMapping.local_id == r.local_id,
                    )
                ).first()
                if existing:
                    existing.external_id = r.external_id
                    existing.synced_at = utcnow()
                    s.add(existing)
                elif r.operation == OPERATION_CREATE:
                    s.add(ExternalIdMapping(
                        connection_id=connection_id,
                        local_table=local_table,
                        local_id=r.local_id,
                        external_id=r.external_id,
                    ))
            s.commit()

    def _store_tokens(self, connection: IntegrationConnection, result: TokenRefreshResult) -> None:
        with Session(self.engine) as s:
            db_conn = s.get(IntegrationConnection, connection.id)
            db_conn.access_token = result.access_token
            if result.refresh_token:
                db_conn.refresh_token = result.refresh_token
            db_conn.token_expires_at = result.expires_at
            s.add(db_conn)
            s.commit()
        # Keep the in-memory copy in step for the rest of the run
        connection.access_token = result.access_token
        if result.refresh_token:
            connection.refresh_token = result.refresh_token
        connection.token_expires_at = result.expires_at

    def _create_sync_log(
        self, connection_id: str, mapping_id: Optional[str], sync_type: str
    ) -> SyncLog:
        log = SyncLog(
            connection_id=connection_id,
            mapping_id=mapping_id,
            sync_type=sync_type,
            started_at=utcnow(),
            status="running",
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(self, log: SyncLog, ctx: SyncContext, connection_id: str) -> SyncLog:
        result = context_to_result(ctx, log.id)
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            ensure_transition(db_log.status, result.status)
            _apply_result(db_log, result)
            s.add(db_log)

            db_conn = s.get(IntegrationConnection, connection_id)
            db_conn.last_sync_at = result.completed_at
            db_conn.last_error = _summarize_errors(result)
            s.add(db_conn)

            s.commit()
            s.refresh(db_log)
        logger.info(
            "Sync %s %s: %s (%d processed, %d created, %d updated, %d failed)",
            result.sync_type, log.id, result.status, result.records_processed,
            result.records_created, result.records_updated, result.records_failed,
        )
        return db_log


def _apply_result(db_log: SyncLog, result: SyncResult) -> None:
    db_log.completed_at = result.completed_at
    db_log.records_processed = result.records_processed
    db_log.records_created = result.records_created
    db_log.records_updated = result.records_updated
    db_log.records_failed = result.records_failed
    db_log.status = result.status
    db_log.error_details = [e.to_dict() for e in result.error_details] or None


def _summarize_errors(result: SyncResult) -> Optional[str]:
    if not result.error_details:
        return None
    first = result.error_details[0]
    more = len(result.error_details) - 1
    summary = f"{first.error_code}: {first.error_message}"
    return f"{summary} (+{more} more)" if more else summary
