"""
Value types passed between the sync engine layers.

These are plain dataclasses with no SQLModel or DB dependencies. SyncContext
is frozen: every accumulator function returns a new context so one run's
counters can never be aliased by another.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

# Sync types recorded on a SyncLog
SYNC_TYPE_PUSH = "push"
SYNC_TYPE_PULL = "pull"
SYNC_TYPE_FULL = "full_sync"

OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PARTIAL = "partial"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class OperationResult:
    """What a retryable operation returns for a single attempt."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class RetryResult:
    """Final outcome of retry_with_backoff."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    token_refreshed: bool = False


@dataclass
class TokenRefreshResult:
    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class TokenStatus:
    valid: bool
    expired: bool
    requires_reauth: bool


@dataclass
class AdapterResponse:
    """
    Return type shared by every adapter capability.

    create_record fills external_id, fetch_records fills data (a list of
    remote records), update_record only reports success.
    """
    success: bool
    external_id: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class SyncRecord:
    local_id: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordSyncResult:
    local_id: str
    success: bool
    operation: str                      # "create" | "update"
    external_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class SyncError:
    record_id: str
    error_code: str
    error_message: str
    timestamp: str                      # ISO-8601, UTC
    mapping_id: Optional[str] = None    # mapping the record was synced under

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "record_id": self.record_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "timestamp": self.timestamp,
            "mapping_id": self.mapping_id,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SyncError":
        return cls(
            record_id=str(raw.get("record_id", "")),
            error_code=str(raw.get("error_code", "")),
            error_message=str(raw.get("error_message", "")),
            timestamp=str(raw.get("timestamp", "")),
            mapping_id=raw.get("mapping_id"),
        )


@dataclass(frozen=True)
class SyncContext:
    connection_id: str
    mapping_id: Optional[str]
    sync_type: str
    started_at: datetime
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: Tuple[SyncError, ...] = ()


@dataclass
class SyncResult:
    """SyncLog-shaped summary of a finished run, ready for persistence."""
    id: str
    connection_id: str
    mapping_id: Optional[str]
    sync_type: str
    started_at: datetime
    completed_at: datetime
    records_processed: int
    records_created: int
    records_updated: int
    records_failed: int
    status: str
    error_details: List[SyncError] = field(default_factory=list)
