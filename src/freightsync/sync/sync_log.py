"""
Sync log lifecycle rules and summary statistics.

Status state machine:

    running ──► completed
            ├─► failed
            └─► partial

completed, failed and partial are terminal.
"""
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from freightsync.models.sync import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_RUNNING,
    SyncError,
    as_utc,
)

VALID_STATE_TRANSITIONS: Dict[str, tuple] = {
    STATUS_RUNNING: (STATUS_COMPLETED, STATUS_FAILED, STATUS_PARTIAL),
    STATUS_COMPLETED: (),
    STATUS_FAILED: (),
    STATUS_PARTIAL: (),
}


class InvalidStatusTransitionError(ValueError):
    """Raised when a sync log is moved out of a terminal status."""


def is_valid_state_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_STATE_TRANSITIONS.get(from_status, ())


def is_terminal_state(status: str) -> bool:
    return status in VALID_STATE_TRANSITIONS and not VALID_STATE_TRANSITIONS[status]


def ensure_transition(from_status: str, to_status: str) -> None:
    if not is_valid_state_transition(from_status, to_status):
        raise InvalidStatusTransitionError(
            f"Invalid status transition from {from_status} to {to_status}"
        )


def validate_record_count_consistency(log) -> bool:
    """created + updated + failed must equal processed."""
    return (
        log.records_created + log.records_updated + log.records_failed
        == log.records_processed
    )


def calculate_sync_duration(log) -> Optional[float]:
    """Run duration in seconds, or None while the log is still open."""
    if log.completed_at is None:
        return None
    return (as_utc(log.completed_at) - as_utc(log.started_at)).total_seconds()


def group_errors_by_code(errors: Iterable) -> "OrderedDict[str, List[SyncError]]":
    grouped: "OrderedDict[str, List[SyncError]]" = OrderedDict()
    for err in errors:
        if isinstance(err, dict):
            err = SyncError.from_dict(err)
        grouped.setdefault(err.error_code, []).append(err)
    return grouped


def calculate_sync_stats(logs: Iterable) -> Dict[str, float]:
    """
    Aggregate counters over sync logs.

    success_rate is the percentage of runs that ended `completed`
    (0 when there are no runs).
    """
    stats = {
        "total_syncs": 0,
        "successful_syncs": 0,
        "failed_syncs": 0,
        "partial_syncs": 0,
        "total_records_processed": 0,
        "total_records_created": 0,
        "total_records_updated": 0,
        "total_records_failed": 0,
        "success_rate": 0.0,
    }
    for log in logs:
        stats["total_syncs"] += 1
        if log.status == STATUS_COMPLETED:
            stats["successful_syncs"] += 1
        elif log.status == STATUS_FAILED:
            stats["failed_syncs"] += 1
        elif log.status == STATUS_PARTIAL:
            stats["partial_syncs"] += 1
        stats["total_records_processed"] += log.records_processed
        stats["total_records_created"] += log.records_created
        stats["total_records_updated"] += log.records_updated
        stats["total_records_failed"] += log.records_failed

    if stats["total_syncs"]:
        stats["success_rate"] = stats["successful_syncs"] / stats["total_syncs"] * 100
    return stats


def most_recent(logs: Iterable, connection_id: Optional[str] = None):
    candidates = [
        log for log in logs
        if connection_id is None or log.connection_id == connection_id
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda log: as_utc(log.started_at))
