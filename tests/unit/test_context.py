"""Tests for the sync context accumulator."""
from dataclasses import FrozenInstanceError
from datetime import datetime, timezone

import pytest

from freightsync.models.sync import RecordSyncResult
from freightsync.sync.context import (
    context_status,
    context_to_result,
    create_sync_context,
    merge_contexts,
    record_create,
    record_failure,
    record_update,
    update_context_from_results,
)


def ctx():
    return create_sync_context("conn-1", "map-1", "push")


def assert_consistent(c):
    assert c.records_processed == c.records_created + c.records_updated + c.records_failed
    assert len(c.errors) == c.records_failed


class TestAccumulators:
    def test_new_context_is_empty(self):
        c = ctx()
        assert c.records_processed == 0
        assert c.errors == ()
        assert c.started_at.tzinfo is not None

    def test_record_create_returns_new_context(self):
        original = ctx()
        updated = record_create(original)
        assert updated.records_created == 1
        assert updated.records_processed == 1
        assert original.records_processed == 0

    def test_record_update(self):
        c = record_update(ctx())
        assert c.records_updated == 1
        assert_consistent(c)

    def test_record_failure_appends_error(self):
        c = record_failure(ctx(), "inv-1", "VALIDATION_ERROR", "missing customer")
        assert c.records_failed == 1
        err = c.errors[0]
        assert err.record_id == "inv-1"
        assert err.error_code == "VALIDATION_ERROR"
        assert err.error_message == "missing customer"
        assert datetime.fromisoformat(err.timestamp)
        assert err.mapping_id == "map-1"

    def test_record_failure_with_explicit_mapping(self):
        full = create_sync_context("conn-1", None, "full_sync")
        c = record_failure(full, "map-2", "MAPPING_ERROR", "boom", mapping_id="map-2")
        assert c.errors[0].mapping_id == "map-2"

    def test_frozen(self):
        with pytest.raises(FrozenInstanceError):
            ctx().records_processed = 5


class TestUpdateFromResults:
    def test_folds_in_order(self):
        results = [
            RecordSyncResult(local_id="1", success=True, operation="create", external_id="e1"),
            RecordSyncResult(local_id="2", success=True, operation="update", external_id="e2"),
            RecordSyncResult(local_id="3", success=False, operation="create",
                             error="boom", error_code="500"),
        ]
        c = update_context_from_results(ctx(), results)

        assert (c.records_created, c.records_updated, c.records_failed) == (1, 1, 1)
        assert c.errors[0].record_id == "3"
        assert_consistent(c)

    def test_missing_error_code_defaults(self):
        c = update_context_from_results(
            ctx(), [RecordSyncResult(local_id="1", success=False, operation="create")]
        )
        assert c.errors[0].error_code == "UNKNOWN_ERROR"


class TestMergeAndStatus:
    def test_merge_adds_counters_and_errors(self):
        a = record_failure(record_create(ctx()), "1", "X", "x")
        b = record_update(create_sync_context("conn-1", "map-2", "push"))
        merged = merge_contexts(a, b)

        assert merged.mapping_id == "map-1"
        assert merged.records_processed == 3
        assert_consistent(merged)

    def test_status_completed(self):
        assert context_status(record_create(ctx())) == "completed"

    def test_status_completed_when_nothing_processed(self):
        assert context_status(ctx()) == "completed"

    def test_status_failed_when_nothing_succeeded(self):
        assert context_status(record_failure(ctx(), "1", "X", "x")) == "failed"

    def test_status_partial(self):
        assert context_status(record_failure(record_create(ctx()), "1", "X", "x")) == "partial"

    def test_to_result(self):
        done = datetime(2026, 1, 1, tzinfo=timezone.utc)
        c = record_failure(record_create(ctx()), "1", "X", "x")
        result = context_to_result(c, "log-1", completed_at=done)

        assert result.id == "log-1"
        assert result.completed_at == done
        assert result.status == "partial"
        assert result.records_processed == 2
        assert [e.record_id for e in result.error_details] == ["1"]
