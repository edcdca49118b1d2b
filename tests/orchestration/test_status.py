"""Tests for etlspine.orchestration.status: error bookkeeping and snapshots."""

from __future__ import annotations

from datetime import UTC, datetime

from etlspine.core.watermarks import WatermarkValue
from etlspine.orchestration.status import (
    ErrorSeverity,
    PipelineStatus,
    StepResult,
    StepStatus,
    SyncStatus,
    ValidationCheckResult,
)


class TestSyncErrors:
    def test_repeat_increments_retry_count(self):
        status = SyncStatus()
        status.record_error("timeout", table="public.orders")
        record = status.record_error("timeout", table="public.orders")

        assert record.retry_count == 2
        assert len(status.errors) == 1

    def test_same_message_other_table_is_distinct(self):
        status = SyncStatus()
        status.record_error("timeout", table="a")
        status.record_error("timeout", table="b")
        assert [e.table for e in status.errors] == ["a", "b"]

    def test_oldest_evicted_beyond_limit(self):
        status = SyncStatus()
        for i in range(5):
            status.record_error(f"error {i}", table="t", max_errors=3)
        assert [e.message for e in status.errors] == ["error 2", "error 3", "error 4"]


class TestSyncSnapshot:
    def test_snapshot_is_independent(self):
        status = SyncStatus()
        status.watermarks["t"] = WatermarkValue.integer(1)
        snapshot = status.snapshot()

        status.progress.changes_processed = 10
        status.flagged_tables.append("t")

        assert snapshot.progress.changes_processed == 0
        assert snapshot.flagged_tables == []

    def test_to_dict_serializes_watermarks(self):
        status = SyncStatus()
        status.watermarks["a"] = WatermarkValue.integer(7)
        status.watermarks["b"] = None
        data = status.to_dict()

        assert data["phase"] == "initializing"
        assert data["watermarks"] == {"a": {"kind": "integer", "value": 7}, "b": None}


class TestStepResult:
    def test_succeeded(self):
        started = datetime(2024, 1, 1, tzinfo=UTC)
        result = StepResult.succeeded("s1", "Step 1", started, records_processed=5)
        assert result.status is StepStatus.SUCCESS
        assert result.succeeded_ok
        assert result.error is None
        assert result.duration_seconds > 0

    def test_failed_always_has_message(self):
        result = StepResult.failed("s1", "Step 1", datetime.now(UTC), "")
        assert result.error == "Step failed without error message"

    def test_skipped(self):
        result = StepResult.skipped("s2", "Step 2", "upstream failed")
        assert result.status is StepStatus.SKIPPED
        assert result.duration_seconds == 0.0

    def test_to_dict(self):
        result = StepResult.succeeded(
            "s1",
            "Step 1",
            datetime.now(UTC),
            validation_results=(ValidationCheckResult("row_count", True),),
        )
        data = result.to_dict()
        assert data["status"] == "success"
        assert data["validation_results"] == [{"check_name": "row_count", "passed": True, "message": None}]


class TestPipelineStatus:
    def test_warnings_do_not_count_as_errors(self):
        status = PipelineStatus()
        status.add_error("skipped", step_id="s2", severity=ErrorSeverity.WARNING)
        assert not status.has_errors()
        status.add_error("boom", step_id="s1")
        assert status.has_errors()

    def test_completed_and_executed_ids(self):
        now = datetime.now(UTC)
        status = PipelineStatus(
            results=[
                StepResult.succeeded("a", "a", now),
                StepResult.failed("b", "b", now, "x"),
                StepResult.skipped("c", "c", "dep"),
            ]
        )
        assert status.completed_step_ids() == ["a"]
        assert status.executed_step_ids() == ["a", "b"]
