"""Status projections of running orchestrators.

Manifesto:
    Operators watch long-running syncs and pipelines through queries, and
    terminal notifications carry the same picture.  Each orchestrator owns
    exactly one status object and is the only code that mutates it; queries
    receive deep-copied snapshots.  ``StepResult`` is the immutable envelope
    of one transformation step, appended once and never edited.

ARCHITECTURE
────────────
::

    SyncStatus                          PipelineStatus
      ├── phase: SyncPhase                ├── phase: PipelinePhase
      ├── progress: SyncProgress          ├── progress: PipelineProgress
      ├── watermarks                      ├── results: [StepResult]
      ├── errors: [SyncErrorRecord]       ├── errors: [PipelineErrorRecord]
      ├── flagged_tables                  └── metrics: PipelineMetrics
      └── metrics: SyncMetrics

Related modules:
    incremental_sync.py : owns SyncStatus
    transformation.py   : owns PipelineStatus

Tags:
    etl-spine, orchestration, status, query, snapshot
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from etlspine.core.watermarks import WatermarkValue


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Incremental sync
# =============================================================================


class SyncPhase(str, Enum):
    INITIALIZING = "initializing"
    SYNCING = "syncing"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncErrorRecord:
    """One distinct (table, message) failure and how often it recurred."""

    message: str
    table: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    retry_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "retry_count": self.retry_count,
        }


@dataclass
class SyncProgress:
    total_tables: int = 0
    processed_tables: int = 0
    changes_processed: int = 0
    batches_processed: int = 0
    cycles_completed: int = 0
    last_sync_time: datetime | None = None


@dataclass
class SyncMetrics:
    avg_processing_time_seconds: float = 0.0
    changes_per_second: float = 0.0
    total_bytes_processed: int = 0


@dataclass
class SyncStatus:
    """Live projection of an incremental sync instance."""

    phase: SyncPhase = SyncPhase.INITIALIZING
    current_table: str | None = None
    progress: SyncProgress = field(default_factory=SyncProgress)
    watermarks: dict[str, WatermarkValue | None] = field(default_factory=dict)
    errors: list[SyncErrorRecord] = field(default_factory=list)
    flagged_tables: list[str] = field(default_factory=list)
    metrics: SyncMetrics = field(default_factory=SyncMetrics)
    paused: bool = False

    def record_error(
        self,
        message: str,
        table: str | None = None,
        max_errors: int = 100,
    ) -> SyncErrorRecord:
        """
        Record a failure, deduplicated by ``(table, message)``.

        A repeat increments ``retry_count`` and refreshes the timestamp.
        When more than *max_errors* distinct records exist the oldest is
        evicted.
        """
        for existing in self.errors:
            if existing.table == table and existing.message == message:
                existing.retry_count += 1
                existing.timestamp = utcnow()
                return existing

        record = SyncErrorRecord(message=message, table=table)
        self.errors.append(record)
        if len(self.errors) > max_errors:
            del self.errors[: len(self.errors) - max_errors]
        return record

    def snapshot(self) -> SyncStatus:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "current_table": self.current_table,
            "paused": self.paused,
            "progress": {
                "total_tables": self.progress.total_tables,
                "processed_tables": self.progress.processed_tables,
                "changes_processed": self.progress.changes_processed,
                "batches_processed": self.progress.batches_processed,
                "cycles_completed": self.progress.cycles_completed,
                "last_sync_time": _iso(self.progress.last_sync_time),
            },
            "watermarks": {
                table: (value.to_json() if value is not None else None)
                for table, value in self.watermarks.items()
            },
            "errors": [e.to_dict() for e in self.errors],
            "flagged_tables": list(self.flagged_tables),
            "metrics": {
                "avg_processing_time_seconds": self.metrics.avg_processing_time_seconds,
                "changes_per_second": self.metrics.changes_per_second,
                "total_bytes_processed": self.metrics.total_bytes_processed,
            },
        }


# =============================================================================
# Transformation
# =============================================================================


class PipelinePhase(str, Enum):
    INITIALIZING = "initializing"
    VALIDATING = "validating"
    EXECUTING = "executing"
    VALIDATING_RESULTS = "validating_results"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationCheckResult:
    """Outcome of one post-execution check."""

    check_name: str
    passed: bool
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"check_name": self.check_name, "passed": self.passed, "message": self.message}


@dataclass(frozen=True)
class StepResult:
    """
    Outcome of one transformation step.

    Prefer the ``succeeded`` / ``failed`` / ``skipped`` factories over
    constructing directly.
    """

    step_id: str
    step_name: str
    status: StepStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    records_processed: int = 0
    records_output: int = 0
    bytes_processed: int = 0
    metrics: dict[str, Any] = field(default_factory=dict)
    validation_results: tuple[ValidationCheckResult, ...] = ()
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def succeeded_ok(self) -> bool:
        return self.status is StepStatus.SUCCESS

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def succeeded(
        cls,
        step_id: str,
        step_name: str,
        started_at: datetime,
        *,
        records_processed: int = 0,
        records_output: int = 0,
        bytes_processed: int = 0,
        metrics: dict[str, Any] | None = None,
        validation_results: tuple[ValidationCheckResult, ...] = (),
    ) -> StepResult:
        return cls(
            step_id=step_id,
            step_name=step_name,
            status=StepStatus.SUCCESS,
            started_at=started_at,
            finished_at=utcnow(),
            records_processed=records_processed,
            records_output=records_output,
            bytes_processed=bytes_processed,
            metrics=metrics or {},
            validation_results=validation_results,
        )

    @classmethod
    def failed(
        cls,
        step_id: str,
        step_name: str,
        started_at: datetime,
        error: str,
        *,
        records_processed: int = 0,
        records_output: int = 0,
        bytes_processed: int = 0,
        metrics: dict[str, Any] | None = None,
        validation_results: tuple[ValidationCheckResult, ...] = (),
    ) -> StepResult:
        return cls(
            step_id=step_id,
            step_name=step_name,
            status=StepStatus.FAILED,
            started_at=started_at,
            finished_at=utcnow(),
            records_processed=records_processed,
            records_output=records_output,
            bytes_processed=bytes_processed,
            metrics=metrics or {},
            validation_results=validation_results,
            error=error or "Step failed without error message",
        )

    @classmethod
    def skipped(cls, step_id: str, step_name: str, reason: str) -> StepResult:
        now = utcnow()
        return cls(
            step_id=step_id,
            step_name=step_name,
            status=StepStatus.SKIPPED,
            started_at=now,
            finished_at=now,
            error=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_seconds": self.duration_seconds,
            "records_processed": self.records_processed,
            "records_output": self.records_output,
            "bytes_processed": self.bytes_processed,
            "metrics": self.metrics,
            "validation_results": [v.to_dict() for v in self.validation_results],
            "error": self.error,
        }


@dataclass
class PipelineErrorRecord:
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    step_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PipelineProgress:
    total_steps: int = 0
    completed_steps: int = 0
    current_steps: list[str] = field(default_factory=list)


@dataclass
class PipelineMetrics:
    total_duration_seconds: float = 0.0
    total_records_processed: int = 0
    total_bytes_processed: int = 0
    execution_order: list[list[str]] = field(default_factory=list)


@dataclass
class PipelineStatus:
    """Live projection of a transformation pipeline run."""

    phase: PipelinePhase = PipelinePhase.INITIALIZING
    progress: PipelineProgress = field(default_factory=PipelineProgress)
    results: list[StepResult] = field(default_factory=list)
    errors: list[PipelineErrorRecord] = field(default_factory=list)
    metrics: PipelineMetrics = field(default_factory=PipelineMetrics)
    paused: bool = False
    cancelled: bool = False

    def add_error(
        self,
        message: str,
        *,
        step_id: str | None = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
    ) -> None:
        self.errors.append(PipelineErrorRecord(message=message, severity=severity, step_id=step_id))

    def has_errors(self) -> bool:
        """True if any error-severity entry exists (warnings do not count)."""
        return any(e.severity is ErrorSeverity.ERROR for e in self.errors)

    def completed_step_ids(self) -> list[str]:
        """Successful steps in the order they finished."""
        return [r.step_id for r in self.results if r.status is StepStatus.SUCCESS]

    def executed_step_ids(self) -> list[str]:
        return [r.step_id for r in self.results if r.status is not StepStatus.SKIPPED]

    def snapshot(self) -> PipelineStatus:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "paused": self.paused,
            "cancelled": self.cancelled,
            "progress": {
                "total_steps": self.progress.total_steps,
                "completed_steps": self.progress.completed_steps,
                "current_steps": list(self.progress.current_steps),
            },
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "metrics": {
                "total_duration_seconds": self.metrics.total_duration_seconds,
                "total_records_processed": self.metrics.total_records_processed,
                "total_bytes_processed": self.metrics.total_bytes_processed,
                "execution_order": [list(level) for level in self.metrics.execution_order],
            },
        }
