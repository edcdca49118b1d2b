"""In-memory collaborators for exercising the orchestrators.

Everything here is deterministic and thread-safe enough for the per-level
step pool.  Tests (and local experiments) wire these instead of a real
connector or transformation engine::

    connector = FakeConnector()
    connector.add_changes("public.orders", change("public.orders", 1), change("public.orders", 2))
    orchestrator = IncrementalSyncOrchestrator(
        make_sync_input(make_table("orders")),
        connector,
        RecordingWatermarkStore(),
        SqlCheckpointStore(),
        clock=ManualClock(),
        max_cycles=1,
    )
    orchestrator.run()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from etlspine.core.watermarks import SqlWatermarkStore, WatermarkValue
from etlspine.notifications import NotificationEvent
from etlspine.orchestration.activities import (
    BatchApplyResult,
    ChangeBatch,
    ChangeOperation,
    IncrementalChange,
    TransformationExecution,
)
from etlspine.orchestration.models import (
    AuthConfig,
    ExecutionConfig,
    ExecutionMode,
    IncrementalConfig,
    IncrementalStrategy,
    IncrementalSyncInput,
    NotificationConfig,
    PipelineDefinition,
    StepKind,
    StepValidation,
    SyncConfig,
    SyncFrequency,
    TableRef,
    TableSyncConfig,
    TransformationBody,
    TransformationInput,
    TransformationStep,
)
from etlspine.orchestration.signals import ControlChannel, ControlCommand
from etlspine.orchestration.status import ValidationCheckResult

# =============================================================================
# Clock
# =============================================================================


class ManualClock:
    """Clock whose time only moves when something sleeps or waits.

    ``sleeps`` records blocking sleeps (activity retry backoff);
    ``waits`` records interruptible waits (inter-cycle sleep, pause polling).
    Neither ever blocks.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._monotonic = 0.0
        self._lock = threading.Lock()
        self.sleeps: list[float] = []
        self.waits: list[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._monotonic += seconds
            self._now += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def wait_for_command(self, channel: ControlChannel, timeout: float) -> ControlCommand | None:
        command = channel.poll(0)
        if command is not None:
            return command
        self.waits.append(timeout)
        self.advance(timeout)
        return None


# =============================================================================
# Builders
# =============================================================================


def change(
    table: str,
    watermark: Any,
    *,
    operation: ChangeOperation = ChangeOperation.UPDATE,
    key: Any = None,
) -> IncrementalChange:
    """One captured change; the primary key defaults to the watermark."""
    return IncrementalChange(
        operation=operation,
        table=table,
        primary_key={"id": key if key is not None else str(watermark)},
        watermark=watermark,
        data={"value": str(watermark)},
    )


def make_table(
    name: str,
    *,
    schema: str | None = "public",
    column: str = "id",
    strategy: IncrementalStrategy = IncrementalStrategy.AUTO_INCREMENT,
    batch_size: int = 100,
    frequency: SyncFrequency = SyncFrequency.MINUTE,
) -> TableSyncConfig:
    return TableSyncConfig(
        table=TableRef(name=name, schema=schema),
        incremental=IncrementalConfig(
            column=column,
            strategy=strategy,
            batch_size=batch_size,
            frequency=frequency,
        ),
    )


def make_sync_input(
    *tables: TableSyncConfig,
    connection_id: str = "conn-1",
    max_batch_size: int = 10000,
    notifications: NotificationConfig | None = None,
) -> IncrementalSyncInput:
    return IncrementalSyncInput(
        connection_id=connection_id,
        connector_type="fake",
        tables=tuple(tables),
        auth=AuthConfig(type="none"),
        sync=SyncConfig(max_batch_size=max_batch_size),
        notifications=notifications or NotificationConfig(),
    )


def make_step(
    step_id: str,
    *dependencies: str,
    output_table: str | None = None,
    validation: StepValidation | None = None,
) -> TransformationStep:
    return TransformationStep(
        id=step_id,
        name=f"step {step_id}",
        kind=StepKind.SQL,
        output_table=output_table or f"out_{step_id}",
        body=TransformationBody(query=f"SELECT * FROM src_{step_id}"),
        dependencies=tuple(dependencies),
        validation=validation,
    )


def make_transformation_input(
    steps: Sequence[TransformationStep],
    *,
    pipeline_id: str = "pipe-1",
    dry_run: bool = False,
    parallelism: int = 4,
    retry_failed_steps: bool = False,
    rollback_on_failure: bool = True,
    mode: ExecutionMode = ExecutionMode.FULL,
    notifications: NotificationConfig | None = None,
) -> TransformationInput:
    return TransformationInput(
        connection_id="conn-1",
        connector_type="fake",
        pipeline=PipelineDefinition(id=pipeline_id, name=pipeline_id, steps=tuple(steps)),
        auth=AuthConfig(type="none"),
        execution=ExecutionConfig(
            mode=mode,
            dry_run=dry_run,
            parallelism=parallelism,
            retry_failed_steps=retry_failed_steps,
            rollback_on_failure=rollback_on_failure,
        ),
        notifications=notifications or NotificationConfig(),
    )


# =============================================================================
# Connector
# =============================================================================


class FakeConnector:
    """Source system holding an ordered change log per table.

    ``get_incremental_changes`` returns the changes strictly newer than the
    requested watermark, at most ``batch_size`` of them.

    Attributes:
        applied: ``(table, changes)`` per ``process_change_batch`` call
        fetches: ``(table, from_watermark, batch_size)`` per fetch
        fetch_errors / apply_errors: table -> exception raised on every call
        on_fetch: Optional hook called with the table name before each fetch
        honor_batch_size: When False, return every newer change regardless of
            the requested limit (connectors that treat it as a hint)
    """

    def __init__(self, connect_error: Exception | None = None):
        self.connect_error = connect_error
        self.connected: list[str] = []
        self.disconnected: list[str] = []
        self.fetches: list[tuple[str, WatermarkValue | None, int]] = []
        self.applied: list[tuple[str, list[IncrementalChange]]] = []
        self.fetch_errors: dict[str, Exception] = {}
        self.apply_errors: dict[str, Exception] = {}
        self.on_fetch: Callable[[str], None] | None = None
        self.bytes_per_change = 10
        self.honor_batch_size = True
        self._log: dict[str, list[IncrementalChange]] = {}

    def add_changes(self, table: str, *changes: IncrementalChange) -> None:
        self._log.setdefault(table, []).extend(changes)

    def connect(self, connection_id: str, auth: AuthConfig) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected.append(connection_id)

    def disconnect(self, connection_id: str) -> None:
        self.disconnected.append(connection_id)

    def get_incremental_changes(
        self,
        connection_id: str,
        table: TableRef,
        incremental: IncrementalConfig,
        from_watermark: WatermarkValue | None,
        batch_size: int,
    ) -> ChangeBatch:
        name = table.qualified_name
        if self.on_fetch is not None:
            self.on_fetch(name)
        self.fetches.append((name, from_watermark, batch_size))
        if name in self.fetch_errors:
            raise self.fetch_errors[name]

        kind = incremental.strategy.watermark_kind
        newer = [
            c for c in self._log.get(name, [])
            if from_watermark is None or WatermarkValue.coerce(kind, c.watermark) > from_watermark
        ]
        if self.honor_batch_size:
            newer = newer[:batch_size]
        return ChangeBatch(changes=tuple(newer))

    def process_change_batch(
        self,
        connection_id: str,
        table: TableRef,
        changes: Sequence[IncrementalChange],
        strategy: IncrementalStrategy,
    ) -> BatchApplyResult:
        name = table.qualified_name
        if name in self.apply_errors:
            raise self.apply_errors[name]
        self.applied.append((name, list(changes)))
        return BatchApplyResult(bytes_processed=self.bytes_per_change * len(changes))

    def applied_count(self, table: str) -> int:
        return sum(len(batch) for name, batch in self.applied if name == table)


class RecordingWatermarkStore(SqlWatermarkStore):
    """In-memory watermark store remembering every write.

    Attributes:
        writes: ``(table, value)`` in write order
        fail_get: Tables whose lookup raises
        fail_set: Tables whose write raises
    """

    def __init__(self) -> None:
        super().__init__()
        self.writes: list[tuple[str, WatermarkValue]] = []
        self.fail_get: set[str] = set()
        self.fail_set: set[str] = set()

    def get_watermark(self, connection_id: str, table: str) -> WatermarkValue | None:
        if table in self.fail_get:
            raise ConnectionError(f"watermark store unavailable for {table}")
        return super().get_watermark(connection_id, table)

    def set_watermark(self, connection_id: str, table: str, value: WatermarkValue) -> None:
        if table in self.fail_set:
            raise ConnectionError(f"watermark write failed for {table}")
        super().set_watermark(connection_id, table, value)
        self.writes.append((table, value))

    def history(self, table: str) -> list[WatermarkValue]:
        return [value for name, value in self.writes if name == table]


# =============================================================================
# Transformation engine
# =============================================================================


class FakeTransforms:
    """Transformation engine returning canned outcomes per step id.

    Attributes:
        validation_errors: step id -> exception raised by validation
        execution_errors: step id -> exception raised by execution
        check_results: step id -> result checks returned after execution
        hooks: step id -> callable run inside ``execute_transformation``
        executed / validated: step ids in call order
        rollbacks: ``completed_steps`` of each rollback call
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.validation_errors: dict[str, Exception] = {}
        self.execution_errors: dict[str, Exception] = {}
        self.check_results: dict[str, list[ValidationCheckResult]] = {}
        self.hooks: dict[str, Callable[[TransformationStep], None]] = {}
        self.rollback_error: Exception | None = None
        self.cleanup_error: Exception | None = None
        self.validated: list[str] = []
        self.executed: list[str] = []
        self.rollbacks: list[list[str]] = []
        self.cleanups: list[str] = []
        self.records_per_step = 100

    def validate_transformation(
        self, connection_id: str, step: TransformationStep, mode: ExecutionMode
    ) -> None:
        with self._lock:
            self.validated.append(step.id)
        if step.id in self.validation_errors:
            raise self.validation_errors[step.id]

    def execute_transformation(
        self,
        connection_id: str,
        step: TransformationStep,
        mode: ExecutionMode,
        execution_id: str,
    ) -> TransformationExecution:
        with self._lock:
            self.executed.append(step.id)
        hook = self.hooks.get(step.id)
        if hook is not None:
            hook(step)
        if step.id in self.execution_errors:
            raise self.execution_errors[step.id]
        return TransformationExecution(
            records_processed=self.records_per_step,
            records_output=self.records_per_step,
            bytes_processed=self.records_per_step * 8,
            metrics={"engine": "fake"},
        )

    def validate_transformation_results(
        self,
        connection_id: str,
        step: TransformationStep,
        execution: TransformationExecution,
    ) -> list[ValidationCheckResult]:
        return list(self.check_results.get(step.id, [ValidationCheckResult("row_count", True)]))

    def rollback_transformation(
        self,
        connection_id: str,
        pipeline_id: str,
        execution_id: str,
        completed_steps: list[str],
    ) -> None:
        self.rollbacks.append(list(completed_steps))
        if self.rollback_error is not None:
            raise self.rollback_error

    def cleanup_temp_resources(self, connection_id: str, pipeline_id: str, execution_id: str) -> None:
        self.cleanups.append(execution_id)
        if self.cleanup_error is not None:
            raise self.cleanup_error


# =============================================================================
# Sinks
# =============================================================================


class RecordingNotificationSink:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.events: list[NotificationEvent] = []

    def send_notification(self, event: NotificationEvent) -> None:
        if self.error is not None:
            raise self.error
        self.events.append(event)


class RecordingStatusPublisher:
    def __init__(self) -> None:
        self.updates: list[dict[str, Any]] = []

    def update_transformation_status(
        self,
        connection_id: str,
        pipeline_id: str,
        execution_id: str,
        status: dict[str, Any],
    ) -> None:
        self.updates.append(status)

    @property
    def phases(self) -> list[str]:
        return [u["phase"] for u in self.updates]
