"""
Collaborator contracts called by the orchestrators.

Each collaborator is a Protocol with one method per operation, injected
into an orchestrator at construction time.  Production code wires real
connectors and transformation engines; tests wire the in-memory fakes from
:mod:`etlspine.testing`.

Every call goes through :class:`ActivityRunner`, which applies the
workflow's retry policy (bounded exponential backoff, no retry for
``retryable=False`` errors) and logs each retry.  The orchestration logic
only ever sees the final success or final failure.

Contracts::

    ConnectorActivities     connect / disconnect /
                            get_incremental_changes / process_change_batch
    TransformActivities     validate_transformation / execute_transformation /
                            validate_transformation_results /
                            rollback_transformation / cleanup_temp_resources
    StatusPublisher         update_transformation_status (optional)
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from etlspine.core.errors import error_message
from etlspine.core.logging import get_logger
from etlspine.core.watermarks import WatermarkValue
from etlspine.orchestration.models import (
    AuthConfig,
    ExecutionMode,
    IncrementalConfig,
    IncrementalStrategy,
    TableRef,
    TransformationStep,
)
from etlspine.orchestration.retry import RetryContext, RetryPolicy
from etlspine.orchestration.status import ValidationCheckResult

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Result types
# =============================================================================


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class IncrementalChange:
    """One captured mutation of a source row.

    ``watermark`` may be a :class:`WatermarkValue` or the connector's raw
    cursor; the orchestrator coerces it to the table's watermark kind.
    """

    operation: ChangeOperation
    table: str
    primary_key: dict[str, Any]
    watermark: WatermarkValue | Any
    data: dict[str, Any] | None = None
    captured_at: datetime | None = None


@dataclass(frozen=True)
class ChangeBatch:
    """Changes returned by one ``get_incremental_changes`` call, in fetch order."""

    changes: tuple[IncrementalChange, ...] = ()

    def __len__(self) -> int:
        return len(self.changes)

    def __bool__(self) -> bool:
        return bool(self.changes)


@dataclass(frozen=True)
class BatchApplyResult:
    bytes_processed: int = 0


@dataclass(frozen=True)
class TransformationExecution:
    """Volumes reported by the transformation engine for one step."""

    records_processed: int = 0
    records_output: int = 0
    bytes_processed: int = 0
    metrics: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Contracts
# =============================================================================


@runtime_checkable
class ConnectorActivities(Protocol):
    """Source-system operations used by the incremental sync."""

    def connect(self, connection_id: str, auth: AuthConfig) -> None: ...

    def disconnect(self, connection_id: str) -> None: ...

    def get_incremental_changes(
        self,
        connection_id: str,
        table: TableRef,
        incremental: IncrementalConfig,
        from_watermark: WatermarkValue | None,
        batch_size: int,
    ) -> ChangeBatch:
        """Return changes strictly newer than *from_watermark*, at most *batch_size*."""
        ...

    def process_change_batch(
        self,
        connection_id: str,
        table: TableRef,
        changes: Sequence[IncrementalChange],
        strategy: IncrementalStrategy,
    ) -> BatchApplyResult:
        """Apply *changes* idempotently.  Returning means they are durable."""
        ...


@runtime_checkable
class TransformActivities(Protocol):
    """Transformation-engine operations used by the pipeline orchestrator."""

    def validate_transformation(
        self, connection_id: str, step: TransformationStep, mode: ExecutionMode
    ) -> None:
        """Raise if *step* references missing objects or is malformed."""
        ...

    def execute_transformation(
        self,
        connection_id: str,
        step: TransformationStep,
        mode: ExecutionMode,
        execution_id: str,
    ) -> TransformationExecution: ...

    def validate_transformation_results(
        self,
        connection_id: str,
        step: TransformationStep,
        execution: TransformationExecution,
    ) -> list[ValidationCheckResult]: ...

    def rollback_transformation(
        self,
        connection_id: str,
        pipeline_id: str,
        execution_id: str,
        completed_steps: list[str],
    ) -> None: ...

    def cleanup_temp_resources(
        self, connection_id: str, pipeline_id: str, execution_id: str
    ) -> None: ...


@runtime_checkable
class StatusPublisher(Protocol):
    """Pushes pipeline status to an external dashboard."""

    def update_transformation_status(
        self,
        connection_id: str,
        pipeline_id: str,
        execution_id: str,
        status: dict[str, Any],
    ) -> None: ...


# =============================================================================
# Runner
# =============================================================================


class ActivityRunner:
    """
    Invokes collaborator calls under a retry policy.

    Args:
        policy: Backoff policy applied to every call
        sleep: Blocking sleep used between attempts (a clock's ``sleep``)
        workflow: Name bound into retry log events
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], None],
        workflow: str = "",
    ):
        self.policy = policy
        self._sleep = sleep
        self._workflow = workflow

    def call(self, activity: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func(*args, **kwargs)`` with retries; re-raise the final failure."""

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "activity.retry",
                workflow=self._workflow,
                activity=activity,
                attempt=attempt,
                max_attempts=self.policy.maximum_attempts,
                delay_seconds=round(delay, 3),
                error=error_message(error),
            )

        ctx = RetryContext(self.policy, on_retry=on_retry, sleep=self._sleep)
        try:
            return ctx.run(func, *args, **kwargs)
        except Exception as e:
            logger.debug(
                "activity.failed",
                workflow=self._workflow,
                activity=activity,
                attempts=ctx.attempts,
                error=error_message(e),
            )
            raise
