"""
Transformation Orchestrator - dependency-ordered multi-step pipelines.

State machine::

    INITIALIZING ─► VALIDATING ─► EXECUTING ─► VALIDATING_RESULTS ─► COMPLETED
                        │             │                │
                        │             └──► ROLLING_BACK ◄┘
                        ▼                      │
                      FAILED ◄─────────────────┘

Phases:

1. **Validate** every step up front.  Outside dry-run the first failure
   raises :class:`PipelineValidationError`; a dry-run records failures and
   ends COMPLETED without executing anything.
2. **Plan** with :class:`DependencyResolver` and write an initial checkpoint.
3. **Execute** level by level.  Steps of one level run on a thread pool
   bounded by ``parallelism``; the next level starts only after the whole
   level joined.  Step threads only return :class:`StepResult` values; this
   thread appends them, updates counters and checkpoints.
4. **Roll back** on cancellation (when something succeeded) or on errors
   with ``rollback_on_failure``.
5. **Account**: COMPLETED iff not cancelled and no error-severity entries.

Failure policy:
    ``retry_failed_steps=False``: no further step is started after the first
    failure; steps already running finish and are recorded.
    ``retry_failed_steps=True``: the walk continues; every transitive
    dependent of a failed step is recorded as ``skipped`` with a warning.
"""

from __future__ import annotations

import contextvars
import threading
import uuid
from collections import deque
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime

from etlspine.core.checkpoints import CheckpointStore, TransformationCheckpoint
from etlspine.core.errors import error_message
from etlspine.core.logging import LogContext, get_logger
from etlspine.core.settings import EtlSettings, get_settings
from etlspine.notifications import (
    NotificationEvent,
    NotificationSink,
    NotificationType,
    notify,
    should_notify,
)
from etlspine.orchestration.activities import (
    ActivityRunner,
    ConnectorActivities,
    StatusPublisher,
    TransformActivities,
)
from etlspine.orchestration.exceptions import PipelineValidationError
from etlspine.orchestration.models import TransformationInput, TransformationStep
from etlspine.orchestration.planner import ExecutionPlan, build_execution_plan, transitive_dependents
from etlspine.orchestration.retry import RetryPolicy
from etlspine.orchestration.runtime import Clock, SystemClock
from etlspine.orchestration.signals import ControlChannel, ControlCommand
from etlspine.orchestration.status import (
    ErrorSeverity,
    PipelinePhase,
    PipelineStatus,
    StepResult,
    StepStatus,
    ValidationCheckResult,
)

logger = get_logger(__name__)


class TransformationOrchestrator:
    """
    Runs one transformation pipeline to a terminal phase.

    Args:
        transformation_input: Immutable pipeline descriptor
        connector: Source connection lifecycle (connect / disconnect)
        transforms: Transformation-engine collaborator
        checkpoints: Checkpoint store (best effort)
        notifier: Optional notification sink
        status_publisher: Optional external dashboard feed
        settings: Settings override (defaults to :func:`get_settings`)
        clock: Time source
        execution_id: Run id (generated when omitted)
        retry_policy: Activity retry override (defaults to ``settings.transform_retry``)
    """

    workflow = "transformation"

    def __init__(
        self,
        transformation_input: TransformationInput,
        connector: ConnectorActivities,
        transforms: TransformActivities,
        checkpoints: CheckpointStore,
        notifier: NotificationSink | None = None,
        status_publisher: StatusPublisher | None = None,
        *,
        settings: EtlSettings | None = None,
        clock: Clock | None = None,
        execution_id: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.input = transformation_input
        self.execution_id = execution_id or f"tx-{uuid.uuid4().hex[:12]}"
        self._connector = connector
        self._transforms = transforms
        self._checkpoints = checkpoints
        self._notifier = notifier
        self._status_publisher = status_publisher
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

        policy = retry_policy or RetryPolicy.from_settings(self._settings.transform_retry)
        self._activities = ActivityRunner(policy, self._clock.sleep, workflow=self.workflow)

        self._channel = ControlChannel()
        self._status = PipelineStatus()
        self._status_lock = threading.Lock()
        self._published = self._status.snapshot()

        # Read by step threads, written by this orchestrator's thread only
        self._running = threading.Event()
        self._running.set()
        self._cancel_requested = threading.Event()

        self._paused = False
        self._cancelled = False
        self._started_at: datetime | None = None
        self._skip: set[str] = set()

    @property
    def pipeline_id(self) -> str:
        return self.input.pipeline.id

    # =========================================================================
    # Control surface
    # =========================================================================

    def send(self, command: ControlCommand) -> None:
        """Queue a control command.  Safe from any thread."""
        self._channel.send(command)

    def pause(self) -> None:
        self.send(ControlCommand.PAUSE)

    def resume(self) -> None:
        self.send(ControlCommand.RESUME)

    def cancel(self) -> None:
        self.send(ControlCommand.CANCEL)

    def get_status(self) -> PipelineStatus:
        """Return the last published status snapshot.  Never blocks the run."""
        with self._status_lock:
            return self._published.snapshot()

    # =========================================================================
    # Run
    # =========================================================================

    def run(self) -> PipelineStatus:
        """
        Run the pipeline to COMPLETED or FAILED.

        Returns:
            Final status snapshot

        Raises:
            PipelineValidationError: A step failed validation outside dry-run
            CycleDetectedError: The step dependencies contain a cycle
            Exception: A connect failure
        """
        with LogContext(
            workflow=self.workflow,
            execution_id=self.execution_id,
            pipeline_id=self.pipeline_id,
        ):
            self._started_at = self._clock.now()
            started = self._clock.monotonic()
            steps = self.input.pipeline.steps
            self._status.progress.total_steps = len(steps)
            self._publish()

            logger.info(
                "transform.started",
                total_steps=len(steps),
                mode=self.input.execution.mode.value,
                dry_run=self.input.execution.dry_run,
            )

            try:
                self._publish_external()
                self._activities.call(
                    "connect", self._connector.connect, self.input.connection_id, self.input.auth
                )
                self._validate(steps)

                if self.input.execution.dry_run:
                    self._finish_dry_run(started)
                else:
                    plan = build_execution_plan(steps)
                    self._status.metrics.execution_order = plan.to_list()
                    self._status.phase = PipelinePhase.EXECUTING
                    self._checkpoint()
                    self._publish()

                    self._execute(plan)
                    self._finish(started)
            except Exception as e:
                self._fail(e, started)
                raise
            finally:
                self._release()

            return self._status.snapshot()

    # =========================================================================
    # Phases
    # =========================================================================

    def _validate(self, steps: Sequence[TransformationStep]) -> None:
        self._status.phase = PipelinePhase.VALIDATING
        self._publish()

        for step in steps:
            self._apply_commands(self._channel.drain())
            if self._cancelled:
                break

            try:
                self._activities.call(
                    "validate_transformation",
                    self._transforms.validate_transformation,
                    self.input.connection_id,
                    step,
                    self.input.execution.mode,
                )
            except Exception as e:
                reason = error_message(e)
                self._status.add_error(f"Validation failed: {reason}", step_id=step.id)
                self._publish()
                logger.error("transform.step_invalid", step_id=step.id, error=reason)

                if not self.input.execution.dry_run:
                    raise PipelineValidationError(step.id, step.name, reason) from e
                continue

            logger.info("transform.step_validated", step_id=step.id, step_name=step.name)

    def _execute(self, plan: ExecutionPlan) -> None:
        steps = self.input.pipeline.steps

        for index, level in enumerate(plan):
            self._apply_commands(self._channel.drain())
            self._wait_while_paused()
            if self._cancelled:
                break

            runnable = []
            for step_id in level:
                step = self.input.pipeline.get_step(step_id)
                if step_id in self._skip:
                    self._record_skipped(step)
                else:
                    runnable.append(step)

            logger.info("transform.level_started", level=index, steps=[s.id for s in runnable])
            stop = self._execute_level(runnable)

            if self.input.execution.retry_failed_steps:
                for failed in self._failed_in(level):
                    self._skip |= transitive_dependents(steps, failed)
            if stop:
                logger.warning("transform.walk_aborted", level=index)
                break

    def _execute_level(self, level: list[TransformationStep]) -> bool:
        """Run one level to completion.  Returns True when the walk must stop."""
        if not level:
            return False

        parallelism = self.input.execution.parallelism
        pending = deque(level)
        running: dict[Future, TransformationStep] = {}
        stop = False
        poll = self._settings.control_poll_interval_seconds

        with ThreadPoolExecutor(
            max_workers=min(parallelism, len(level)),
            thread_name_prefix=f"{self.execution_id}-step",
        ) as executor:
            while pending or running:
                self._apply_commands(self._channel.drain())

                while pending and len(running) < parallelism and not (stop or self._cancelled or self._paused):
                    step = pending.popleft()
                    self._status.progress.current_steps.append(step.id)
                    ctx = contextvars.copy_context()
                    running[executor.submit(ctx.run, self._run_step, step)] = step
                    self._publish()

                if not running:
                    if pending and self._paused and not (stop or self._cancelled):
                        self._wait_while_paused()
                        continue
                    break

                done, _ = wait(running, timeout=poll, return_when=FIRST_COMPLETED)
                for future in done:
                    step = running.pop(future)
                    result = future.result()
                    if self._record_outcome(step, result):
                        stop = True

        for step in pending:
            logger.info("transform.step_not_started", step_id=step.id)
        return stop or self._cancelled

    def _run_step(self, step: TransformationStep) -> StepResult | None:
        """Execute one step on a pool thread.  Returns None when cancelled first."""
        if not self._await_runnable():
            return None

        started_at = self._clock.now()
        logger.info("transform.step_started", step_id=step.id, step_name=step.name, kind=step.kind.value)

        try:
            execution = self._activities.call(
                "execute_transformation",
                self._transforms.execute_transformation,
                self.input.connection_id,
                step,
                self.input.execution.mode,
                self.execution_id,
            )
        except Exception as e:
            return StepResult.failed(step.id, step.name, started_at, error_message(e))

        volumes = {
            "records_processed": execution.records_processed,
            "records_output": execution.records_output,
            "bytes_processed": execution.bytes_processed,
            "metrics": execution.metrics,
        }
        if step.validation is None:
            return StepResult.succeeded(step.id, step.name, started_at, **volumes)

        try:
            checks = tuple(
                self._activities.call(
                    "validate_transformation_results",
                    self._transforms.validate_transformation_results,
                    self.input.connection_id,
                    step,
                    execution,
                )
            )
        except Exception as e:
            return StepResult.failed(
                step.id, step.name, started_at, f"Result validation failed: {error_message(e)}", **volumes
            )

        critical = [c for c in checks if not c.passed and self._is_critical(step, c)]
        if critical:
            detail = ", ".join(c.message or c.check_name for c in critical)
            return StepResult.failed(
                step.id,
                step.name,
                started_at,
                f"Critical validation failures: {detail}",
                validation_results=checks,
                **volumes,
            )
        return StepResult.succeeded(step.id, step.name, started_at, validation_results=checks, **volumes)

    @staticmethod
    def _is_critical(step: TransformationStep, check: ValidationCheckResult) -> bool:
        if "error" in check.check_name:
            return True
        return step.validation is not None and check.check_name in step.validation.error_rule_names()

    def _await_runnable(self) -> bool:
        """Block a step thread while paused.  False means cancelled."""
        poll = self._settings.control_poll_interval_seconds
        while not self._cancel_requested.is_set():
            if self._running.wait(poll):
                return not self._cancel_requested.is_set()
        return False

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _record_outcome(self, step: TransformationStep, result: StepResult | None) -> bool:
        """Append a step outcome.  Returns True when the walk must stop."""
        self._status.progress.current_steps.remove(step.id)
        if result is None:
            logger.info("transform.step_not_started", step_id=step.id, reason="cancelled")
            self._publish()
            return False

        self._status.results.append(result)
        if result.status is StepStatus.SUCCESS:
            self._status.progress.completed_steps += 1
            self._status.metrics.total_records_processed += result.records_processed
            self._status.metrics.total_bytes_processed += result.bytes_processed
            logger.info(
                "transform.step_completed",
                step_id=step.id,
                step_name=step.name,
                records_processed=result.records_processed,
                duration_seconds=result.duration_seconds,
            )
            stop = False
        else:
            self._status.add_error(result.error or "Step failed", step_id=step.id)
            logger.error("transform.step_failed", step_id=step.id, step_name=step.name, error=result.error)
            stop = not self.input.execution.retry_failed_steps

        self._checkpoint()
        self._publish()
        return stop

    def _record_skipped(self, step: TransformationStep) -> None:
        reason = "Skipped: a dependency failed"
        self._status.results.append(StepResult.skipped(step.id, step.name, reason))
        self._status.add_error(
            f"Step {step.id} skipped because a dependency failed",
            step_id=step.id,
            severity=ErrorSeverity.WARNING,
        )
        logger.warning("transform.step_skipped", step_id=step.id, reason="dependency_failed")
        self._publish()

    def _failed_in(self, level: Sequence[str]) -> list[str]:
        members = set(level)
        return [
            r.step_id for r in self._status.results
            if r.status is StepStatus.FAILED and r.step_id in members
        ]

    # =========================================================================
    # Commands
    # =========================================================================

    def _apply_commands(self, commands: list[ControlCommand]) -> None:
        for command in commands:
            if command is ControlCommand.PAUSE:
                if not self._paused:
                    logger.info("transform.paused")
                self._paused = True
                self._running.clear()
            elif command is ControlCommand.RESUME:
                if self._paused:
                    logger.info("transform.resumed")
                self._paused = False
                self._running.set()
            elif command is ControlCommand.CANCEL:
                logger.info("transform.cancel_requested")
                self._cancelled = True
                self._cancel_requested.set()
            else:
                logger.debug("transform.command_ignored", command=command.value)
            self._status.paused = self._paused
            self._status.cancelled = self._cancelled
        if commands:
            self._publish()

    def _wait_while_paused(self) -> None:
        poll = self._settings.control_poll_interval_seconds
        while self._paused and not self._cancelled:
            command = self._clock.wait_for_command(self._channel, poll)
            if command is not None:
                self._apply_commands([command])

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _finish_dry_run(self, started: float) -> None:
        self._apply_commands(self._channel.drain())
        self._status.phase = PipelinePhase.FAILED if self._cancelled else PipelinePhase.COMPLETED
        self._status.metrics.total_duration_seconds = self._clock.monotonic() - started
        self._publish()
        self._publish_external()

        logger.info(
            "transform.dry_run_completed",
            phase=self._status.phase.value,
            errors=len(self._status.errors),
        )
        self._notify()

    def _finish(self, started: float) -> None:
        status = self._status
        if not self._cancelled and not status.has_errors():
            status.phase = PipelinePhase.VALIDATING_RESULTS
            self._publish()

        completed = status.completed_step_ids()
        if (self._cancelled and completed) or (
            status.has_errors() and self.input.execution.rollback_on_failure
        ):
            self._rollback(completed)

        status.phase = (
            PipelinePhase.FAILED if self._cancelled or status.has_errors() else PipelinePhase.COMPLETED
        )
        status.progress.current_steps = []
        status.metrics.total_duration_seconds = self._clock.monotonic() - started
        status.metrics.total_records_processed = sum(r.records_processed for r in status.results)
        status.metrics.total_bytes_processed = sum(r.bytes_processed for r in status.results)
        self._publish()
        self._publish_external()

        logger.info(
            "transform.completed",
            phase=status.phase.value,
            completed_steps=status.progress.completed_steps,
            total_steps=status.progress.total_steps,
            errors=len(status.errors),
            duration_seconds=status.metrics.total_duration_seconds,
        )
        self._notify()

    def _rollback(self, completed: list[str]) -> None:
        self._status.phase = PipelinePhase.ROLLING_BACK
        self._publish()
        logger.warning("transform.rolling_back", completed_steps=completed)

        try:
            self._activities.call(
                "rollback_transformation",
                self._transforms.rollback_transformation,
                self.input.connection_id,
                self.pipeline_id,
                self.execution_id,
                completed,
            )
            logger.info("transform.rolled_back", steps=len(completed))
        except Exception as e:
            message = error_message(e)
            self._status.add_error(f"Rollback failed: {message}")
            logger.error("transform.rollback_failed", error=message)

    def _fail(self, error: Exception, started: float) -> None:
        message = error_message(error)
        self._status.phase = PipelinePhase.FAILED
        self._status.progress.current_steps = []
        self._status.add_error(message)
        self._status.metrics.total_duration_seconds = self._clock.monotonic() - started
        self._publish()
        self._publish_external()

        logger.error("transform.failed", error=message)
        self._notify()

    def _notify(self) -> None:
        succeeded = self._status.phase is PipelinePhase.COMPLETED
        if not should_notify(self.input.notifications, succeeded):
            return
        notify(
            self._notifier,
            NotificationEvent(
                type=NotificationType.TRANSFORMATION,
                connection_id=self.input.connection_id,
                status=self._status.phase.value,
                config=self.input.notifications,
                pipeline_id=self.pipeline_id,
                execution_id=self.execution_id,
                summary=self._status.to_dict(),
            ),
        )

    def _release(self) -> None:
        """Cleanup temp resources and disconnect.  Never overrides the outcome."""
        try:
            self._transforms.cleanup_temp_resources(
                self.input.connection_id, self.pipeline_id, self.execution_id
            )
        except Exception as e:
            logger.warning("transform.cleanup_failed", error=error_message(e))
        try:
            self._connector.disconnect(self.input.connection_id)
        except Exception as e:
            logger.warning("transform.disconnect_failed", error=error_message(e))

    # =========================================================================
    # Persistence
    # =========================================================================

    def _checkpoint(self) -> None:
        checkpoint = TransformationCheckpoint(
            connection_id=self.input.connection_id,
            pipeline_id=self.pipeline_id,
            execution_id=self.execution_id,
            completed_steps=tuple(self._status.completed_step_ids()),
            started_at=self._started_at or self._clock.now(),
            created_at=self._clock.now(),
        )
        try:
            self._activities.call(
                "create_transformation_checkpoint",
                self._checkpoints.create_transformation_checkpoint,
                checkpoint,
            )
        except Exception as e:
            logger.warning("transform.checkpoint_failed", error=error_message(e))

    def _publish(self) -> None:
        snapshot = self._status.snapshot()
        with self._status_lock:
            self._published = snapshot

    def _publish_external(self) -> None:
        if self._status_publisher is None:
            return
        try:
            self._status_publisher.update_transformation_status(
                self.input.connection_id,
                self.pipeline_id,
                self.execution_id,
                self._status.to_dict(),
            )
        except Exception as e:
            logger.warning("transform.status_publish_failed", error=error_message(e))
