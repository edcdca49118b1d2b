"""
Incremental Sync Orchestrator - continuous watermark-based change capture.

State machine::

    INITIALIZING ──► SYNCING ⇄ WAITING ──► COMPLETED   (cancel / max_cycles)
         │                                  FAILED      (connect failure)
         └──────────────────────────────►

One cycle walks every configured table:

1. Fetch changes strictly newer than the table's watermark, at most
   ``min(table.batch_size, sync.max_batch_size)``
2. Split into sub-batches of ``table.batch_size``
3. Apply each sub-batch through the connector
4. Only then advance the watermark to that sub-batch's maximum
5. Checkpoint every ``checkpoint_every_batches`` sub-batches

A failing table is recorded and skipped for the rest of the cycle; it is
retried on the next one.  After the pass the orchestrator sleeps according
to the fastest cadence among its tables.

Control commands (pause / resume / cancel / refresh_watermarks) arrive over
a :class:`ControlChannel` and are applied on this thread only: at the top
of each cycle, before each table, between sub-batches and while sleeping.

Example:
    >>> orchestrator = IncrementalSyncOrchestrator(
    ...     sync_input, connector, SqlWatermarkStore(), SqlCheckpointStore(),
    ... )
    >>> handle = start_workflow(orchestrator)
    >>> handle.get_status().progress.changes_processed
    1200
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable

from etlspine.core.checkpoints import CheckpointStore, SyncCheckpoint
from etlspine.core.errors import error_message
from etlspine.core.logging import LogContext, get_logger
from etlspine.core.settings import CadenceSettings, EtlSettings, get_settings
from etlspine.core.watermarks import WatermarkStore, WatermarkValue, max_watermark
from etlspine.notifications import (
    NotificationEvent,
    NotificationSink,
    NotificationType,
    notify,
    should_notify,
)
from etlspine.orchestration.activities import ActivityRunner, ConnectorActivities
from etlspine.orchestration.models import (
    IncrementalSyncInput,
    SyncFrequency,
    TableSyncConfig,
)
from etlspine.orchestration.retry import RetryPolicy
from etlspine.orchestration.runtime import Clock, SystemClock
from etlspine.orchestration.signals import ControlChannel, ControlCommand
from etlspine.orchestration.status import SyncPhase, SyncStatus

logger = get_logger(__name__)


def sleep_duration(
    frequencies: Iterable[SyncFrequency],
    had_changes: bool,
    cadence: CadenceSettings | None = None,
) -> float:
    """
    Seconds to sleep between cycles.

    Chosen from the fastest cadence present.  Realtime tables sleep briefly
    after a cycle that applied changes and longer after an empty one.
    Without any table the daily interval applies.
    """
    cadence = cadence or CadenceSettings()
    present = set(frequencies)

    if SyncFrequency.REALTIME in present:
        return cadence.realtime_active if had_changes else cadence.realtime_idle
    if SyncFrequency.MINUTE in present:
        return cadence.minute
    if SyncFrequency.HOURLY in present:
        return cadence.hourly
    return cadence.daily


class IncrementalSyncOrchestrator:
    """
    Drives one long-running incremental sync instance.

    Args:
        sync_input: Immutable descriptor of the connection and its tables
        connector: Source-system collaborator
        watermarks: Per-table cursor store
        checkpoints: Checkpoint store (best effort)
        notifier: Optional notification sink
        settings: Settings override (defaults to :func:`get_settings`)
        clock: Time source (``ManualClock`` in tests)
        execution_id: Instance id (generated when omitted)
        max_cycles: Stop after this many full passes (default: run until cancelled)
        retry_policy: Activity retry override (defaults to ``settings.sync_retry``)
    """

    workflow = "incremental_sync"

    def __init__(
        self,
        sync_input: IncrementalSyncInput,
        connector: ConnectorActivities,
        watermarks: WatermarkStore,
        checkpoints: CheckpointStore,
        notifier: NotificationSink | None = None,
        *,
        settings: EtlSettings | None = None,
        clock: Clock | None = None,
        execution_id: str | None = None,
        max_cycles: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.input = sync_input
        self.execution_id = execution_id or f"sync-{uuid.uuid4().hex[:12]}"
        self._connector = connector
        self._watermark_store = watermarks
        self._checkpoints = checkpoints
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._max_cycles = max_cycles

        policy = retry_policy or RetryPolicy.from_settings(self._settings.sync_retry)
        self._activities = ActivityRunner(policy, self._clock.sleep, workflow=self.workflow)

        self._channel = ControlChannel()
        self._status = SyncStatus()
        self._status_lock = threading.Lock()
        self._published = self._status.snapshot()

        # Owned by the orchestration thread
        self._watermarks: dict[str, WatermarkValue | None] = {}
        self._paused = False
        self._cancelled = False
        self._last_cleanup_batches = 0
        self._processing_seconds = 0.0
        # Applied in the current cycle, including tables that later failed
        self._cycle_changes = 0

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

    def refresh_watermarks(self) -> None:
        self.send(ControlCommand.REFRESH_WATERMARKS)

    def get_status(self) -> SyncStatus:
        """Return the last published status snapshot.  Never blocks the loop."""
        with self._status_lock:
            return self._published.snapshot()

    # =========================================================================
    # Run
    # =========================================================================

    def run(self) -> SyncStatus:
        """
        Run the sync until cancelled (or ``max_cycles`` passes complete).

        Returns:
            Final status snapshot (phase COMPLETED)

        Raises:
            Exception: The connect failure (or any unexpected error) after
                the status was set to FAILED and the failure notified
        """
        with LogContext(
            workflow=self.workflow,
            execution_id=self.execution_id,
            connection_id=self.input.connection_id,
        ):
            self._status.progress.total_tables = len(self.input.tables)
            self._publish()

            logger.info(
                "sync.started",
                connector_type=self.input.connector_type,
                tables=len(self.input.tables),
            )

            try:
                self._activities.call(
                    "connect", self._connector.connect, self.input.connection_id, self.input.auth
                )
                self._load_watermarks()
                self._loop()
                self._complete()
            except Exception as e:
                self._fail(e)
                raise
            finally:
                self._disconnect()

            return self._status.snapshot()

    def _loop(self) -> None:
        while True:
            self._apply_commands(self._channel.drain())
            self._wait_while_paused()
            if self._cancelled:
                return

            self._status.phase = SyncPhase.SYNCING
            self._publish()

            changes, interrupted = self._run_cycle()
            if self._cancelled:
                return
            if interrupted:
                continue

            self._status.progress.cycles_completed += 1
            self._maybe_cleanup()
            self._publish()

            if self._max_cycles is not None and self._status.progress.cycles_completed >= self._max_cycles:
                logger.info("sync.max_cycles_reached", cycles=self._max_cycles)
                return

            duration = sleep_duration(
                (t.incremental.frequency for t in self.input.tables),
                changes > 0,
                self._settings.cadence,
            )
            self._status.phase = SyncPhase.WAITING
            self._status.current_table = None
            self._publish()

            logger.info("sync.sleeping", duration_seconds=duration, changes_in_cycle=changes)
            self._sleep(duration)

    def _run_cycle(self) -> tuple[int, bool]:
        """One pass over all tables.  Returns (changes applied, interrupted)."""
        started = self._clock.monotonic()
        self._status.progress.last_sync_time = self._clock.now()
        self._status.progress.processed_tables = 0
        self._cycle_changes = 0

        for table_config in self.input.tables:
            self._apply_commands(self._channel.drain())
            if self._paused or self._cancelled:
                logger.info("sync.cycle_interrupted", paused=self._paused, cancelled=self._cancelled)
                return self._cycle_changes, True

            name = table_config.table.qualified_name
            self._status.current_table = name
            self._publish()

            try:
                self._sync_table(table_config)
                self._status.progress.processed_tables += 1
            except Exception as e:
                self._record_table_error(name, e)
            self._publish()

        elapsed = self._clock.monotonic() - started
        total_changes = self._cycle_changes
        self._status.metrics.changes_per_second = (
            total_changes / elapsed if total_changes and elapsed > 0 else 0.0
        )
        if self._status.progress.batches_processed:
            self._status.metrics.avg_processing_time_seconds = (
                self._processing_seconds / self._status.progress.batches_processed
            )
        return total_changes, False

    def _sync_table(self, table_config: TableSyncConfig) -> int:
        """Fetch, apply and advance one table.  Returns changes applied."""
        name = table_config.table.qualified_name
        incremental = table_config.incremental
        kind = incremental.strategy.watermark_kind
        limit = min(incremental.batch_size, self.input.sync.max_batch_size)

        batch = self._activities.call(
            "get_incremental_changes",
            self._connector.get_incremental_changes,
            self.input.connection_id,
            table_config.table,
            incremental,
            self._watermarks.get(name),
            limit,
        )
        if not batch.changes:
            return 0

        logger.info(
            "sync.processing_changes",
            table=name,
            changes=len(batch.changes),
            from_watermark=str(self._watermarks.get(name)),
        )

        changes = list(batch.changes)
        applied = 0
        for start in range(0, len(changes), incremental.batch_size):
            if start:
                self._apply_commands(self._channel.drain())
                if self._paused or self._cancelled:
                    logger.info("sync.table_interrupted", table=name, applied=applied)
                    break

            sub_batch = changes[start:start + incremental.batch_size]
            high = max_watermark([
                WatermarkValue.coerce(kind, c.watermark) if c.watermark is not None else None
                for c in sub_batch
            ])

            began = self._clock.monotonic()
            result = self._activities.call(
                "process_change_batch",
                self._connector.process_change_batch,
                self.input.connection_id,
                table_config.table,
                sub_batch,
                incremental.strategy,
            )
            self._processing_seconds += self._clock.monotonic() - began

            progress = self._status.progress
            progress.changes_processed += len(sub_batch)
            progress.batches_processed += 1
            self._status.metrics.total_bytes_processed += result.bytes_processed
            applied += len(sub_batch)
            self._cycle_changes += len(sub_batch)

            if high is not None:
                self._advance_watermark(name, high)

            if progress.batches_processed % self._settings.checkpoint_every_batches == 0:
                self._checkpoint(name)
            self._publish()

        logger.info(
            "sync.table_completed",
            table=name,
            changes_processed=applied,
            watermark=str(self._watermarks.get(name)),
        )
        return applied

    # =========================================================================
    # Watermarks
    # =========================================================================

    def _load_watermarks(self) -> None:
        for table_config in self.input.tables:
            name = table_config.table.qualified_name
            try:
                value = self._activities.call(
                    "get_watermark",
                    self._watermark_store.get_watermark,
                    self.input.connection_id,
                    name,
                )
            except Exception as e:
                logger.warning(
                    "sync.watermark_lookup_failed",
                    table=name,
                    error=error_message(e),
                )
                value = None
            self._watermarks[name] = value
            self._status.watermarks[name] = value
            logger.info("sync.watermark_loaded", table=name, watermark=str(value))
        self._publish()

    def _advance_watermark(self, table: str, value: WatermarkValue) -> None:
        """Persist *value* only if it moves the table's cursor forward."""
        current = self._watermarks.get(table)
        if current is not None and not value > current:
            logger.warning(
                "sync.watermark_not_advanced",
                table=table,
                current=str(current),
                candidate=str(value),
            )
            return

        self._activities.call(
            "set_watermark",
            self._watermark_store.set_watermark,
            self.input.connection_id,
            table,
            value,
        )
        self._watermarks[table] = value
        self._status.watermarks[table] = value

    # =========================================================================
    # Commands
    # =========================================================================

    def _apply_commands(self, commands: list[ControlCommand]) -> None:
        for command in commands:
            if command is ControlCommand.PAUSE:
                if not self._paused:
                    logger.info("sync.paused")
                self._paused = True
            elif command is ControlCommand.RESUME:
                if self._paused:
                    logger.info("sync.resumed")
                self._paused = False
            elif command is ControlCommand.CANCEL:
                logger.info("sync.cancel_requested")
                self._cancelled = True
            elif command is ControlCommand.REFRESH_WATERMARKS:
                logger.info("sync.refreshing_watermarks")
                self._load_watermarks()
            self._status.paused = self._paused
        if commands:
            self._publish()

    def _wait_while_paused(self) -> None:
        poll = self._settings.control_poll_interval_seconds
        while self._paused and not self._cancelled:
            command = self._clock.wait_for_command(self._channel, poll)
            if command is not None:
                self._apply_commands([command])

    def _sleep(self, seconds: float) -> None:
        """Sleep between cycles.  Cancel ends the sleep; a pause only holds it."""
        deadline = self._clock.monotonic() + seconds
        while not self._cancelled:
            if self._paused:
                self._wait_while_paused()
                continue
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                return
            command = self._clock.wait_for_command(self._channel, remaining)
            if command is not None:
                self._apply_commands([command])

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _record_table_error(self, table: str, error: Exception) -> None:
        message = error_message(error)
        record = self._status.record_error(
            message, table=table, max_errors=self._settings.max_recorded_errors
        )
        logger.error(
            "sync.table_failed",
            table=table,
            error=message,
            retry_count=record.retry_count,
        )

        threshold = self._settings.error_attention_threshold
        if record.retry_count >= threshold and table not in self._status.flagged_tables:
            self._status.flagged_tables.append(table)
            logger.error(
                "sync.table_needs_attention",
                table=table,
                retry_count=record.retry_count,
            )

    def _checkpoint(self, table: str) -> None:
        progress = self._status.progress
        checkpoint = SyncCheckpoint(
            connection_id=self.input.connection_id,
            table=table,
            execution_id=self.execution_id,
            watermark=self._watermarks.get(table),
            changes_processed=progress.changes_processed,
            batches_processed=progress.batches_processed,
            created_at=self._clock.now(),
        )
        try:
            self._activities.call(
                "create_sync_checkpoint", self._checkpoints.create_sync_checkpoint, checkpoint
            )
        except Exception as e:
            logger.warning("sync.checkpoint_failed", table=table, error=error_message(e))

    def _maybe_cleanup(self) -> None:
        batches = self._status.progress.batches_processed
        if batches - self._last_cleanup_batches < self._settings.cleanup_every_batches:
            return
        self._last_cleanup_batches = batches
        try:
            removed = self._activities.call(
                "cleanup_checkpoints",
                self._checkpoints.cleanup_checkpoints,
                self.input.connection_id,
                self.input.sync.retention_days,
                now=self._clock.now(),
            )
            logger.info("sync.checkpoints_cleaned", removed=removed)
        except Exception as e:
            logger.warning("sync.cleanup_failed", error=error_message(e))

    def _publish(self) -> None:
        snapshot = self._status.snapshot()
        with self._status_lock:
            self._published = snapshot

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _complete(self) -> None:
        self._status.phase = SyncPhase.COMPLETED
        self._status.current_table = None
        for name in self.input.table_names():
            self._checkpoint(name)
        self._publish()

        logger.info(
            "sync.completed",
            changes_processed=self._status.progress.changes_processed,
            cycles=self._status.progress.cycles_completed,
            errors=len(self._status.errors),
        )
        self._notify(succeeded=True)

    def _fail(self, error: Exception) -> None:
        message = error_message(error)
        self._status.phase = SyncPhase.FAILED
        self._status.current_table = None
        self._status.record_error(message, max_errors=self._settings.max_recorded_errors)
        self._publish()

        logger.error("sync.failed", error=message)
        self._notify(succeeded=False)

    def _notify(self, succeeded: bool) -> None:
        if not should_notify(self.input.notifications, succeeded):
            return
        notify(
            self._notifier,
            NotificationEvent(
                type=NotificationType.INCREMENTAL_SYNC,
                connection_id=self.input.connection_id,
                status=self._status.phase.value,
                config=self.input.notifications,
                execution_id=self.execution_id,
                summary=self._status.to_dict(),
            ),
        )

    def _disconnect(self) -> None:
        try:
            self._connector.disconnect(self.input.connection_id)
        except Exception as e:
            logger.warning("sync.disconnect_failed", error=error_message(e))
