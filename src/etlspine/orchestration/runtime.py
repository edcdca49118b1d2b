"""
Minimal in-process runtime for orchestrator instances.

Stands in for the observable behaviour of a durable-execution substrate:

- a :class:`Clock` that sleeps and can be woken by control commands
- :func:`start_workflow`, which runs one orchestrator on a daemon thread
- :class:`WorkflowHandle`, which delivers signals and answers queries

Workflow state is not persisted and there is no replay after a crash.
Recovery relies on watermarks and checkpoints.

Example:
    >>> handle = start_workflow(IncrementalSyncOrchestrator(input, ...))
    >>> handle.pause()
    >>> handle.get_status().paused
    True
    >>> handle.cancel()
    >>> handle.result(timeout=30).phase
    <SyncPhase.COMPLETED: 'completed'>
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from etlspine.core.errors import WorkflowError
from etlspine.core.logging import get_logger
from etlspine.orchestration.signals import ControlChannel, ControlCommand

logger = get_logger(__name__)


# =============================================================================
# Clock
# =============================================================================


@runtime_checkable
class Clock(Protocol):
    """Time source of an orchestrator."""

    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None:
        """Block for *seconds*.  Not interruptible (activity retry backoff)."""
        ...

    def wait_for_command(self, channel: ControlChannel, timeout: float) -> ControlCommand | None:
        """Block up to *timeout* seconds, returning early when a command arrives."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def wait_for_command(self, channel: ControlChannel, timeout: float) -> ControlCommand | None:
        return channel.poll(max(timeout, 0.0))


# =============================================================================
# Handle
# =============================================================================


@runtime_checkable
class Orchestrator(Protocol):
    """What the runtime needs from an orchestrator instance."""

    execution_id: str

    def run(self) -> Any: ...

    def send(self, command: ControlCommand) -> None: ...

    def get_status(self) -> Any: ...


class WorkflowHandle:
    """Signals and queries for one running orchestrator instance."""

    def __init__(self, orchestrator: Orchestrator, name: str | None = None):
        self.orchestrator = orchestrator
        self._thread = threading.Thread(
            target=self._target,
            name=name or f"workflow-{orchestrator.execution_id}",
            daemon=True,
        )
        self._result: Any = None
        self._error: Exception | None = None

    @property
    def execution_id(self) -> str:
        return self.orchestrator.execution_id

    def start(self) -> WorkflowHandle:
        self._thread.start()
        return self

    # -- signals -------------------------------------------------------------

    def pause(self) -> None:
        self.orchestrator.send(ControlCommand.PAUSE)

    def resume(self) -> None:
        self.orchestrator.send(ControlCommand.RESUME)

    def cancel(self) -> None:
        self.orchestrator.send(ControlCommand.CANCEL)

    def refresh_watermarks(self) -> None:
        self.orchestrator.send(ControlCommand.REFRESH_WATERMARKS)

    # -- queries -------------------------------------------------------------

    def get_status(self) -> Any:
        return self.orchestrator.get_status()

    def done(self) -> bool:
        return not self._thread.is_alive()

    def result(self, timeout: float | None = None) -> Any:
        """
        Wait for the run to finish and return its final status.

        Raises:
            WorkflowError: If the run is still going after *timeout*
            Exception: Whatever the run itself raised
        """
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise WorkflowError(
                f"Workflow {self.execution_id} still running after {timeout}s"
            )
        if self._error is not None:
            raise self._error
        return self._result

    def _target(self) -> None:
        try:
            self._result = self.orchestrator.run()
        except Exception as e:  # surfaced through result()
            self._error = e
            logger.error(
                "runtime.workflow_failed",
                execution_id=self.execution_id,
                error=str(e),
            )


def start_workflow(orchestrator: Orchestrator, name: str | None = None) -> WorkflowHandle:
    """Run *orchestrator* on a daemon thread and return its handle."""
    handle = WorkflowHandle(orchestrator, name).start()
    logger.info("runtime.workflow_started", execution_id=orchestrator.execution_id)
    return handle
