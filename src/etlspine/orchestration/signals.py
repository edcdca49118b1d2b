"""
Control channel delivering operator commands to a running orchestrator.

Any thread (an operator CLI, a UI request handler, a test) may ``send`` a
command.  Exactly one thread, the orchestrator's own, drains the channel
at well-defined points: the top of a sync cycle, between sub-batches,
before each transformation step, while sleeping and while joining a level.
Status is never mutated from the sending side.

    ControlChannel
        send(PAUSE)  ──►  queue.Queue  ──►  drain() / poll(timeout)
                                             (orchestrator thread only)
"""

from __future__ import annotations

import queue
from enum import Enum


class ControlCommand(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    REFRESH_WATERMARKS = "refresh_watermarks"


class ControlChannel:
    """Multi-producer, single-consumer command queue."""

    def __init__(self) -> None:
        self._queue: queue.Queue[ControlCommand] = queue.Queue()

    def send(self, command: ControlCommand | str) -> None:
        self._queue.put(ControlCommand(command))

    def drain(self) -> list[ControlCommand]:
        """Return every pending command without blocking, oldest first."""
        commands = []
        while True:
            try:
                commands.append(self._queue.get_nowait())
            except queue.Empty:
                return commands

    def poll(self, timeout: float | None) -> ControlCommand | None:
        """Block up to *timeout* seconds for one command.

        A timeout of ``0`` never blocks.  Returns None when nothing arrived.
        """
        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> bool:
        return not self._queue.empty()
