"""Tests for etlspine.orchestration.runtime: clocks and workflow handles."""

from __future__ import annotations

import threading

import pytest

from etlspine.core.errors import WorkflowError
from etlspine.orchestration.runtime import SystemClock, WorkflowHandle, start_workflow
from etlspine.orchestration.signals import ControlChannel, ControlCommand
from etlspine.testing import ManualClock


class EchoOrchestrator:
    """Runs until cancelled, recording every command it receives."""

    def __init__(self, fail_with: Exception | None = None):
        self.execution_id = "echo-1"
        self.channel = ControlChannel()
        self.received: list[ControlCommand] = []
        self.fail_with = fail_with

    def send(self, command):
        self.channel.send(command)

    def get_status(self):
        return list(self.received)

    def run(self):
        if self.fail_with is not None:
            raise self.fail_with
        while True:
            command = self.channel.poll(5)
            if command is None:
                continue
            self.received.append(command)
            if command is ControlCommand.CANCEL:
                return "done"


class TestSystemClock:
    def test_wait_for_command_returns_early(self):
        channel = ControlChannel()
        channel.send(ControlCommand.PAUSE)
        assert SystemClock().wait_for_command(channel, 10) is ControlCommand.PAUSE

    def test_wait_for_command_times_out(self):
        assert SystemClock().wait_for_command(ControlChannel(), 0.01) is None

    def test_now_is_aware(self):
        assert SystemClock().now().tzinfo is not None


class TestManualClock:
    def test_sleep_advances_without_blocking(self):
        clock = ManualClock()
        start = clock.now()
        clock.sleep(3600)
        assert clock.sleeps == [3600]
        assert (clock.now() - start).total_seconds() == 3600
        assert clock.monotonic() == 3600

    def test_wait_returns_pending_command_without_advancing(self):
        clock = ManualClock()
        channel = ControlChannel()
        channel.send(ControlCommand.RESUME)
        assert clock.wait_for_command(channel, 60) is ControlCommand.RESUME
        assert clock.waits == []
        assert clock.monotonic() == 0

    def test_wait_without_command_records_timeout(self):
        clock = ManualClock()
        assert clock.wait_for_command(ControlChannel(), 60) is None
        assert clock.waits == [60]


class TestWorkflowHandle:
    def test_signals_reach_orchestrator(self):
        orchestrator = EchoOrchestrator()
        handle = start_workflow(orchestrator)

        handle.pause()
        handle.resume()
        handle.refresh_watermarks()
        handle.cancel()

        assert handle.result(timeout=5) == "done"
        assert handle.done()
        assert handle.get_status() == [
            ControlCommand.PAUSE,
            ControlCommand.RESUME,
            ControlCommand.REFRESH_WATERMARKS,
            ControlCommand.CANCEL,
        ]

    def test_result_reraises_run_failure(self):
        handle = start_workflow(EchoOrchestrator(fail_with=RuntimeError("exploded")))
        with pytest.raises(RuntimeError, match="exploded"):
            handle.result(timeout=5)

    def test_result_times_out_while_running(self):
        orchestrator = EchoOrchestrator()
        handle = start_workflow(orchestrator, name="echo")
        try:
            with pytest.raises(WorkflowError, match="still running"):
                handle.result(timeout=0.01)
        finally:
            handle.cancel()
            handle.result(timeout=5)

    def test_thread_is_daemon_and_named(self):
        orchestrator = EchoOrchestrator()
        handle = WorkflowHandle(orchestrator)
        assert handle.execution_id == "echo-1"
        handle.start()
        names = {t.name: t.daemon for t in threading.enumerate()}
        assert names.get("workflow-echo-1") is True
        handle.cancel()
        handle.result(timeout=5)
