"""Tests for etlspine.orchestration.transformation.

Runs execute on the calling thread with a ManualClock; step bodies still
run on the per-level thread pool.  ``TestLiveControl`` uses a real
workflow thread for pause / resume.
"""

from __future__ import annotations

import random
import threading
import time

import pytest

from etlspine.core.checkpoints import SqlCheckpointStore
from etlspine.core.errors import ConnectorError, TransientError, ValidationError
from etlspine.core.settings import EtlSettings
from etlspine.orchestration.exceptions import CycleDetectedError, PipelineValidationError
from etlspine.orchestration.models import BusinessRule, NotificationConfig, RuleSeverity, StepValidation
from etlspine.orchestration.retry import RetryPolicy
from etlspine.orchestration.runtime import SystemClock, start_workflow
from etlspine.orchestration.status import ErrorSeverity, PipelinePhase, StepStatus, ValidationCheckResult
from etlspine.orchestration.transformation import TransformationOrchestrator
from etlspine.testing import (
    FakeConnector,
    FakeTransforms,
    make_step,
    make_transformation_input,
)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.005)
    raise AssertionError("condition not reached in time")


def statuses(status):
    return [(r.step_id, r.status) for r in status.results]


class TestHappyPath:
    def test_runs_every_level(self, transformation_factory, transforms, checkpoints, publisher):
        steps = [make_step("A"), make_step("B"), make_step("C", "A", "B"), make_step("D", "C"), make_step("E")]
        orchestrator = transformation_factory(steps)

        status = orchestrator.run()

        assert status.phase is PipelinePhase.COMPLETED
        assert status.metrics.execution_order == [["A", "B", "E"], ["C"], ["D"]]
        assert sorted(transforms.executed) == ["A", "B", "C", "D", "E"]
        assert status.progress.completed_steps == 5
        assert status.progress.current_steps == []
        assert status.metrics.total_records_processed == 500
        assert status.metrics.total_bytes_processed == 4000
        assert status.errors == []
        assert transforms.rollbacks == []
        assert transforms.cleanups == ["tx-test"]
        assert publisher.phases[0] == "initializing"
        assert publisher.phases[-1] == "completed"

        latest = checkpoints.latest_transformation_checkpoint("conn-1", "pipe-1")
        assert sorted(latest["completed_steps"]) == ["A", "B", "C", "D", "E"]

    def test_next_level_waits_for_whole_level(self, transformation_factory, transforms):
        transforms.hooks["A"] = lambda step: time.sleep(0.05)
        status = transformation_factory([make_step("A"), make_step("B"), make_step("C", "A")]).run()

        assert status.phase is PipelinePhase.COMPLETED
        assert transforms.executed.index("C") == 2

    def test_parallelism_bounds_concurrency(self, transformation_factory, transforms):
        lock = threading.Lock()
        running = []
        peak = []

        def track(step):
            with lock:
                running.append(step.id)
                peak.append(len(running))
            time.sleep(0.02)
            with lock:
                running.remove(step.id)

        steps = [make_step(f"s{i}") for i in range(6)]
        for step in steps:
            transforms.hooks[step.id] = track

        status = transformation_factory(steps, parallelism=2).run()

        assert status.phase is PipelinePhase.COMPLETED
        assert max(peak) <= 2
        assert len(transforms.executed) == 6

    def test_status_query_during_execution(self, transformation_factory, transforms):
        seen = []
        orchestrator = transformation_factory([make_step("A")])
        transforms.hooks["A"] = lambda step: seen.append(orchestrator.get_status())

        orchestrator.run()

        assert seen[0].phase is PipelinePhase.EXECUTING
        assert seen[0].metrics.execution_order == [["A"]]

    def test_success_notification_opt_in(self, transformation_factory, sink):
        transformation_factory([make_step("A")], notifications=NotificationConfig(on_success=True)).run()
        assert [e.status for e in sink.events] == ["completed"]
        assert sink.events[0].pipeline_id == "pipe-1"


class TestValidation:
    def test_dry_run_records_and_executes_nothing(self, transformation_factory, transforms, sink):
        transforms.validation_errors["s2"] = ValidationError("table src_s2 missing")
        steps = [make_step("s1"), make_step("s2", "s1"), make_step("s3")]

        status = transformation_factory(steps, dry_run=True).run()

        assert status.phase is PipelinePhase.COMPLETED
        assert status.results == []
        assert len(status.errors) == 1
        assert status.errors[0].step_id == "s2"
        assert status.errors[0].message == "Validation failed: table src_s2 missing"
        assert transforms.validated == ["s1", "s2", "s3"]
        assert transforms.executed == []
        assert sink.events == []

    def test_validation_failure_aborts_run(self, transformation_factory, transforms, sink, publisher):
        transforms.validation_errors["s2"] = ValidationError("table src_s2 missing")
        orchestrator = transformation_factory([make_step("s1"), make_step("s2"), make_step("s3")])

        with pytest.raises(PipelineValidationError) as exc_info:
            orchestrator.run()

        assert exc_info.value.step_id == "s2"
        status = orchestrator.get_status()
        assert status.phase is PipelinePhase.FAILED
        assert [e.message for e in status.errors] == [
            "Validation failed: table src_s2 missing",
            "Transformation validation failed for step step s2: table src_s2 missing",
        ]
        assert transforms.validated == ["s1", "s2"]
        assert transforms.executed == []
        assert transforms.rollbacks == []
        assert [e.status for e in sink.events] == ["failed"]
        assert publisher.phases[-1] == "failed"

    def test_cycle_fails_run(self, transformation_factory, transforms):
        orchestrator = transformation_factory([make_step("a", "b"), make_step("b", "a")])
        with pytest.raises(CycleDetectedError):
            orchestrator.run()
        status = orchestrator.get_status()
        assert status.phase is PipelinePhase.FAILED
        assert status.errors[0].message.startswith("Cycle detected in dependency graph")
        assert transforms.executed == []

    def test_connect_failure(self, transformation_factory, connector, transforms):
        connector.connect_error = ConnectorError("refused")
        orchestrator = transformation_factory([make_step("A")])

        with pytest.raises(ConnectorError):
            orchestrator.run()

        assert orchestrator.get_status().phase is PipelinePhase.FAILED
        assert transforms.validated == []
        assert transforms.cleanups == ["tx-test"]
        assert connector.disconnected == ["conn-1"]


class TestResultChecks:
    def rules(self):
        return StepValidation(
            row_count_check=True,
            business_rules=(
                BusinessRule("positive_total", "total >= 0"),
                BusinessRule("fresh_rows", "updated_at > now() - 1d", RuleSeverity.WARNING),
            ),
        )

    def test_failed_error_rule_fails_step(self, transformation_factory, transforms):
        transforms.check_results["A"] = [
            ValidationCheckResult("row_count", True),
            ValidationCheckResult("positive_total", False, "negative totals found"),
        ]
        status = transformation_factory([make_step("A", validation=self.rules())]).run()

        result = status.results[0]
        assert result.status is StepStatus.FAILED
        assert result.error == "Critical validation failures: negative totals found"
        assert len(result.validation_results) == 2
        assert result.records_processed == 100
        assert status.phase is PipelinePhase.FAILED

    def test_failed_warning_rule_is_tolerated(self, transformation_factory, transforms):
        transforms.check_results["A"] = [ValidationCheckResult("fresh_rows", False, "stale")]
        status = transformation_factory([make_step("A", validation=self.rules())]).run()

        assert status.results[0].status is StepStatus.SUCCESS
        assert status.results[0].validation_results[0].passed is False
        assert status.phase is PipelinePhase.COMPLETED

    def test_error_in_check_name_is_critical(self, transformation_factory, transforms):
        transforms.check_results["A"] = [ValidationCheckResult("null_error_rate", False)]
        status = transformation_factory([make_step("A", validation=StepValidation(row_count_check=True))]).run()
        assert status.results[0].error == "Critical validation failures: null_error_rate"

    def test_steps_without_validation_skip_checks(self, transformation_factory, transforms):
        transforms.check_results["A"] = [ValidationCheckResult("error_check", False)]
        status = transformation_factory([make_step("A")]).run()
        assert status.results[0].status is StepStatus.SUCCESS
        assert status.results[0].validation_results == ()


class TestFailurePolicy:
    def test_first_failure_stops_walk(self, transformation_factory, transforms, checkpoints):
        transforms.execution_errors["s2"] = ConnectorError("boom")
        steps = [make_step("s1"), make_step("s2", "s1"), make_step("s3", "s2"), make_step("s4", "s3")]

        status = transformation_factory(steps).run()

        assert statuses(status) == [("s1", StepStatus.SUCCESS), ("s2", StepStatus.FAILED)]
        assert transforms.executed == ["s1", "s2"]
        assert status.phase is PipelinePhase.FAILED
        assert transforms.rollbacks == [["s1"]]
        assert status.errors[0].message == "boom"
        assert status.errors[0].step_id == "s2"
        latest = checkpoints.latest_transformation_checkpoint("conn-1", "pipe-1")
        assert latest["completed_steps"] == ["s1"]

    def test_running_siblings_finish_after_failure(self, transformation_factory, transforms):
        transforms.execution_errors["A"] = ConnectorError("boom")
        transforms.hooks["B"] = lambda step: time.sleep(0.05)

        status = transformation_factory([make_step("A"), make_step("B"), make_step("C", "B")]).run()

        assert dict(statuses(status)) == {"A": StepStatus.FAILED, "B": StepStatus.SUCCESS}
        assert "C" not in transforms.executed
        assert transforms.rollbacks == [["B"]]

    def test_no_rollback_when_disabled(self, transformation_factory, transforms):
        transforms.execution_errors["A"] = ConnectorError("boom")
        status = transformation_factory([make_step("A")], rollback_on_failure=False).run()
        assert transforms.rollbacks == []
        assert status.phase is PipelinePhase.FAILED

    def test_continue_skips_transitive_dependents(self, transformation_factory, transforms):
        transforms.execution_errors["B"] = ConnectorError("boom")
        steps = [
            make_step("A"),
            make_step("B", "A"),
            make_step("C"),
            make_step("D", "B"),
            make_step("E", "C"),
            make_step("F", "D", "E"),
        ]

        status = transformation_factory(steps, retry_failed_steps=True).run()

        outcome = dict(statuses(status))
        assert outcome == {
            "A": StepStatus.SUCCESS,
            "C": StepStatus.SUCCESS,
            "B": StepStatus.FAILED,
            "E": StepStatus.SUCCESS,
            "D": StepStatus.SKIPPED,
            "F": StepStatus.SKIPPED,
        }
        assert sorted(transforms.executed) == ["A", "B", "C", "E"]
        warnings = [e for e in status.errors if e.severity is ErrorSeverity.WARNING]
        assert sorted(e.step_id for e in warnings) == ["D", "F"]
        assert status.phase is PipelinePhase.FAILED
        assert sorted(transforms.rollbacks[0]) == ["A", "C", "E"]

    def test_rollback_failure_is_recorded(self, transformation_factory, transforms):
        transforms.execution_errors["A"] = ConnectorError("boom")
        transforms.rollback_error = ConnectorError("rollback broke")
        status = transformation_factory([make_step("A"), make_step("B")]).run()
        assert status.errors[-1].message == "Rollback failed: rollback broke"
        assert status.phase is PipelinePhase.FAILED

    def test_cleanup_failure_does_not_change_outcome(self, transformation_factory, transforms):
        transforms.cleanup_error = RuntimeError("temp schema locked")
        status = transformation_factory([make_step("A")]).run()
        assert status.phase is PipelinePhase.COMPLETED

    def test_retryable_step_error_is_retried(self, connector, transforms, checkpoints, settings, clock):
        attempts = []

        def flaky(step):
            attempts.append(step.id)
            if len(attempts) == 1:
                raise TransientError("warehouse busy")

        transforms.hooks["A"] = flaky
        orchestrator = TransformationOrchestrator(
            make_transformation_input([make_step("A")]),
            connector,
            transforms,
            checkpoints,
            settings=settings,
            clock=clock,
        )
        status = orchestrator.run()

        assert status.phase is PipelinePhase.COMPLETED
        assert attempts == ["A", "A"]
        assert clock.sleeps == [60.0]


class TestCancellation:
    def test_cancel_during_level(self, transformation_factory, transforms):
        steps = [make_step("A"), make_step("B", "A"), make_step("C", "A"), make_step("D", "B", "C")]
        orchestrator = transformation_factory(
            steps, parallelism=1, retry_failed_steps=True, rollback_on_failure=False
        )

        def cancel_then_fail(step):
            orchestrator.cancel()
            raise ConnectorError("B failed")

        transforms.hooks["B"] = cancel_then_fail

        status = orchestrator.run()

        assert "C" not in transforms.executed
        assert "D" not in transforms.executed
        assert transforms.rollbacks == [["A"]]
        assert status.phase is PipelinePhase.FAILED
        assert status.cancelled

    def test_cancel_before_start(self, transformation_factory, transforms):
        orchestrator = transformation_factory([make_step("A")])
        orchestrator.cancel()

        status = orchestrator.run()

        assert status.phase is PipelinePhase.FAILED
        assert transforms.executed == []
        assert transforms.rollbacks == []
        assert status.errors == []

    def test_cancel_after_success_rolls_back(self, transformation_factory, transforms):
        orchestrator = transformation_factory([make_step("A"), make_step("B", "A")])
        transforms.hooks["A"] = lambda step: orchestrator.cancel()

        status = orchestrator.run()

        assert transforms.executed == ["A"]
        assert transforms.rollbacks == [["A"]]
        assert status.phase is PipelinePhase.FAILED

    def test_pause_resume_pre_queued(self, transformation_factory):
        orchestrator = transformation_factory([make_step("A"), make_step("B", "A")])
        orchestrator.pause()
        orchestrator.resume()

        status = orchestrator.run()

        assert status.phase is PipelinePhase.COMPLETED
        assert not status.paused


class TestProperties:
    @staticmethod
    def random_pipeline(rng):
        steps = []
        for i in range(rng.randint(2, 12)):
            deps = [f"s{j}" for j in range(i) if rng.random() < 0.35]
            steps.append(make_step(f"s{i}", *deps))
        return steps

    @pytest.mark.parametrize("seed", range(10))
    def test_dependencies_start_first(self, seed, connector, checkpoints, settings, clock):
        rng = random.Random(seed)
        steps = self.random_pipeline(rng)
        transforms = FakeTransforms()

        TransformationOrchestrator(
            make_transformation_input(steps, parallelism=rng.randint(1, 4)),
            connector,
            transforms,
            checkpoints,
            settings=settings,
            clock=clock,
            retry_policy=RetryPolicy.no_retry(),
        ).run()

        order = transforms.executed
        assert sorted(order) == sorted(s.id for s in steps)
        for step in steps:
            for dep in step.dependencies:
                assert order.index(dep) < order.index(step.id)

    @pytest.mark.parametrize("seed", range(10))
    def test_rollback_covers_exactly_successful_steps(self, seed, connector, checkpoints, settings, clock):
        rng = random.Random(seed)
        steps = self.random_pipeline(rng)
        failing = rng.choice(steps).id
        transforms = FakeTransforms()
        transforms.execution_errors[failing] = ConnectorError("boom")

        status = TransformationOrchestrator(
            make_transformation_input(steps, parallelism=rng.randint(1, 4)),
            connector,
            transforms,
            checkpoints,
            settings=settings,
            clock=clock,
            retry_policy=RetryPolicy.no_retry(),
        ).run()

        succeeded = [r.step_id for r in status.results if r.status is StepStatus.SUCCESS]
        assert len(transforms.rollbacks) == 1
        assert sorted(transforms.rollbacks[0]) == sorted(succeeded)
        assert failing in transforms.executed
        assert status.phase is PipelinePhase.FAILED


@pytest.mark.slow
class TestLiveControl:
    def test_pause_holds_next_level_until_resume(self):
        transforms = FakeTransforms()
        orchestrator = TransformationOrchestrator(
            make_transformation_input([make_step("A"), make_step("B", "A")]),
            FakeConnector(),
            transforms,
            SqlCheckpointStore(),
            settings=EtlSettings(control_poll_interval_seconds=0.01),
            clock=SystemClock(),
            retry_policy=RetryPolicy.no_retry(),
        )
        transforms.hooks["A"] = lambda step: orchestrator.pause()

        handle = start_workflow(orchestrator)
        wait_until(lambda: handle.get_status().paused and len(handle.get_status().results) == 1)
        time.sleep(0.05)
        assert transforms.executed == ["A"]

        handle.resume()
        final = handle.result(timeout=5)

        assert final.phase is PipelinePhase.COMPLETED
        assert transforms.executed == ["A", "B"]
