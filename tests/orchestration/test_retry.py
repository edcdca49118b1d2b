"""Tests for etlspine.orchestration.retry and the ActivityRunner."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from etlspine.core.errors import ConnectorError, TransientError, ValidationError
from etlspine.orchestration.activities import ActivityRunner
from etlspine.orchestration.retry import RetryContext, RetryPolicy


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or TransientError("blip")
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value * 2


class TestRetryPolicy:
    def test_backoff_is_capped(self):
        policy = RetryPolicy(initial_interval=10, backoff_coefficient=1.5, maximum_interval=60)
        assert [policy.next_delay(n) for n in range(6)] == [10.0, 15.0, 22.5, 33.75, 50.625, 60.0]

    def test_jitter_stays_within_range(self):
        policy = RetryPolicy(initial_interval=10, maximum_interval=10, jitter_range=0.5)
        for _ in range(50):
            assert 5.0 <= policy.next_delay(0) <= 15.0

    def test_should_retry(self):
        policy = RetryPolicy(maximum_attempts=3)
        assert policy.should_retry(1, TransientError("x"))
        assert policy.should_retry(2, RuntimeError("x"))
        assert not policy.should_retry(3, TransientError("x"))
        assert not policy.should_retry(1, ValidationError("x"))
        assert not policy.should_retry(1, ConnectorError("x"))

    def test_no_retry(self):
        assert not RetryPolicy.no_retry().should_retry(1, TransientError("x"))


class TestRetryContext:
    def test_succeeds_after_transient_failures(self):
        sleeps = []
        ctx = RetryContext(RetryPolicy(initial_interval=1, backoff_coefficient=2, maximum_interval=10), sleep=sleeps.append)
        func = Flaky(2)

        assert ctx.run(func, 21) == 42
        assert ctx.attempts == 3
        assert sleeps == [1, 2]
        assert len(ctx.errors) == 2

    def test_gives_up_after_max_attempts(self):
        sleeps = []
        ctx = RetryContext(RetryPolicy(maximum_attempts=2), sleep=sleeps.append)
        with pytest.raises(TransientError):
            ctx.run(Flaky(5), 1)
        assert ctx.attempts == 2
        assert len(sleeps) == 1

    def test_non_retryable_fails_immediately(self):
        sleeps = []
        ctx = RetryContext(RetryPolicy(), sleep=sleeps.append)
        with pytest.raises(ValidationError):
            ctx.run(Flaky(1, ValidationError("bad")), 1)
        assert ctx.attempts == 1
        assert sleeps == []


class TestActivityRunner:
    def test_logs_each_retry(self):
        sleeps = []
        runner = ActivityRunner(RetryPolicy(initial_interval=1, maximum_interval=1), sleeps.append, workflow="incremental_sync")

        with capture_logs() as logs:
            assert runner.call("connect", Flaky(1), 5) == 10

        retries = [e for e in logs if e["event"] == "activity.retry"]
        assert len(retries) == 1
        assert retries[0]["activity"] == "connect"
        assert retries[0]["workflow"] == "incremental_sync"
        assert sleeps == [1]

    def test_reraises_final_failure(self):
        runner = ActivityRunner(RetryPolicy.no_retry(), lambda s: None)
        with pytest.raises(ConnectorError, match="down"):
            runner.call("connect", Flaky(1, ConnectorError("down")), 1)
