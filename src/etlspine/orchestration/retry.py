"""Activity retry with exponential backoff.

Every collaborator call made by an orchestrator goes through a
``RetryPolicy``: bounded attempts, an exponentially growing delay capped at
a maximum interval, and no retry at all for errors flagged
``retryable=False`` (validation, configuration, cycle errors).  The
orchestration logic only ever sees the final outcome.

Example:
    >>> from etlspine.orchestration.retry import RetryPolicy
    >>>
    >>> policy = RetryPolicy(initial_interval=10, backoff_coefficient=1.5, maximum_interval=60)
    >>> [policy.next_delay(n) for n in range(4)]
    [10.0, 15.0, 22.5, 33.75]
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from etlspine.core.errors import EtlError
from etlspine.core.settings import RetrySettings

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy.

    Delay before retry *n* (zero-based) is
    ``min(initial_interval * backoff_coefficient ** n, maximum_interval)``,
    optionally spread by ``jitter_range``.

    Attributes:
        initial_interval: Delay before the first retry, in seconds
        backoff_coefficient: Multiplier applied per retry
        maximum_interval: Delay cap, in seconds
        maximum_attempts: Total attempts including the first call
        jitter_range: Fraction of the delay to randomize (0 disables)
    """

    initial_interval: float = 10.0
    backoff_coefficient: float = 1.5
    maximum_interval: float = 60.0
    maximum_attempts: int = 5
    jitter_range: float = 0.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            initial_interval=settings.initial_interval_seconds,
            backoff_coefficient=settings.backoff_coefficient,
            maximum_interval=settings.maximum_interval_seconds,
            maximum_attempts=settings.maximum_attempts,
        )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(initial_interval=0.0, maximum_interval=0.0, maximum_attempts=1)

    def next_delay(self, retry: int) -> float:
        """Calculate exponential backoff delay before retry number *retry*."""
        delay = min(
            self.initial_interval * (self.backoff_coefficient ** retry),
            self.maximum_interval,
        )

        if self.jitter_range:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Check whether another call is allowed after *attempt* calls failed."""
        if attempt >= self.maximum_attempts:
            return False
        if isinstance(error, EtlError):
            return error.retryable
        return True


@dataclass
class RetryContext:
    """Context tracking retry state of one logical call.

    Example:
        >>> ctx = RetryContext(RetryPolicy(maximum_attempts=3))
        >>> result = ctx.run(lambda: connector.connect(conn_id, auth))
    """

    policy: RetryPolicy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute *func* with retry logic.

        Raises:
            The last exception once retries are exhausted or the error is
            not retryable.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.policy.should_retry(self.attempt, e):
                    raise

                delay = self.policy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)
