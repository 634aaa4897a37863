"""Bounded retry with exponential backoff and jitter.

The policy is the contract: how many attempts, how long to wait between
them, and which errors are worth another attempt. Callers supply the wait
function so a cancel event can cut a backoff short.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from .errors import CascadeError, PublishError, RateLimitError

T = TypeVar("T")


class RetryCancelled(CascadeError):
    """The wait before the next attempt was cancelled."""

    def __init__(self, last_error: BaseException) -> None:
        super().__init__(f"Retry cancelled after: {last_error}")
        self.last_error = last_error


class RetryPolicy(BaseModel):
    """How often, and how patiently, to retry a transient failure.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay.
        jitter: Extra random fraction (0 <= jitter < 1) added to each delay.
            Kept below 1 so each delay stays longer than the previous one.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.5, ge=0, lt=1)

    def delay(
        self, attempt: int, error: BaseException | None = None, rng: random.Random | None = None
    ) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based).

        Rate-limit errors that say how long to wait are obeyed (capped at
        max_delay); everything else backs off exponentially:
        base * 2^(attempt-1) * (1 + U(0, jitter)).
        """
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay)
        rng = rng or random
        raw = self.base_delay * (2 ** (attempt - 1))
        return min(raw * (1 + rng.uniform(0, self.jitter)), self.max_delay)


def is_retryable(error: BaseException) -> bool:
    """Classify an error: True for transient failures worth another attempt."""
    if isinstance(error, PublishError):
        return error.retryable
    return isinstance(error, (TimeoutError, ConnectionError))


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    attempts_used: int = 0,
    classify: Callable[[BaseException], bool] = is_retryable,
    on_failure: Callable[[int, BaseException, float | None], None] | None = None,
    wait: Callable[[float], bool] | None = None,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument callable to attempt.
        policy: Attempt budget and backoff shape.
        attempts_used: Attempts already spent in an earlier run (resume).
        classify: Returns True for errors that may be retried.
        on_failure: Called after every failed attempt with the attempt
            number, the error, and the upcoming delay (None when giving up).
        wait: Sleeps for the given seconds; returns False if cancelled.
            Defaults to time.sleep.
        rng: Random source for jitter (tests pass a seeded one).

    Returns:
        Whatever ``operation`` returns.

    Raises:
        The last error, once it is fatal or the attempts are exhausted.
        RetryCancelled: If ``wait`` reports cancellation.
    """
    attempt = attempts_used
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            retry = classify(exc) and attempt < policy.max_attempts
            delay = policy.delay(attempt, exc, rng) if retry else None
            if on_failure is not None:
                on_failure(attempt, exc, delay)
            if delay is None:
                raise
            if wait is None:
                time.sleep(delay)
            elif not wait(delay):
                raise RetryCancelled(exc) from exc
