"""
Placeflow - Job Retry Backoff

Exponential backoff for failed queue jobs.

Usage:
    from placeflow.workers.backoff import RetryPolicy

    policy = RetryPolicy(max_attempts=3, initial_delay=1.0)
    decision = policy.decide(error, attempts_made=job.attempts_made + 1)
    if decision.retry:
        await store.retry_later(job.id, delay=decision.delay)

attempts_made counts the failed attempts including the current one, and the
delay is initial * 2 ** attempts_made: 2 * initial after the first failure,
then 4 * initial, 8 * initial, ... capped at MAX_BACKOFF_SECONDS. No jitter,
so retry timing is reproducible under the fake scheduler used in tests.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..core.errors import PlaceflowError

MAX_BACKOFF_SECONDS = 3600.0
BACKOFF_MULTIPLIER = 2.0


def is_retryable(error: BaseException) -> bool:
    """Taxonomy errors decide for themselves; anything else is assumed transient."""
    if isinstance(error, PlaceflowError):
        return error.retryable
    return True


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and delay schedule for one queue.

    Attributes:
        max_attempts: Total executions allowed, including the first
        initial_delay: Base delay in seconds, doubled once per failed attempt
    """

    max_attempts: int = 3
    initial_delay: float = 1.0

    def delay_for(self, attempts_made: int) -> float:
        """
        Delay after the `attempts_made`-th failed attempt.

        The first failure waits 2 * initial_delay.
        """
        exponent = max(attempts_made, 0)
        return min(self.initial_delay * (BACKOFF_MULTIPLIER**exponent), MAX_BACKOFF_SECONDS)

    def decide(self, error: BaseException, attempts_made: int) -> RetryDecision:
        if not is_retryable(error) or attempts_made >= self.max_attempts:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay=self.delay_for(attempts_made))
