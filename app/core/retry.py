"""Bounded retry helpers shared by the API client and the event processor."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

Backoff = Callable[[int], float]


def no_backoff(_: int) -> float:
    return 0.0


def exponential_backoff(base_delay: float) -> Backoff:
    """Delay of ``base_delay * 2**retry`` for the zero-based retry number."""

    def _delay(retry: int) -> float:
        return base_delay * (2**retry)

    return _delay


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many failures are tolerated and how long to wait between tries.

    ``limit`` counts failures that may still be followed by another try, so a
    policy with ``limit=3`` allows the initial call plus three retries when
    retrying inline, and marks an event as failed on its third recorded
    failure when retrying on a later pass.
    """

    limit: int
    backoff: Backoff = no_backoff

    def allows(self, failures: int) -> bool:
        return failures < self.limit

    def delay_for(self, retry: int, hint: float | None = None) -> float:
        if hint is not None:
            return max(0.0, hint)
        return self.backoff(retry)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    Exceptions listed in ``retry_on`` are retried; a ``retry_after`` attribute
    on the exception overrides the policy's backoff for that wait. The last
    exception is re-raised once the policy no longer allows a retry.
    """
    retry = 0
    while True:
        try:
            return operation()
        except retry_on as exc:
            if not policy.allows(retry):
                raise
            delay = policy.delay_for(retry, getattr(exc, "retry_after", None))
            if on_retry is not None:
                on_retry(retry, delay, exc)
            sleep(delay)
            retry += 1
