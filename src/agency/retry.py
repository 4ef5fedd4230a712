"""Fixed-schedule retry with jitter for flaky remote queries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence, TypeVar

from agency.clock import Deadline, Jitter, Sleeper

T = TypeVar("T")


class RetryableError(Exception):
    """Raised by an attempt to request another try; wraps the error to surface."""

    def __init__(self, error: Exception) -> None:
        super().__init__(str(error))
        self.error = error


@dataclass(frozen=True)
class Attempt:
    number: int
    slept: float


def _retry(
    schedule: Sequence[float],
    operation: Callable[[Attempt], T],
    *,
    sleeper: Sleeper,
    jitter: Jitter,
    deadline: Deadline | None = None,
    on_retry: Callable[[Attempt, Exception], None] | None = None,
) -> T:
    """Run ``operation`` until it returns or the schedule is exhausted.

    ``schedule[i]`` is the base delay before attempt ``i + 1``; the first
    attempt always runs immediately. Each later delay is jittered and slept
    through ``sleeper``. Errors other than :class:`RetryableError` propagate at
    once; on exhaustion the last wrapped error is raised.
    """
    if not schedule:
        raise ValueError("retry schedule must not be empty")
    last_error: Exception | None = None
    for index, base_delay in enumerate(schedule):
        slept = 0.0
        if index > 0:
            slept = jitter.apply(base_delay)
            sleeper.sleep(slept, deadline=deadline)
        attempt = Attempt(number=index + 1, slept=slept)
        try:
            return operation(attempt)
        except RetryableError as exc:
            last_error = exc.error
            if on_retry is not None:
                on_retry(attempt, exc.error)
    assert last_error is not None
    raise last_error
