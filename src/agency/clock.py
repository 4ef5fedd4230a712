"""Injectable time, randomness, and terminal strategies.

Commands never call ``time.sleep``, ``random`` or ``isatty`` directly; they
receive these objects through :class:`agency.runtime.Runtime` so tests can
substitute deterministic fakes.
"""

from __future__ import annotations

import random
import sys
import time
from typing import Callable, TextIO

from agency.constants import E_DEADLINE_EXCEEDED, JITTER_FRACTION
from agency.models import AgencyError


class Deadline:
    """Monotonic expiry shared by every external call of one command."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + max(0.0, float(seconds))

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, action: str) -> None:
        if self.expired:
            raise AgencyError(E_DEADLINE_EXCEEDED, f"deadline exceeded during {action}")

    def cap(self, timeout: float | None, *, action: str) -> float:
        self.check(action)
        remaining = self.remaining()
        if timeout is None:
            return remaining
        return min(float(timeout), remaining)


class Sleeper:
    def __init__(self, sleep_fn: Callable[[float], None] = time.sleep) -> None:
        self._sleep_fn = sleep_fn

    def sleep(self, seconds: float, *, deadline: Deadline | None = None) -> None:
        if seconds <= 0:
            return
        if deadline is not None:
            remaining = deadline.remaining()
            if remaining < seconds:
                if remaining > 0:
                    self._sleep_fn(remaining)
                raise AgencyError(E_DEADLINE_EXCEEDED, "deadline exceeded while waiting to retry")
        self._sleep_fn(seconds)


class Jitter:
    """Perturb a delay by a uniform factor in ``[1 - fraction, 1 + fraction]``."""

    def __init__(self, fraction: float = JITTER_FRACTION, *, rng: random.Random | None = None) -> None:
        self.fraction = max(0.0, float(fraction))
        self._rng = rng if rng is not None else random.Random()

    def apply(self, delay: float) -> float:
        if delay <= 0:
            return 0.0
        if self.fraction == 0:
            return float(delay)
        factor = 1.0 + self._rng.uniform(-self.fraction, self.fraction)
        return max(0.0, delay * factor)


class Console:
    """Interactive-terminal check and typed prompts (prompts go to stderr)."""

    def __init__(self, stdin: TextIO | None = None, stderr: TextIO | None = None) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stderr = stderr if stderr is not None else sys.stderr

    def is_interactive(self) -> bool:
        try:
            return bool(self._stdin.isatty() and self._stderr.isatty())
        except (AttributeError, ValueError):
            return False

    def prompt(self, message: str) -> str:
        self._stderr.write(message)
        self._stderr.flush()
        line = self._stdin.readline()
        return line.strip()

    def confirm(self, message: str) -> bool:
        return self.prompt(message).lower() in {"y", "yes"}
