"""Ordered precondition gates for mutating commands.

A gate either passes, passes with a warning (stderr line plus an optional
``*_allowed``-style event), or fails: the failure is recorded as a
``<command>_failed`` event tagged with the step name and error code, then
re-raised so nothing after it runs.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

from agency.constants import E_INTERNAL
from agency.events import EventLog
from agency.models import AgencyError

if TYPE_CHECKING:
    from agency.runtime import Runtime


class Pipeline:
    def __init__(self, runtime: Runtime, command: str, events: EventLog) -> None:
        self.runtime = runtime
        self.command = command
        self.events = events
        self.failed_step = ""

    @contextmanager
    def step(self, name: str) -> Iterator[None]:
        try:
            yield
        except AgencyError as exc:
            self.record_failure(name, exc)
            raise
        except OSError as exc:
            wrapped = AgencyError(E_INTERNAL, f"{name}: {exc}")
            self.record_failure(name, wrapped)
            raise wrapped from exc

    def record_failure(self, step: str, exc: AgencyError) -> None:
        if self.failed_step:
            return
        self.failed_step = step
        data: dict[str, Any] = {"error_code": exc.code, "step": step, "error": exc.message}
        for key in ("state", "expected_branch", "pr_head_branch", "mergeable"):
            if key in exc.details:
                data[key] = exc.details[key]
        self.events.emit(f"{self.command}_failed", data)

    def warn(self, message: str, *, event: str = "", data: dict[str, Any] | None = None) -> None:
        self.runtime.warn(message)
        if event:
            self.events.emit(event, data)
