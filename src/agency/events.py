"""Append-only per-run event log (``events.jsonl``).

Appends are best effort: a failed write is reported as a ``SideEffect`` and
logged, never raised. Readers skip lines that do not parse, which covers a
trailing record torn by a crashed writer.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.constants import EVENT_SCHEMA_VERSION
from agency.models import SideEffect
from agency.utils import _utc_now

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _event_record(repo_id: str, run_id: str, event: str, data: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "schema_version": EVENT_SCHEMA_VERSION,
        "timestamp": _utc_now(),
        "repo_id": repo_id,
        "run_id": run_id,
        "event": event,
        "data": dict(data or {}),
    }


def _needs_leading_newline(fd: int) -> bool:
    size = os.fstat(fd).st_size
    if size == 0:
        return False
    return os.pread(fd, 1, size - 1) != b"\n"


def _append_event(
    path: Path,
    *,
    repo_id: str,
    run_id: str,
    event: str,
    data: dict[str, Any] | None = None,
) -> SideEffect:
    record = _event_record(repo_id, run_id, event, data)
    try:
        line = json.dumps(record, separators=(",", ":"), sort_keys=False, default=str) + "\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            if _needs_leading_newline(fd):
                line = "\n" + line
            os.write(fd, line.encode("utf-8"))
        finally:
            os.close(fd)
    except (OSError, TypeError, ValueError) as exc:
        return SideEffect(ok=False, action=f"append event {event}", detail=f"{path}: {exc}")
    return SideEffect(ok=True, action=f"append event {event}")


def _read_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                events.append(payload)
    return events


class EventLog:
    """Event writer bound to one run; failures go to the orchestrator log."""

    def __init__(self, runtime: Runtime, path: Path, *, repo_id: str, run_id: str) -> None:
        self._runtime = runtime
        self.path = path
        self.repo_id = repo_id
        self.run_id = run_id

    def emit(self, event: str, data: dict[str, Any] | None = None) -> SideEffect:
        effect = _append_event(
            self.path,
            repo_id=self.repo_id,
            run_id=self.run_id,
            event=event,
            data=data,
        )
        return self._runtime.note(effect)
