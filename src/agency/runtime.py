"""Per-invocation wiring of the injectable collaborators."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from agency.clock import Console, Deadline, Jitter, Sleeper
from agency.config import _resolve_config_dir, _resolve_data_dir
from agency.events import EventLog
from agency.executor import CommandRunner
from agency.lock import RepoLock
from agency.models import SideEffect
from agency.store import Store
from agency.utils import _append_log, _record_side_effect


@dataclass
class Runtime:
    data_dir: Path
    config_dir: Path
    cwd: Path
    runner: CommandRunner
    sleeper: Sleeper = field(default_factory=Sleeper)
    jitter: Jitter = field(default_factory=Jitter)
    console: Console = field(default_factory=Console)
    stdout: TextIO = field(default_factory=lambda: sys.stdout)
    stderr: TextIO = field(default_factory=lambda: sys.stderr)
    deadline: Deadline | None = None

    @classmethod
    def default(cls, *, deadline_seconds: float | None = None) -> "Runtime":
        deadline = Deadline(deadline_seconds) if deadline_seconds else None
        return cls(
            data_dir=_resolve_data_dir(),
            config_dir=_resolve_config_dir(),
            cwd=Path.cwd(),
            runner=CommandRunner(deadline=deadline),
            deadline=deadline,
        )

    def out(self, line: str) -> None:
        print(line, file=self.stdout)

    def err(self, line: str) -> None:
        print(line, file=self.stderr)

    def warn(self, message: str) -> None:
        self.err(f"warning: {message}")

    def sleep(self, seconds: float) -> None:
        self.sleeper.sleep(seconds, deadline=self.deadline)

    def note(self, effect: SideEffect) -> SideEffect:
        return _record_side_effect(self.data_dir, effect)

    def log(self, message: str) -> None:
        try:
            _append_log(self.data_dir, message)
        except OSError as exc:
            self.warn(f"failed to write orchestrator log: {exc}")

    @property
    def store(self) -> Store:
        return Store(self.data_dir)

    def repo_lock(self) -> RepoLock:
        return RepoLock(self.store.lock_path, on_side_effect=self.note, log=self.log)

    def events(self, repo_id: str, run_id: str) -> EventLog:
        return EventLog(self, self.store.events_path(repo_id, run_id), repo_id=repo_id, run_id=run_id)
