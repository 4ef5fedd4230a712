"""Agency data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from agency.constants import ARCHIVE_REASON_LIMIT, E_ARCHIVE_FAILED, E_USAGE


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_positive_int(value: Any, *, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]


class AgencyError(RuntimeError):
    """Error with a stable machine-readable code.

    ``details`` carries free-form string key/values (exit codes, stderr
    tails, paths); ``hints`` are printed as ``hint:`` lines by the CLI.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        hints: Iterable[str] = (),
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.details = {str(key): str(value) for key, value in (details or {}).items()}
        self.hints = tuple(hints)

    @property
    def exit_code(self) -> int:
        return 2 if self.code == E_USAGE else 1

    def with_hint(self, hint: str) -> "AgencyError":
        self.hints = (*self.hints, hint)
        return self


@dataclass(frozen=True)
class SideEffect:
    """Outcome of a best-effort write whose failure never changes the result."""

    ok: bool
    action: str
    detail: str = ""


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ScriptConfig:
    name: str
    path: str
    timeout_seconds: float

    @property
    def configured(self) -> bool:
        return bool(self.path.strip())


@dataclass(frozen=True)
class RepoConfig:
    scripts: dict[str, ScriptConfig]
    source: Path | None = None

    def script(self, name: str) -> ScriptConfig:
        return self.scripts[name]


@dataclass(frozen=True)
class UserConfig:
    runner: str
    editor: str
    parent_branch: str
    runners: dict[str, str] = field(default_factory=dict)
    editors: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RunRecord:
    """One run as seen by a scan of the data directory."""

    repo_id: str
    run_id: str
    name: str = ""
    broken: bool = False
    archived: bool = False
    meta: dict[str, Any] | None = None

    @property
    def active(self) -> bool:
        return not self.broken and not self.archived


@dataclass(frozen=True)
class PRView:
    number: int
    url: str
    state: str
    is_draft: bool = False
    mergeable: str = ""
    head_ref_name: str = ""


@dataclass(frozen=True)
class StageOutcome:
    ok: bool
    reason: str = ""


@dataclass(frozen=True)
class ArchiveOutcome:
    """Per-stage results of the archive pipeline.

    Every stage is attempted regardless of earlier failures; ``success`` is
    true only when all three succeeded and ``to_error`` reports the first
    stage that did not.
    """

    script: StageOutcome
    tmux: StageOutcome
    delete: StageOutcome
    already_archived: bool = False

    @property
    def success(self) -> bool:
        return self.already_archived or (self.script.ok and self.tmux.ok and self.delete.ok)

    def failed_stage(self) -> tuple[str, StageOutcome] | None:
        if self.already_archived:
            return None
        for label, outcome in (
            ("script", self.script),
            ("tmux kill", self.tmux),
            ("worktree deletion", self.delete),
        ):
            if not outcome.ok:
                return (label, outcome)
        return None

    def to_error(self, *, prefix: str = "archive failed") -> AgencyError | None:
        failed = self.failed_stage()
        if failed is None:
            return None
        label, outcome = failed
        message = f"{prefix}: {label} failed"
        if outcome.reason:
            message = f"{message} ({outcome.reason})"
        return AgencyError(E_ARCHIVE_FAILED, message, details=self.event_data())

    def event_data(self) -> dict[str, Any]:
        return {
            "script_ok": self.script.ok,
            "tmux_ok": self.tmux.ok,
            "delete_ok": self.delete.ok,
            "script_reason": _truncate(self.script.reason, ARCHIVE_REASON_LIMIT),
            "tmux_reason": _truncate(self.tmux.reason, ARCHIVE_REASON_LIMIT),
            "delete_reason": _truncate(self.delete.reason, ARCHIVE_REASON_LIMIT),
        }
