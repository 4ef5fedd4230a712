"""Run repository lifecycle scripts (setup, verify, archive) via ``sh -lc``."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.executor import ProcessTimeout
from agency.models import ScriptConfig, _coerce_positive_int
from agency.utils import _utc_now

if TYPE_CHECKING:
    from agency.runtime import Runtime


@dataclass(frozen=True)
class ScriptResult:
    ok: bool
    exit_code: int | None
    timed_out: bool
    duration_ms: int
    started_at: str
    finished_at: str
    log_path: Path
    timeout_seconds: float = 0.0

    @property
    def reason(self) -> str:
        if self.ok:
            return ""
        if self.timed_out:
            return f"timed out after {_format_seconds(self.timeout_seconds)}"
        return f"exit {self.exit_code}"


def _format_seconds(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    return f"{seconds:g}s"


def _script_env(meta: dict[str, Any], *, worktree: Path, logs_dir: Path) -> dict[str, str]:
    pr_number = _coerce_positive_int(meta.get("pr_number"))
    return {
        "AGENCY_RUN_ID": str(meta.get("run_id", "")),
        "AGENCY_NAME": str(meta.get("name", "") or ""),
        "AGENCY_TITLE": str(meta.get("title", "") or ""),
        "AGENCY_REPO_ROOT": str(worktree),
        "AGENCY_WORKSPACE_ROOT": str(worktree),
        "AGENCY_BRANCH": str(meta.get("branch", "")),
        "AGENCY_PARENT_BRANCH": str(meta.get("parent_branch", "")),
        "AGENCY_ORIGIN_NAME": "origin",
        "AGENCY_RUNNER": str(meta.get("runner", "") or ""),
        "AGENCY_PR_URL": str(meta.get("pr_url", "") or ""),
        "AGENCY_PR_NUMBER": str(pr_number) if pr_number else "",
        "AGENCY_DOTAGENCY_DIR": str(worktree / ".agency"),
        "AGENCY_OUTPUT_DIR": str(worktree / ".agency" / "out"),
        "AGENCY_LOG_DIR": str(logs_dir),
        "AGENCY_NONINTERACTIVE": "1",
        "CI": "1",
    }


def _run_script(
    runtime: Runtime,
    script: ScriptConfig,
    *,
    cwd: Path,
    env: dict[str, str],
    log_path: Path,
) -> ScriptResult:
    """Run one script with its timeout, writing combined output to ``log_path``."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = _utc_now()
    started = time.monotonic()
    timed_out = False
    exit_code: int | None = None
    output = ""
    try:
        result = runtime.runner.run(
            "sh",
            ["-lc", script.path],
            cwd=cwd,
            env=env,
            timeout=script.timeout_seconds,
            combine_output=True,
        )
        exit_code = result.exit_code
        output = result.stdout
    except ProcessTimeout as exc:
        timed_out = True
        output = exc.output
    duration_ms = int((time.monotonic() - started) * 1000)
    if timed_out:
        duration_ms = max(duration_ms, int(script.timeout_seconds * 1000))
    finished_at = _utc_now()
    with log_path.open("w", encoding="utf-8") as handle:
        handle.write(f"# agency {script.name} log\n")
        handle.write(f"# timestamp: {started_at}\n")
        handle.write(f"# command: sh -lc {script.path}\n")
        handle.write(f"# cwd: {cwd}\n")
        handle.write("# ---\n\n")
        handle.write(output)
        if timed_out:
            handle.write(f"\n# timed out after {_format_seconds(script.timeout_seconds)}\n")
        else:
            handle.write(f"\n# exit code: {exit_code}\n")
    return ScriptResult(
        ok=not timed_out and exit_code == 0,
        exit_code=exit_code,
        timed_out=timed_out,
        duration_ms=duration_ms,
        started_at=started_at,
        finished_at=finished_at,
        log_path=log_path,
        timeout_seconds=script.timeout_seconds,
    )
