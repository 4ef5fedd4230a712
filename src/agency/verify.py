"""Verify script execution, verify records, and the verify command."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.config import _clamp_timeout, _load_repo_config
from agency.constants import (
    E_PERSIST_FAILED,
    E_SCRIPT_FAILED,
    E_SCRIPT_TIMEOUT,
    E_WORKTREE_MISSING,
    NEEDS_ATTENTION_VERIFY_FAILED,
    SCHEMA_VERSION,
)
from agency.events import EventLog
from agency.models import AgencyError
from agency.resolver import _resolve_run
from agency.scripts import ScriptResult, _run_script, _script_env
from agency.store import _is_archived, _meta_flags
from agency.utils import _write_json
from agency.validators import _schema_errors

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _verify_record(meta: dict[str, Any], script_path: str, result: ScriptResult) -> dict[str, Any]:
    if result.ok:
        summary = "verify passed"
    elif result.timed_out:
        summary = f"verify {result.reason}"
    else:
        summary = f"verify failed ({result.reason})"
    return {
        "schema_version": SCHEMA_VERSION,
        "repo_id": meta["repo_id"],
        "run_id": meta["run_id"],
        "script_path": script_path,
        "started_at": result.started_at,
        "finished_at": result.finished_at,
        "duration_ms": result.duration_ms,
        "timeout_ms": int(result.timeout_seconds * 1000),
        "timed_out": result.timed_out,
        "exit_code": result.exit_code,
        "ok": result.ok,
        "log_path": str(result.log_path),
        "summary": summary,
    }


def _run_verify(
    runtime: Runtime,
    meta: dict[str, Any],
    events: EventLog,
    *,
    timeout_seconds: float | None = None,
) -> ScriptResult | None:
    """Run the verify script and record its outcome; None when none is configured.

    The caller must hold the repository lock.
    """
    worktree = Path(str(meta["worktree_path"]))
    script = _load_repo_config(worktree).script("verify")
    if not script.configured:
        return None
    if timeout_seconds is not None:
        script = replace(script, timeout_seconds=_clamp_timeout(timeout_seconds))

    store = runtime.store
    repo_id, run_id = str(meta["repo_id"]), str(meta["run_id"])
    log_path = store.log_path(repo_id, run_id, "verify")
    events.emit("verify_started", {"timeout_ms": int(script.timeout_seconds * 1000), "log_path": str(log_path)})
    result = _run_script(
        runtime,
        script,
        cwd=worktree,
        env=_script_env(meta, worktree=worktree, logs_dir=store.logs_dir(repo_id, run_id)),
        log_path=log_path,
    )
    record_path = store.verify_record_path(repo_id, run_id)
    record = _verify_record(meta, script.path, result)
    problems = _schema_errors(record, schema_key="verify_record")
    if problems:
        raise AgencyError(E_PERSIST_FAILED, f"invalid verify record: {problems[0]}")
    _write_json(record_path, record)

    def apply(current: dict[str, Any]) -> None:
        current["last_verify_at"] = result.finished_at
        flags = _meta_flags(current)
        if result.ok:
            if flags.get("needs_attention_reason") == NEEDS_ATTENTION_VERIFY_FAILED:
                flags["needs_attention"] = False
                flags["needs_attention_reason"] = ""
        else:
            flags["needs_attention"] = True
            flags["needs_attention_reason"] = NEEDS_ATTENTION_VERIFY_FAILED

    meta.update(store.update_meta(repo_id, run_id, apply))
    events.emit(
        "verify_finished",
        {
            "ok": result.ok,
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "duration_ms": result.duration_ms,
            "log_path": str(log_path),
            "record_path": str(record_path),
        },
    )
    return result


def _verify_error(result: ScriptResult, *, script: str = "verify") -> AgencyError:
    code = E_SCRIPT_TIMEOUT if result.timed_out else E_SCRIPT_FAILED
    return AgencyError(
        code,
        f"{script} script {result.reason}",
        details={"log_path": str(result.log_path)},
        hints=(f"see log: {result.log_path}",),
    )


def verify_run(runtime: Runtime, ref: str, *, timeout_seconds: float | None = None) -> None:
    record, meta = _resolve_run(runtime, ref)
    worktree = Path(str(meta.get("worktree_path", "") or ""))
    if _is_archived(meta) or not worktree.is_dir():
        raise AgencyError(
            E_WORKTREE_MISSING,
            "run exists but worktree missing or archived; cannot verify",
            details={"run_id": record.run_id, "worktree_path": str(worktree)},
        )
    events = runtime.events(record.repo_id, record.run_id)
    with runtime.repo_lock().acquire(record.repo_id, "verify"):
        result = _run_verify(runtime, meta, events, timeout_seconds=timeout_seconds)
    if result is None:
        runtime.out("verify: skipped (no verify script configured)")
        return
    if not result.ok:
        raise _verify_error(result)
    runtime.out("verify: ok")
