"""tmux session lifecycle for runs: resume, attach, stop, kill."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.constants import (
    E_CONFIRMATION_REQUIRED,
    E_RUN_BROKEN,
    E_SESSION_NOT_FOUND,
    E_WORKTREE_MISSING,
    NEEDS_ATTENTION_STOPPED,
)
from agency.events import EventLog
from agency.models import AgencyError
from agency.resolver import _resolve_run
from agency.store import _is_archived, _meta_flags
from agency.tmux import TmuxClient, _session_name

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _session_for(meta: dict[str, Any]) -> str:
    return str(meta.get("tmux_session_name", "") or "") or _session_name(str(meta["run_id"]))


def _runner_command(meta: dict[str, Any]) -> list[str]:
    raw = str(meta.get("runner_cmd", "") or meta.get("runner", "") or "")
    command = shlex.split(raw)
    if not command:
        raise AgencyError(
            E_RUN_BROKEN,
            "meta.json has no runner command",
            details={"run_id": meta.get("run_id", "")},
        )
    return command


def _require_resumable(meta: dict[str, Any], events: EventLog) -> Path:
    worktree = Path(str(meta.get("worktree_path", "") or ""))
    if _is_archived(meta):
        message = "run is archived; cannot resume"
    elif not meta.get("worktree_path") or not worktree.is_dir():
        message = "worktree missing; run is corrupted"
    else:
        return worktree
    events.emit("resume_failed", {"error_code": E_WORKTREE_MISSING, "error": message})
    raise AgencyError(
        E_WORKTREE_MISSING,
        message,
        details={"run_id": meta.get("run_id", ""), "worktree_path": str(worktree)},
    )


def _attach_or_report(runtime: Runtime, tmux: TmuxClient, session: str, *, detached: bool) -> None:
    if detached:
        runtime.out(f"ok: session {session} ready")
        return
    tmux.attach(session)


# ---------------------------------------------------------------------------
# resume
# ---------------------------------------------------------------------------


def resume_run(
    runtime: Runtime,
    ref: str,
    *,
    detached: bool = False,
    restart: bool = False,
    yes: bool = False,
) -> None:
    """Attach to the run's session, creating it when it is missing.

    Existence is checked once without the lock and again under it, so a
    session created by a concurrent invocation in between is attached to
    rather than duplicated.
    """
    record, meta = _resolve_run(runtime, ref)
    events = runtime.events(record.repo_id, record.run_id)
    worktree = _require_resumable(meta, events)
    tmux = TmuxClient(runtime)
    session = _session_for(meta)

    if restart:
        if _restart_session(runtime, record.repo_id, meta, events, tmux, session, worktree, yes=yes):
            _attach_or_report(runtime, tmux, session, detached=detached)
        return

    if tmux.has_session(session):
        events.emit("resume_attach", {"session": session, "detached": detached})
        _attach_or_report(runtime, tmux, session, detached=detached)
        return

    with runtime.repo_lock().acquire(record.repo_id, "resume"):
        if tmux.has_session(session):
            events.emit("resume_attach", {"session": session, "detached": detached})
        else:
            tmux.new_session(session, worktree, _runner_command(meta))
            events.emit("resume_create", {"session": session, "detached": detached})
    _attach_or_report(runtime, tmux, session, detached=detached)


def _restart_session(
    runtime: Runtime,
    repo_id: str,
    meta: dict[str, Any],
    events: EventLog,
    tmux: TmuxClient,
    session: str,
    worktree: Path,
    *,
    yes: bool,
) -> bool:
    if not yes:
        if not runtime.console.is_interactive():
            raise AgencyError(
                E_CONFIRMATION_REQUIRED,
                "refusing to restart without confirmation in non-interactive mode; pass --yes",
            )
        if not runtime.console.confirm("restart session? in-tool history will be lost (git state unchanged) [y/N]: "):
            runtime.out("canceled")
            return False
    with runtime.repo_lock().acquire(repo_id, "resume"):
        if tmux.has_session(session):
            tmux.kill_session(session)
        tmux.new_session(session, worktree, _runner_command(meta))
        events.emit("resume_restart", {"session": session})
    return True


# ---------------------------------------------------------------------------
# attach / stop / kill
# ---------------------------------------------------------------------------


def attach_run(runtime: Runtime, ref: str) -> None:
    record, meta = _resolve_run(runtime, ref)
    session = _session_for(meta)
    tmux = TmuxClient(runtime)
    if not tmux.has_session(session):
        raise AgencyError(
            E_SESSION_NOT_FOUND,
            f"no tmux session for run {record.run_id}",
            details={"session": session},
            hints=(f"start it with: agency resume {record.run_id}",),
        )
    tmux.attach(session)


def stop_run(runtime: Runtime, ref: str) -> None:
    record, meta = _resolve_run(runtime, ref)
    session = _session_for(meta)
    tmux = TmuxClient(runtime)
    if not tmux.has_session(session):
        runtime.out(f"no session for {record.run_id}")
        return
    tmux.send_keys(session, ["C-c"])

    def mark_stopped(current: dict[str, Any]) -> None:
        flags = _meta_flags(current)
        flags["needs_attention"] = True
        flags["needs_attention_reason"] = NEEDS_ATTENTION_STOPPED

    try:
        runtime.store.update_meta(record.repo_id, record.run_id, mark_stopped)
    except AgencyError as exc:
        runtime.warn(f"failed to update meta.json: {exc.message}")
    runtime.events(record.repo_id, record.run_id).emit("stop", {"session": session, "keys": "C-c"})
    runtime.out(f"stopped: {record.run_id}")


def kill_run(runtime: Runtime, ref: str) -> None:
    record, meta = _resolve_run(runtime, ref)
    session = _session_for(meta)
    tmux = TmuxClient(runtime)
    if not tmux.has_session(session):
        runtime.out(f"no session for {record.run_id}")
        return
    tmux.kill_session(session)
    runtime.events(record.repo_id, record.run_id).emit("kill_session", {"session": session})
    runtime.out(f"killed: {record.run_id}")
