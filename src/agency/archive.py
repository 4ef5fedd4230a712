"""Archive pipeline (script, tmux kill, worktree deletion) and the clean command."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from agency.config import _load_repo_config
from agency.constants import E_ABORTED, E_DEADLINE_EXCEEDED, E_NOT_INTERACTIVE, E_WORKTREE_MISSING
from agency.events import EventLog
from agency.git import _delete_branch, _worktree_remove
from agency.models import AgencyError, ArchiveOutcome, StageOutcome
from agency.resolver import _resolve_run
from agency.scripts import _run_script, _script_env
from agency.store import _is_archived, _meta_archive, _meta_flags
from agency.tmux import TmuxClient
from agency.utils import _tail, _utc_now

if TYPE_CHECKING:
    from agency.runtime import Runtime


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _archive_script_stage(runtime: Runtime, meta: dict[str, Any]) -> StageOutcome:
    worktree = Path(str(meta["worktree_path"]))
    if not worktree.is_dir():
        return StageOutcome(ok=True, reason="skipped: worktree missing")
    script = _load_repo_config(worktree).script("archive")
    if not script.configured:
        return StageOutcome(ok=True)
    store = runtime.store
    repo_id, run_id = str(meta["repo_id"]), str(meta["run_id"])
    result = _run_script(
        runtime,
        script,
        cwd=worktree,
        env=_script_env(meta, worktree=worktree, logs_dir=store.logs_dir(repo_id, run_id)),
        log_path=store.log_path(repo_id, run_id, "archive"),
    )
    return StageOutcome(ok=result.ok, reason=result.reason)


def _tmux_stage(runtime: Runtime, meta: dict[str, Any]) -> StageOutcome:
    session = str(meta.get("tmux_session_name", "") or "")
    if not session:
        return StageOutcome(ok=True)
    tmux = TmuxClient(runtime)
    if tmux.has_session(session):
        tmux.kill_session(session)
    return StageOutcome(ok=True)


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return path != parent


def _delete_stage(runtime: Runtime, meta: dict[str, Any]) -> StageOutcome:
    worktree = Path(str(meta["worktree_path"]))
    if not worktree.exists():
        return StageOutcome(ok=True)
    reason = ""
    repo_root = Path(str(meta.get("repo_root", "") or ""))
    if str(repo_root) not in ("", ".") and repo_root.is_dir():
        result = _worktree_remove(runtime, repo_root, worktree)
        if result.ok and not worktree.exists():
            return StageOutcome(ok=True)
        reason = f"git worktree remove exit {result.exit_code}: {_tail(result.stderr, 200)}"

    allowed = runtime.store.worktrees_dir(str(meta["repo_id"])).resolve()
    target = worktree.resolve()
    if not _is_within(target, allowed):
        return StageOutcome(
            ok=False,
            reason=f"refusing to delete {target}: outside {allowed}" + (f"; {reason}" if reason else ""),
        )
    try:
        shutil.rmtree(target)
    except OSError as exc:
        return StageOutcome(ok=False, reason=f"rm -rf failed: {exc}" + (f"; {reason}" if reason else ""))
    return StageOutcome(ok=True)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

Stage = Callable[["Runtime", dict[str, Any]], StageOutcome]


def _attempt_stage(stage: Stage, runtime: Runtime, meta: dict[str, Any], deferred: list[AgencyError]) -> StageOutcome:
    """Run one stage, turning its failure into an outcome so later stages still run."""
    try:
        return stage(runtime, meta)
    except AgencyError as exc:
        if exc.code == E_DEADLINE_EXCEEDED:
            deferred.append(exc)
        return StageOutcome(ok=False, reason=exc.message)
    except OSError as exc:
        return StageOutcome(ok=False, reason=f"{type(exc).__name__}: {exc}")


def _archive_run(runtime: Runtime, meta: dict[str, Any], events: EventLog, *, merged: bool = False) -> ArchiveOutcome:
    """Run every archive stage and persist the combined outcome.

    The caller must hold the repository lock. A run that already carries
    an archive timestamp is left untouched. Once the worktree is gone the
    run is marked archived even if another stage failed. An expired
    deadline is re-raised only after every stage has been recorded.
    """
    if _is_archived(meta):
        ok = StageOutcome(ok=True)
        return ArchiveOutcome(script=ok, tmux=ok, delete=ok, already_archived=True)

    events.emit("archive_started", {"merged": merged})
    deferred: list[AgencyError] = []
    outcome = ArchiveOutcome(
        script=_attempt_stage(_archive_script_stage, runtime, meta, deferred),
        tmux=_attempt_stage(_tmux_stage, runtime, meta, deferred),
        delete=_attempt_stage(_delete_stage, runtime, meta, deferred),
    )

    def record(current: dict[str, Any]) -> None:
        archive = _meta_archive(current)
        archive["script_ok"] = outcome.script.ok
        archive["tmux_ok"] = outcome.tmux.ok
        archive["delete_ok"] = outcome.delete.ok
        if outcome.delete.ok:
            archive["archived_at"] = _utc_now()

    try:
        meta.update(runtime.store.update_meta(str(meta["repo_id"]), str(meta["run_id"]), record))
    except AgencyError as exc:
        runtime.warn(f"failed to update meta.json: {exc.message}")

    if outcome.success:
        events.emit("archive_finished", outcome.event_data())
    else:
        events.emit("archive_failed", outcome.event_data())
    if deferred:
        raise deferred[0]
    return outcome


# ---------------------------------------------------------------------------
# clean
# ---------------------------------------------------------------------------


def clean_run(runtime: Runtime, ref: str, *, delete_branch: bool = False) -> None:
    if not runtime.console.is_interactive():
        raise AgencyError(
            E_NOT_INTERACTIVE,
            "clean requires an interactive terminal; stdin and stderr must be TTYs",
        )
    record, meta = _resolve_run(runtime, ref)
    if _is_archived(meta):
        runtime.out("already archived")
        return
    worktree = Path(str(meta.get("worktree_path", "") or ""))
    if not meta.get("worktree_path") or not worktree.exists():
        raise AgencyError(
            E_WORKTREE_MISSING,
            "worktree path does not exist",
            details={"worktree_path": str(worktree), "run_id": record.run_id},
        )

    events = runtime.events(record.repo_id, record.run_id)
    with runtime.repo_lock().acquire(record.repo_id, "clean"):
        runtime.err("lock: acquired repo lock (held during clean/archive)")
        meta = runtime.store.read_meta(record.repo_id, record.run_id)
        if _is_archived(meta):
            runtime.out("already archived")
            return
        answer = runtime.console.prompt("confirm: type 'clean' to proceed: ")
        if answer != "clean":
            raise AgencyError(E_ABORTED, "confirmation failed; expected 'clean'")

        events.emit("clean_started")
        outcome = _archive_run(runtime, meta, events)
        error = outcome.to_error()
        if error is not None:
            raise error

        def mark_abandoned(current: dict[str, Any]) -> None:
            _meta_flags(current)["abandoned"] = True

        try:
            runtime.store.update_meta(record.repo_id, record.run_id, mark_abandoned)
        except AgencyError as exc:
            runtime.warn(f"failed to update meta.json: {exc.message}")

        if delete_branch and meta.get("branch"):
            _delete_local_branch(runtime, meta)
        events.emit("clean_finished")
    runtime.out(f"cleaned: {record.run_id}")


def _delete_local_branch(runtime: Runtime, meta: dict[str, Any]) -> None:
    """Delete the run's local branch; failure is only ever a warning."""
    repo_root = Path(str(meta.get("repo_root", "") or ""))
    branch = str(meta["branch"])
    if str(repo_root) in ("", ".") or not repo_root.is_dir():
        runtime.warn(f"could not delete branch {branch}: repository root unknown")
        return
    result = _delete_branch(runtime, repo_root, branch)
    if not result.ok:
        runtime.warn(f"could not delete branch {branch}: {_tail(result.stderr, 200)}")
