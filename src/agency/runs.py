"""Run creation (``agency run``), listing (``agency ls``) and ``agency resolve``."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.config import _load_repo_config, _load_user_config, _resolve_runner_command
from agency.constants import (
    BRANCH_PREFIX,
    E_INVALID_NAME,
    E_NO_REPO,
    E_PARENT_NOT_FOUND,
    NEEDS_ATTENTION_SETUP_FAILED,
    RUN_NAME_MAX_LENGTH,
    RUN_NAME_MIN_LENGTH,
    RUN_NAME_PATTERN,
    WORKSPACE_DIRS,
)
from agency.events import EventLog
from agency.git import _origin_url, _ref_exists, _repo_root, _worktree_add
from agency.identity import derive_repo_identity
from agency.models import AgencyError, RunRecord
from agency.pipeline import Pipeline
from agency.report import REPORT_TEMPLATE, _report_path
from agency.resolver import _check_name_unique, _resolve_run_ref
from agency.scripts import _run_script, _script_env
from agency.store import _is_archived, _meta_flags, _needs_attention, _new_meta, _pr_number
from agency.tmux import TmuxClient, _session_name
from agency.utils import _generate_run_id, _short_run_id
from agency.verify import _verify_error

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _validate_name(name: str) -> str:
    candidate = name.strip()
    if not (RUN_NAME_MIN_LENGTH <= len(candidate) <= RUN_NAME_MAX_LENGTH) or not RUN_NAME_PATTERN.match(candidate):
        raise AgencyError(
            E_INVALID_NAME,
            f"invalid run name {name!r}",
            details={"name": name},
            hints=(
                f"use {RUN_NAME_MIN_LENGTH}-{RUN_NAME_MAX_LENGTH} lowercase letters, digits and single hyphens, "
                "starting with a letter (e.g. fix-login)",
            ),
        )
    return candidate


def _prepare_workspace(worktree: Path, title: str) -> None:
    for relative in WORKSPACE_DIRS:
        (worktree / relative).mkdir(parents=True, exist_ok=True)
    report = _report_path(worktree)
    if not report.exists():
        report.write_text(REPORT_TEMPLATE.format(title=title), encoding="utf-8")


def _run_setup(runtime: Runtime, meta: dict[str, Any], events: EventLog, pipeline: Pipeline) -> None:
    worktree = Path(str(meta["worktree_path"]))
    with pipeline.step("setup_config"):
        script = _load_repo_config(worktree).script("setup")
    if not script.configured:
        events.emit("setup_finished", {"ok": True, "skipped": True})
        return
    store = runtime.store
    repo_id, run_id = str(meta["repo_id"]), str(meta["run_id"])
    result = _run_script(
        runtime,
        script,
        cwd=worktree,
        env=_script_env(meta, worktree=worktree, logs_dir=store.logs_dir(repo_id, run_id)),
        log_path=store.log_path(repo_id, run_id, "setup"),
    )
    events.emit(
        "setup_finished",
        {
            "ok": result.ok,
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "duration_ms": result.duration_ms,
            "log_path": str(result.log_path),
        },
    )
    if result.ok:
        return

    def flag(current: dict[str, Any]) -> None:
        flags = _meta_flags(current)
        flags["needs_attention"] = True
        flags["needs_attention_reason"] = NEEDS_ATTENTION_SETUP_FAILED

    meta.update(store.update_meta(repo_id, run_id, flag))
    error = _verify_error(result, script="setup").with_hint(f"fix the worktree, then: agency resume {run_id}")
    pipeline.record_failure("setup", error)
    raise error


def create_run(
    runtime: Runtime,
    *,
    name: str,
    title: str = "",
    runner: str = "",
    parent: str = "",
    detached: bool = False,
) -> dict[str, Any]:
    name = _validate_name(name)
    repo_root = _repo_root(runtime, runtime.cwd)
    origin_url = _origin_url(runtime, repo_root)
    identity = derive_repo_identity(repo_root, origin_url)
    store = runtime.store

    _load_repo_config(repo_root)
    user_config = _load_user_config(runtime.config_dir)
    runner_name = runner.strip() or user_config.runner
    runner_cmd = _resolve_runner_command(user_config, runner_name)
    parent_branch = parent.strip() or user_config.parent_branch
    if not _ref_exists(runtime, repo_root, f"refs/heads/{parent_branch}"):
        raise AgencyError(
            E_PARENT_NOT_FOUND,
            f"parent branch {parent_branch!r} does not exist locally",
            details={"parent_branch": parent_branch},
            hints=(f"create it or pass --parent (git fetch origin {parent_branch}:{parent_branch})",),
        )
    _check_name_unique(name, store.scan_repo_runs(identity.repo_id), repo_id=identity.repo_id)

    run_id = _generate_run_id()
    branch = f"{BRANCH_PREFIX}{name}-{_short_run_id(run_id)}"
    worktree = store.worktree_path(identity.repo_id, run_id)
    session = _session_name(run_id)

    with runtime.repo_lock().acquire(identity.repo_id, "run"):
        store.write_repo_record(identity.repo_id, repo_key=identity.repo_key, repo_root=repo_root, origin_url=origin_url)
        _check_name_unique(name, store.scan_repo_runs(identity.repo_id), repo_id=identity.repo_id)
        worktree.parent.mkdir(parents=True, exist_ok=True)
        try:
            _worktree_add(runtime, repo_root, branch=branch, path=worktree, parent=parent_branch)
        except AgencyError as exc:
            runtime.log(f"run {run_id}: {exc}")
            raise
        _prepare_workspace(worktree, title or name)

        meta = _new_meta(
            run_id=run_id,
            repo_id=identity.repo_id,
            name=name,
            title=title,
            runner=runner_name,
            runner_cmd=runner_cmd,
            parent_branch=parent_branch,
            branch=branch,
            worktree_path=worktree,
            repo_root=repo_root,
            tmux_session_name=session,
        )
        store.write_meta(meta)
        events = runtime.events(identity.repo_id, run_id)
        pipeline = Pipeline(runtime, "run", events)
        events.emit("run_started", {"name": name, "branch": branch, "parent_branch": parent_branch, "runner": runner_name})
        events.emit("worktree_created", {"worktree_path": str(worktree), "branch": branch})

        _run_setup(runtime, meta, events, pipeline)
        tmux = TmuxClient(runtime)
        with pipeline.step("tmux_session"):
            tmux.new_session(session, worktree, shlex.split(runner_cmd))
        events.emit("tmux_session_created", {"session": session})
        events.emit("run_finished", {"ok": True})

    runtime.out(f"run_id: {run_id}")
    runtime.out(f"name: {name}")
    runtime.out(f"branch: {branch}")
    runtime.out(f"worktree: {worktree}")
    runtime.out(f"tmux: {session}")
    if not detached:
        tmux.attach(session)
    return meta


# ---------------------------------------------------------------------------
# ls / resolve
# ---------------------------------------------------------------------------


def _run_status(record: RunRecord) -> str:
    if record.broken:
        return "broken"
    meta = record.meta or {}
    if _is_archived(meta):
        archive = meta.get("archive") or {}
        return "merged" if archive.get("merged_at") else "archived"
    if _needs_attention(meta):
        reason = str((meta.get("flags") or {}).get("needs_attention_reason", "") or "")
        return f"needs attention ({reason})" if reason else "needs attention"
    return "active"


def _current_repo_id(runtime: Runtime) -> str | None:
    try:
        repo_root = _repo_root(runtime, runtime.cwd)
    except AgencyError as exc:
        if exc.code == E_NO_REPO:
            return None
        raise
    return derive_repo_identity(repo_root, _origin_url(runtime, repo_root)).repo_id


def list_runs(runtime: Runtime, *, all_repos: bool = False, include_archived: bool = False) -> list[RunRecord]:
    repo_id = None if all_repos else _current_repo_id(runtime)
    store = runtime.store
    records = store.scan_all_runs() if repo_id is None else store.scan_repo_runs(repo_id)
    if not include_archived:
        records = [record for record in records if not record.archived]
    if not records:
        runtime.out("no runs")
        return []
    for record in records:
        meta = record.meta or {}
        pr_number = _pr_number(meta)
        fields = [
            record.run_id,
            record.name or "-",
            _run_status(record),
            f"#{pr_number}" if pr_number else "-",
        ]
        if repo_id is None:
            fields.append(record.repo_id)
        runtime.out("\t".join(fields))
    return records


def resolve_ref(runtime: Runtime, ref: str) -> RunRecord:
    record = _resolve_run_ref(ref, runtime.store.scan_all_runs())
    runtime.out(record.run_id)
    return record
