"""``agency merge``: prechecks, verify, typed confirmation, gh merge, archive."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.archive import _archive_run
from agency.constants import (
    E_ABORTED,
    E_DIRTY_WORKTREE,
    E_GH_PR_MERGE_FAILED,
    E_NO_PR,
    E_NOT_INTERACTIVE,
    E_REMOTE_OUT_OF_DATE,
    STDERR_TAIL_LIMIT,
)
from agency.events import EventLog
from agency.gh import PRLookupError, _check_gh_auth, _check_mergeability, _confirm_pr_merged, _merge_pr, _resolve_pr, _validate_pr_state
from agency.git import _fetch_origin, _is_dirty, _rev_parse
from agency.identity import parse_github_owner_repo
from agency.models import AgencyError, PRView
from agency.pipeline import Pipeline
from agency.push import _require_github_host, _require_origin, _require_worktree, _update_meta_or_warn
from agency.resolver import _resolve_run
from agency.retry import Attempt
from agency.store import _meta_archive, _pr_number
from agency.utils import _tail, _utc_now
from agency.verify import _run_verify, _verify_error

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _resolution_listener(events: EventLog, owner_repo: str, branch: str):
    def on_attempt(attempt: Attempt, error: PRLookupError | None) -> None:
        data: dict[str, Any] = {
            "owner_repo": owner_repo,
            "head": branch,
            "attempt": attempt.number,
            "sleep_ms": int(attempt.slept * 1000),
        }
        if error is not None:
            data["exit_code"] = error.exit_code
            data["stderr_tail"] = _tail(error.stderr, STDERR_TAIL_LIMIT)
            data["error"] = str(error)
        events.emit("pr_resolution_attempt", data)

    return on_attempt


def _check_remote_head(runtime: Runtime, worktree: Path, branch: str, run_id: str) -> None:
    remote_ref = f"refs/remotes/origin/{branch}"
    _fetch_origin(runtime, worktree, refspec=f"refs/heads/{branch}:{remote_ref}")
    local_head = _rev_parse(runtime, worktree, "HEAD")
    remote_head = _rev_parse(runtime, worktree, remote_ref)
    if remote_head is None:
        raise AgencyError(
            E_REMOTE_OUT_OF_DATE,
            f"remote branch missing; run: agency push {run_id}",
            details={"branch": branch},
        )
    if local_head != remote_head:
        raise AgencyError(
            E_REMOTE_OUT_OF_DATE,
            f"local head differs from origin/{branch}; run: agency push {run_id}",
            details={"branch": branch, "local_head": local_head or "", "remote_head": remote_head},
        )


def _gh_merge(
    runtime: Runtime,
    *,
    worktree: Path,
    owner_repo: str,
    pr: PRView,
    strategy: str,
    delete_branch: bool,
    log_path: Path,
    events: EventLog,
) -> None:
    events.emit("gh_merge_started", {"pr_number": pr.number, "strategy": strategy})
    _merge_pr(
        runtime,
        cwd=worktree,
        owner_repo=owner_repo,
        number=pr.number,
        strategy=strategy,
        delete_branch=delete_branch,
        log_path=log_path,
    )
    if not _confirm_pr_merged(runtime, cwd=worktree, owner_repo=owner_repo, number=pr.number):
        raise AgencyError(
            E_GH_PR_MERGE_FAILED,
            "gh pr merge succeeded but could not confirm MERGED state",
            details={"pr_number": pr.number, "log_path": str(log_path)},
            hints=(f"check: gh pr view {pr.number} -R {owner_repo}",),
        )
    events.emit("gh_merge_finished", {"pr_number": pr.number, "ok": True})


def _record_merged(runtime: Runtime, meta: dict[str, Any]) -> None:
    def apply(current: dict[str, Any]) -> None:
        archive = _meta_archive(current)
        if not archive.get("merged_at"):
            archive["merged_at"] = _utc_now()

    try:
        meta.update(runtime.store.update_meta(str(meta["repo_id"]), str(meta["run_id"]), apply))
    except AgencyError as exc:
        runtime.warn(f"failed to update meta.json: {exc.message}")


def _confirm_merge(runtime: Runtime, events: EventLog, pipeline: Pipeline) -> None:
    events.emit("merge_confirm_prompted")
    answer = runtime.console.prompt("confirm: type 'merge' to proceed: ")
    if answer != "merge":
        error = AgencyError(E_ABORTED, "merge confirmation failed; expected 'merge'")
        pipeline.record_failure("confirm", error)
        raise error
    events.emit("merge_confirmed")


def _finish_with_archive(runtime: Runtime, meta: dict[str, Any], events: EventLog, *, already_merged: bool = False) -> None:
    """Archive after the PR is merged; a failure here is reported as a finished, unsuccessful merge."""
    outcome = _archive_run(runtime, meta, events, merged=True)
    prefix = "PR already merged; archive failed" if already_merged else "merge succeeded; archive failed"
    error = outcome.to_error(prefix=prefix)
    if error is not None:
        events.emit("merge_finished", {"ok": False, "error_code": error.code})
        raise error


def merge_run(
    runtime: Runtime,
    ref: str,
    *,
    strategy: str = "squash",
    force: bool = False,
    allow_dirty: bool = False,
    no_delete_branch: bool = False,
) -> None:
    if not runtime.console.is_interactive():
        raise AgencyError(
            E_NOT_INTERACTIVE,
            "merge requires an interactive terminal; stdin and stderr must be TTYs",
        )
    record, meta = _resolve_run(runtime, ref)
    run_id = record.run_id
    events = runtime.events(record.repo_id, run_id)
    pipeline = Pipeline(runtime, "merge", events)
    events.emit("merge_started", {"strategy": strategy, "force": force, "no_delete_branch": no_delete_branch})

    with pipeline.step("worktree_check"):
        worktree = _require_worktree(meta)
    with pipeline.step("repo_lock"):
        lock = runtime.repo_lock().acquire(record.repo_id, "merge")

    with lock:
        with pipeline.step("meta_reload"):
            meta = runtime.store.read_meta(record.repo_id, run_id)
        with pipeline.step("dirty_check"):
            dirty = _is_dirty(runtime, worktree)
            if dirty and not allow_dirty:
                raise AgencyError(
                    E_DIRTY_WORKTREE,
                    "worktree has uncommitted changes; commit or pass --allow-dirty",
                    details={"worktree_path": str(worktree)},
                )
        if dirty:
            pipeline.warn(
                "worktree has uncommitted changes; proceeding due to --allow-dirty",
                event="dirty_allowed",
                data={"cmd": "merge"},
            )
        runtime.err("lock: acquired repo lock (held during verify/merge/archive)")

        with pipeline.step("origin_check"):
            origin_url = _require_origin(runtime, worktree)
        with pipeline.step("origin_host_check"):
            _require_github_host(origin_url)
        with pipeline.step("gh_auth"):
            _check_gh_auth(runtime, worktree)
        with pipeline.step("repo_parse"):
            owner_repo = parse_github_owner_repo(origin_url)

        branch = str(meta["branch"])
        with pipeline.step("pr_resolution"):
            pr = _resolve_pr(
                runtime,
                cwd=worktree,
                owner_repo=owner_repo,
                branch=branch,
                pr_number=_pr_number(meta),
                on_attempt=_resolution_listener(events, owner_repo, branch),
            )
            if pr is None:
                raise AgencyError(
                    E_NO_PR,
                    "no PR exists for this run",
                    details={"branch": branch},
                    hints=(f"run: agency push {run_id}",),
                )
        if pr.number != _pr_number(meta) or pr.url != meta.get("pr_url"):
            _update_meta_or_warn(runtime, meta, {"pr_number": pr.number, "pr_url": pr.url})

        with pipeline.step("pr_state_check"):
            already_merged = _validate_pr_state(pr, branch)
        if already_merged:
            events.emit("merge_already_merged", {"pr_number": pr.number})
            _confirm_merge(runtime, events, pipeline)
            _record_merged(runtime, meta)
            _finish_with_archive(runtime, meta, events, already_merged=True)
            events.emit("merge_finished", {"ok": True, "already_merged": True})
            runtime.out(f"merged: {run_id} (already merged)")
            runtime.out(f"pr: {pr.url}")
            return

        with pipeline.step("mergeability_check"):
            _check_mergeability(runtime, cwd=worktree, owner_repo=owner_repo, number=pr.number)
        with pipeline.step("remote_head_check"):
            _check_remote_head(runtime, worktree, branch, run_id)
        events.emit("merge_prechecks_passed", {"pr_number": pr.number})

        with pipeline.step("verify"):
            result = _run_verify(runtime, meta, events)
        if result is not None and not result.ok:
            if force:
                pipeline.warn(
                    f"verify {result.reason}; proceeding due to --force",
                    event="verify_failed_allowed",
                    data={"log_path": str(result.log_path)},
                )
            else:
                events.emit("verify_continue_prompted")
                if not runtime.console.confirm("verify failed. continue anyway? [y/N] "):
                    events.emit("verify_continue_rejected")
                    error = _verify_error(result)
                    events.emit("merge_finished", {"ok": False, "error_code": error.code})
                    raise error
                events.emit("verify_continue_accepted")

        _confirm_merge(runtime, events, pipeline)

        log_path = runtime.store.log_path(record.repo_id, run_id, "merge")
        with pipeline.step("gh_merge"):
            _gh_merge(
                runtime,
                worktree=worktree,
                owner_repo=owner_repo,
                pr=pr,
                strategy=strategy,
                delete_branch=not no_delete_branch,
                log_path=log_path,
                events=events,
            )
        _record_merged(runtime, meta)
        _finish_with_archive(runtime, meta, events)
        events.emit("merge_finished", {"ok": True})

    runtime.out(f"merged: {run_id}")
    runtime.out(f"pr: {pr.url}")
    runtime.out(f"log: {log_path}")
