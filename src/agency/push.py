"""``agency push``: gate, push the run branch, and create or update its PR."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from agency.constants import (
    E_EMPTY_DIFF,
    E_NO_ORIGIN,
    E_PR_MISMATCH,
    E_PR_NOT_OPEN,
    E_REPORT_INVALID,
    E_UNSUPPORTED_ORIGIN_HOST,
    E_WORKTREE_MISSING,
    GITHUB_HOST,
    PLACEHOLDER_PR_BODY,
    PR_TITLE_PREFIX,
)
from agency.events import EventLog
from agency.gh import _check_gh_auth, _create_pr, _edit_pr_body, _pr_view_hint, _resolve_pr
from agency.git import _commits_ahead, _fetch_origin, _is_dirty, _origin_url, _push_branch, _resolve_parent_ref
from agency.identity import parse_github_owner_repo, parse_origin_host
from agency.models import AgencyError, PRView
from agency.pipeline import Pipeline
from agency.report import ReportState, _missing_sections, _read_report
from agency.resolver import _resolve_run
from agency.store import _pr_number
from agency.utils import _utc_now

if TYPE_CHECKING:
    from agency.runtime import Runtime


# ---------------------------------------------------------------------------
# Shared gates (also used by merge)
# ---------------------------------------------------------------------------


def _require_worktree(meta: dict[str, Any]) -> Path:
    raw = str(meta.get("worktree_path", "") or "")
    if not raw:
        raise AgencyError(
            E_WORKTREE_MISSING,
            "meta.json has empty worktree_path",
            details={"run_id": meta.get("run_id", "")},
        )
    worktree = Path(raw)
    if not worktree.is_dir():
        raise AgencyError(
            E_WORKTREE_MISSING,
            "worktree path does not exist",
            details={"run_id": meta.get("run_id", ""), "worktree_path": raw},
        )
    return worktree


def _require_origin(runtime: Runtime, worktree: Path) -> str:
    origin_url = _origin_url(runtime, worktree)
    if not origin_url:
        raise AgencyError(E_NO_ORIGIN, "git remote 'origin' not configured")
    return origin_url


def _require_github_host(origin_url: str) -> None:
    host = parse_origin_host(origin_url)
    if host != GITHUB_HOST:
        raise AgencyError(
            E_UNSUPPORTED_ORIGIN_HOST,
            "origin host must be github.com",
            details={"origin_url": origin_url, "host": host},
        )


def _update_meta_or_warn(runtime: Runtime, meta: dict[str, Any], changes: dict[str, Any]) -> None:
    def apply(current: dict[str, Any]) -> None:
        current.update(changes)

    try:
        meta.update(runtime.store.update_meta(str(meta["repo_id"]), str(meta["run_id"]), apply))
    except AgencyError as exc:
        runtime.warn(f"failed to update meta.json: {exc.message}")


# ---------------------------------------------------------------------------
# PR create / update
# ---------------------------------------------------------------------------


def _sync_pr(
    runtime: Runtime,
    meta: dict[str, Any],
    *,
    worktree: Path,
    owner_repo: str,
    report: ReportState,
    events: EventLog,
) -> tuple[PRView, str]:
    branch = str(meta["branch"])
    existing = _resolve_pr(
        runtime,
        cwd=worktree,
        owner_repo=owner_repo,
        branch=branch,
        pr_number=_pr_number(meta),
    )
    if existing is not None and existing.state != "OPEN":
        raise AgencyError(
            E_PR_NOT_OPEN,
            f"PR #{existing.number} exists but state is {existing.state} (expected OPEN)",
            details={"pr_number": existing.number, "state": existing.state},
            hints=(
                "close the existing PR or clear meta.pr_number and try again",
                _pr_view_hint(owner_repo, branch, existing.number),
            ),
        )
    if existing is not None and existing.head_ref_name and existing.head_ref_name != branch:
        raise AgencyError(
            E_PR_MISMATCH,
            f"PR #{existing.number} head branch {existing.head_ref_name!r} does not match expected branch {branch!r}",
            details={"pr_number": existing.number, "expected_branch": branch, "pr_head_branch": existing.head_ref_name},
            hints=("repair the PR or meta.json and retry",),
        )

    if existing is None:
        title = PR_TITLE_PREFIX + (str(meta.get("title", "") or "") or branch)
        pr = _create_pr(
            runtime,
            cwd=worktree,
            owner_repo=owner_repo,
            base=str(meta["parent_branch"]),
            branch=branch,
            title=title,
            body_file=None if report.empty else report.path,
            body=PLACEHOLDER_PR_BODY.format(branch=branch, run_id=meta["run_id"]),
        )
        action = "created"
        events.emit("pr_created", {"pr_number": pr.number, "pr_url": pr.url})
    else:
        pr = existing
        action = "updated"

    _update_meta_or_warn(runtime, meta, {"pr_number": pr.number, "pr_url": pr.url})

    if report.empty:
        return (pr, action)
    if action == "created":
        _update_meta_or_warn(runtime, meta, {"last_report_sync_at": _utc_now(), "last_report_hash": report.digest})
    elif report.digest != str(meta.get("last_report_hash", "") or ""):
        _edit_pr_body(runtime, cwd=worktree, owner_repo=owner_repo, number=pr.number, body_file=report.path)
        _update_meta_or_warn(runtime, meta, {"last_report_sync_at": _utc_now(), "last_report_hash": report.digest})
        events.emit("pr_body_synced", {"pr_number": pr.number})
    return (pr, action)


# ---------------------------------------------------------------------------
# push
# ---------------------------------------------------------------------------


def push_run(runtime: Runtime, ref: str, *, force: bool = False) -> PRView:
    record, meta = _resolve_run(runtime, ref)
    events = runtime.events(record.repo_id, record.run_id)
    pipeline = Pipeline(runtime, "push", events)
    events.emit("push_started", {"force": force})

    with pipeline.step("worktree_check"):
        worktree = _require_worktree(meta)
    with pipeline.step("repo_lock"):
        lock = runtime.repo_lock().acquire(record.repo_id, "push")

    with lock:
        with pipeline.step("origin_check"):
            origin_url = _require_origin(runtime, worktree)
            _require_github_host(origin_url)
            owner_repo = parse_github_owner_repo(origin_url)

        report = _read_report(worktree)
        with pipeline.step("report_gate"):
            if report.empty and not force:
                raise AgencyError(
                    E_REPORT_INVALID,
                    "report missing or empty; use --force to push anyway",
                    details={"report_path": str(report.path)},
                )
        if report.empty:
            pipeline.warn(
                "report missing or empty; proceeding due to --force",
                event="report_allowed",
                data={"cmd": "push"},
            )
        else:
            missing = _missing_sections(report.text)
            if missing:
                runtime.warn(f"report incomplete: missing {', '.join(missing)}")

        try:
            dirty = _is_dirty(runtime, worktree)
        except AgencyError as exc:
            runtime.warn(f"failed to check worktree status: {exc.message}")
            dirty = False
        if dirty:
            pipeline.warn(
                "worktree has uncommitted changes; pushing commits anyway",
                event="dirty_allowed",
                data={"cmd": "push"},
            )

        with pipeline.step("gh_auth"):
            _check_gh_auth(runtime, worktree)
        with pipeline.step("git_fetch"):
            _fetch_origin(runtime, worktree)
        events.emit("git_fetch_finished")

        branch = str(meta["branch"])
        with pipeline.step("parent_ref"):
            parent_ref = _resolve_parent_ref(runtime, worktree, str(meta["parent_branch"]))
        with pipeline.step("ahead_check"):
            ahead = _commits_ahead(runtime, worktree, parent_ref, branch)
            if ahead == 0:
                raise AgencyError(
                    E_EMPTY_DIFF,
                    "no commits ahead of parent; make at least one commit",
                    details={"parent_ref": parent_ref, "branch": branch},
                )

        with pipeline.step("git_push"):
            _push_branch(runtime, worktree, branch)
        events.emit("git_push_finished", {"branch": branch, "commits_ahead": ahead})
        _update_meta_or_warn(runtime, meta, {"last_push_at": _utc_now()})

        with pipeline.step("pr"):
            pr, action = _sync_pr(
                runtime,
                meta,
                worktree=worktree,
                owner_repo=owner_repo,
                report=report,
                events=events,
            )
        events.emit("push_finished", {"pr_number": pr.number, "pr_url": pr.url, "pr_action": action})

    runtime.out(f"pr: {pr.url}")
    return pr
