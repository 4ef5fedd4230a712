"""GitHub CLI (``gh``) client and the pull-request resolution protocol."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from agency.constants import (
    E_GH_NOT_AUTHENTICATED,
    E_GH_NOT_INSTALLED,
    E_GH_PR_CREATE_FAILED,
    E_GH_PR_EDIT_FAILED,
    E_GH_PR_MERGE_FAILED,
    E_GH_PR_VIEW_FAILED,
    E_PR_DRAFT,
    E_PR_MERGEABILITY_UNKNOWN,
    E_PR_MISMATCH,
    E_PR_NOT_MERGEABLE,
    E_PR_NOT_OPEN,
    MERGE_CONFIRM_RETRY_DELAYS,
    MERGEABILITY_RETRY_DELAYS,
    PR_LIST_FIELDS,
    PR_VIEW_FIELDS,
    PR_VIEW_RETRY_DELAYS,
    STDERR_TAIL_LIMIT,
)
from agency.models import AgencyError, PRView, ProcessResult
from agency.retry import Attempt, RetryableError, _retry
from agency.validators import _schema_errors
from agency.utils import _tail

if TYPE_CHECKING:
    from agency.runtime import Runtime

_MERGEABLE_VALUES = {"", "MERGEABLE", "CONFLICTING", "UNKNOWN"}


class PRLookupError(Exception):
    """One failed PR query.

    ``kind`` is ``"failed"`` (the gh call failed, worth retrying),
    ``"not_found"`` (gh answered: no such PR) or ``"schema"`` (gh answered
    with a payload we cannot trust).
    """

    def __init__(self, message: str, *, kind: str = "failed", exit_code: int = 0, stderr: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Invocation helpers
# ---------------------------------------------------------------------------


def _run_gh(runtime: Runtime, cwd: Path, args: list[str]) -> ProcessResult:
    return runtime.runner.run_remote("gh", args, cwd=cwd)


def _gh_stderr_hints(stderr: str) -> tuple[str, ...]:
    lowered = stderr.lower()
    if "gh auth login" in lowered or "not logged" in lowered or "authentication" in lowered:
        return ("run: gh auth login",)
    if "rate limit" in lowered:
        return ("GitHub API rate limit hit; wait and retry",)
    if "could not resolve to a repository" in lowered:
        return ("check that origin points at an existing GitHub repository",)
    return ()


def _gh_failure(code: str, message: str, result: ProcessResult, **details: Any) -> AgencyError:
    stderr = _tail(result.stderr, STDERR_TAIL_LIMIT)
    text = f"{message}: {stderr}" if stderr else message
    return AgencyError(
        code,
        text,
        details={"exit_code": result.exit_code, "stderr": stderr, **details},
        hints=_gh_stderr_hints(result.stderr),
    )


def _pr_view_hint(owner_repo: str, branch: str, pr_number: int = 0) -> str:
    if pr_number and owner_repo:
        return f"inspect with: gh pr view {pr_number} -R {owner_repo}"
    if owner_repo:
        return f"inspect with: gh pr list --head {branch} -R {owner_repo} --state all"
    return f"inspect with: gh pr list --head {branch} --state all"


def _check_gh_auth(runtime: Runtime, cwd: Path) -> None:
    if runtime.runner.look_path("gh") is None:
        raise AgencyError(
            E_GH_NOT_INSTALLED,
            "gh CLI not found on PATH; install from https://cli.github.com",
        )
    version = _run_gh(runtime, cwd, ["--version"])
    if version.exit_code == 127:
        raise AgencyError(
            E_GH_NOT_INSTALLED,
            "gh CLI not found on PATH; install from https://cli.github.com",
        )
    status = _run_gh(runtime, cwd, ["auth", "status"])
    if not status.ok:
        raise AgencyError(
            E_GH_NOT_AUTHENTICATED,
            "gh not authenticated; run `gh auth login` first",
            details={"exit_code": status.exit_code, "stderr": _tail(status.stderr, STDERR_TAIL_LIMIT)},
            hints=("run: gh auth login",),
        )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_pr_view(stdout: str) -> PRView:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise PRLookupError(f"failed to parse gh pr view output: {exc}", kind="schema") from exc
    problems = _schema_errors(payload, schema_key="pr_view")
    if problems:
        raise PRLookupError(f"gh pr view returned an invalid payload: {problems[0]}", kind="schema")
    mergeable = str(payload.get("mergeable", "") or "")
    if mergeable not in _MERGEABLE_VALUES:
        raise PRLookupError(f"gh pr view unexpected mergeable value: {mergeable}", kind="schema")
    return PRView(
        number=int(payload["number"]),
        url=str(payload["url"]),
        state=str(payload["state"]),
        is_draft=bool(payload.get("isDraft", False)),
        mergeable=mergeable,
        head_ref_name=str(payload.get("headRefName", "") or ""),
    )


def _pick_listed_pr(payload: list[dict[str, Any]]) -> int:
    open_prs = [item for item in payload if item.get("state") == "OPEN"]
    candidates = open_prs or payload
    return max(int(item["number"]) for item in candidates)


# ---------------------------------------------------------------------------
# Single-attempt queries
# ---------------------------------------------------------------------------


def _view_pr_by_number(runtime: Runtime, cwd: Path, owner_repo: str, number: int) -> PRView:
    result = _run_gh(
        runtime,
        cwd,
        ["pr", "view", str(number), "-R", owner_repo, "--json", PR_VIEW_FIELDS],
    )
    if not result.ok:
        raise PRLookupError(
            f"gh pr view exited {result.exit_code}: {_tail(result.stderr, STDERR_TAIL_LIMIT)}",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )
    return _parse_pr_view(result.stdout)


def _view_pr_by_head(runtime: Runtime, cwd: Path, owner_repo: str, branch: str) -> PRView:
    result = _run_gh(
        runtime,
        cwd,
        ["pr", "list", "--head", branch, "-R", owner_repo, "--state", "all", "--json", PR_LIST_FIELDS],
    )
    if not result.ok:
        raise PRLookupError(
            f"gh pr list exited {result.exit_code}: {_tail(result.stderr, STDERR_TAIL_LIMIT)}",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )
    try:
        payload = json.loads(result.stdout or "[]")
    except json.JSONDecodeError as exc:
        raise PRLookupError(f"failed to parse gh pr list output: {exc}", kind="schema") from exc
    problems = _schema_errors(payload, schema_key="pr_list")
    if problems:
        raise PRLookupError(f"gh pr list returned an invalid payload: {problems[0]}", kind="schema")
    if not payload:
        raise PRLookupError(f"no PR found for head {branch}", kind="not_found")
    return _view_pr_by_number(runtime, cwd, owner_repo, _pick_listed_pr(payload))


# ---------------------------------------------------------------------------
# Resolution protocol
# ---------------------------------------------------------------------------


def _query_with_retry(
    runtime: Runtime,
    query: Callable[[], PRView],
    *,
    retry_not_found: bool,
    on_attempt: Callable[[Attempt, PRLookupError | None], None] | None,
) -> PRView:
    def attempt(current: Attempt) -> PRView:
        try:
            view = query()
        except PRLookupError as exc:
            if on_attempt is not None:
                on_attempt(current, exc)
            if exc.kind == "failed" or (exc.kind == "not_found" and retry_not_found):
                raise RetryableError(exc) from exc
            raise
        if on_attempt is not None:
            on_attempt(current, None)
        return view

    return _retry(
        PR_VIEW_RETRY_DELAYS,
        attempt,
        sleeper=runtime.sleeper,
        jitter=runtime.jitter,
        deadline=runtime.deadline,
    )


def _resolve_pr(
    runtime: Runtime,
    *,
    cwd: Path,
    owner_repo: str,
    branch: str,
    pr_number: int = 0,
    on_attempt: Callable[[Attempt, PRLookupError | None], None] | None = None,
) -> PRView | None:
    """Find the run's PR by stored number, falling back to its head branch.

    Returns None when gh definitively reports no PR for the branch.
    """
    if pr_number:
        try:
            return _query_with_retry(
                runtime,
                lambda: _view_pr_by_number(runtime, cwd, owner_repo, pr_number),
                retry_not_found=False,
                on_attempt=on_attempt,
            )
        except PRLookupError as exc:
            runtime.warn(f"PR #{pr_number} lookup failed ({exc}); falling back to head branch {branch}")
    try:
        return _query_with_retry(
            runtime,
            lambda: _view_pr_by_head(runtime, cwd, owner_repo, branch),
            retry_not_found=False,
            on_attempt=on_attempt,
        )
    except PRLookupError as exc:
        if exc.kind == "not_found":
            return None
        raise AgencyError(
            E_GH_PR_VIEW_FAILED,
            f"gh pr view failed or returned invalid schema: {exc}",
            details={"branch": branch, "exit_code": exc.exit_code},
            hints=(_pr_view_hint(owner_repo, branch), *_gh_stderr_hints(exc.stderr)),
        ) from exc


def _create_pr(
    runtime: Runtime,
    *,
    cwd: Path,
    owner_repo: str,
    base: str,
    branch: str,
    title: str,
    body_file: Path | None,
    body: str = "",
) -> PRView:
    """Create a PR, then find it by branch rather than trusting gh's output."""
    args = ["pr", "create", "-R", owner_repo, "--base", base, "--head", branch, "--title", title]
    if body_file is not None:
        args.extend(["--body-file", str(body_file)])
    else:
        args.extend(["--body", body])
    result = _run_gh(runtime, cwd, args)
    if not result.ok:
        raise _gh_failure(E_GH_PR_CREATE_FAILED, "gh pr create failed", result).with_hint(
            _pr_view_hint(owner_repo, branch)
        )
    try:
        view = _query_with_retry(
            runtime,
            lambda: _view_pr_by_head(runtime, cwd, owner_repo, branch),
            retry_not_found=True,
            on_attempt=None,
        )
    except PRLookupError as exc:
        raise AgencyError(
            E_GH_PR_VIEW_FAILED,
            "failed to view PR after create (retries exhausted)",
            details={"branch": branch, "last_error": str(exc)},
            hints=(_pr_view_hint(owner_repo, branch),),
        ) from exc
    if view.state != "OPEN":
        raise AgencyError(
            E_PR_NOT_OPEN,
            f"PR #{view.number} was created but state is {view.state} (expected OPEN)",
            details={"pr_number": view.number, "state": view.state},
        )
    return view


def _edit_pr_body(runtime: Runtime, *, cwd: Path, owner_repo: str, number: int, body_file: Path) -> None:
    result = _run_gh(
        runtime,
        cwd,
        ["pr", "edit", str(number), "-R", owner_repo, "--body-file", str(body_file)],
    )
    if not result.ok:
        raise _gh_failure(E_GH_PR_EDIT_FAILED, "gh pr edit failed", result, pr_number=number)


def _validate_pr_state(pr: PRView, expected_branch: str) -> bool:
    """Return True when the PR is already merged; raise when it cannot be merged."""
    if pr.state == "MERGED":
        return True
    if pr.state == "CLOSED":
        raise AgencyError(
            E_PR_NOT_OPEN,
            f"PR #{pr.number} is CLOSED (not merged)",
            details={"pr_number": pr.number, "state": pr.state, "step": "pr_state_check"},
        )
    if pr.is_draft:
        raise AgencyError(
            E_PR_DRAFT,
            f"PR #{pr.number} is a draft",
            details={"pr_number": pr.number, "step": "pr_draft_check"},
            hints=(f"mark it ready: gh pr ready {pr.number}",),
        )
    if pr.head_ref_name != expected_branch:
        raise AgencyError(
            E_PR_MISMATCH,
            f"PR #{pr.number} head branch {pr.head_ref_name!r} does not match expected branch {expected_branch!r}",
            details={
                "pr_number": pr.number,
                "expected_branch": expected_branch,
                "pr_head_branch": pr.head_ref_name,
                "step": "pr_branch_check",
            },
            hints=("repair the PR or meta.json and retry",),
        )
    return False


def _check_mergeability(runtime: Runtime, *, cwd: Path, owner_repo: str, number: int) -> None:
    def attempt(_current: Attempt) -> None:
        result = _run_gh(runtime, cwd, ["pr", "view", str(number), "-R", owner_repo, "--json", "mergeable"])
        if not result.ok:
            raise _gh_failure(E_GH_PR_VIEW_FAILED, "gh pr view failed during mergeability check", result)
        try:
            payload = json.loads(result.stdout)
            mergeable = str(payload.get("mergeable", "") or "")
        except (json.JSONDecodeError, AttributeError) as exc:
            raise AgencyError(E_GH_PR_VIEW_FAILED, f"failed to parse mergeability response: {exc}") from exc
        if mergeable == "MERGEABLE":
            return None
        if mergeable == "CONFLICTING":
            raise AgencyError(
                E_PR_NOT_MERGEABLE,
                f"PR #{number} has conflicts and cannot be merged",
                details={"pr_number": number, "mergeable": mergeable},
            )
        if mergeable == "UNKNOWN":
            raise RetryableError(
                AgencyError(
                    E_PR_MERGEABILITY_UNKNOWN,
                    f"PR #{number} mergeability is UNKNOWN after retries",
                    details={"pr_number": number},
                    hints=("wait for GitHub to compute mergeability and retry",),
                )
            )
        raise AgencyError(
            E_GH_PR_VIEW_FAILED,
            f"unexpected mergeable value: {mergeable}",
            details={"mergeable": mergeable},
        )

    _retry(
        MERGEABILITY_RETRY_DELAYS,
        attempt,
        sleeper=runtime.sleeper,
        jitter=runtime.jitter,
        deadline=runtime.deadline,
    )


def _merge_pr(
    runtime: Runtime,
    *,
    cwd: Path,
    owner_repo: str,
    number: int,
    strategy: str,
    delete_branch: bool,
    log_path: Path,
) -> None:
    args = ["pr", "merge", str(number), "-R", owner_repo, f"--{strategy}"]
    if delete_branch:
        args.append("--delete-branch")
    result = _run_gh(runtime, cwd, args)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"$ gh {' '.join(args)}\n")
        handle.write(f"exit_code: {result.exit_code}\n")
        if result.stdout:
            handle.write(f"--- stdout ---\n{result.stdout}\n")
        if result.stderr:
            handle.write(f"--- stderr ---\n{result.stderr}\n")
    if not result.ok:
        raise _gh_failure(
            E_GH_PR_MERGE_FAILED,
            "gh pr merge failed",
            result,
            pr_number=number,
            log_path=str(log_path),
        )


def _confirm_pr_merged(runtime: Runtime, *, cwd: Path, owner_repo: str, number: int) -> bool:
    def attempt(_current: Attempt) -> bool:
        try:
            view = _view_pr_by_number(runtime, cwd, owner_repo, number)
        except PRLookupError as exc:
            raise RetryableError(exc) from exc
        if view.state != "MERGED":
            raise RetryableError(PRLookupError(f"PR #{number} state is {view.state}", kind="not_merged"))
        return True

    try:
        return _retry(
            MERGE_CONFIRM_RETRY_DELAYS,
            attempt,
            sleeper=runtime.sleeper,
            jitter=runtime.jitter,
            deadline=runtime.deadline,
        )
    except PRLookupError:
        return False
