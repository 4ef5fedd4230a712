"""Git operations used by the run pipelines."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

from agency.constants import (
    E_GIT_FETCH_FAILED,
    E_GIT_PUSH_FAILED,
    E_INTERNAL,
    E_NO_REPO,
    E_PARENT_NOT_FOUND,
    E_WORKTREE_CREATE_FAILED,
    STDERR_TAIL_LIMIT,
)
from agency.models import AgencyError, ProcessResult
from agency.utils import _tail

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _run_git(runtime: Runtime, cwd: Path, args: Sequence[str], *, remote: bool = False) -> ProcessResult:
    command = ["-C", str(cwd), *args]
    if remote:
        return runtime.runner.run_remote("git", command)
    return runtime.runner.run("git", command)


def _git_failure(code: str, message: str, result: ProcessResult, **details: str) -> AgencyError:
    stderr = _tail(result.stderr, STDERR_TAIL_LIMIT)
    text = f"{message}: {stderr}" if stderr else message
    return AgencyError(
        code,
        text,
        details={"exit_code": result.exit_code, "stderr": stderr, **details},
    )


def _repo_root(runtime: Runtime, cwd: Path) -> Path:
    result = _run_git(runtime, cwd, ["rev-parse", "--show-toplevel"])
    if not result.ok or not result.stdout.strip():
        raise AgencyError(
            E_NO_REPO,
            f"not inside a git repository: {cwd}",
            details={"cwd": str(cwd)},
        )
    return Path(result.stdout.strip())


def _origin_url(runtime: Runtime, cwd: Path) -> str:
    result = _run_git(runtime, cwd, ["remote", "get-url", "origin"])
    if not result.ok:
        return ""
    return result.stdout.strip()


def _is_dirty(runtime: Runtime, worktree: Path) -> bool:
    result = _run_git(runtime, worktree, ["status", "--porcelain", "--untracked-files=all"])
    if not result.ok:
        raise _git_failure(E_INTERNAL, "git status failed", result)
    return bool(result.stdout.strip())


def _ref_exists(runtime: Runtime, cwd: Path, ref: str) -> bool:
    result = _run_git(runtime, cwd, ["show-ref", "--verify", "--quiet", ref])
    if result.exit_code == 0:
        return True
    if result.exit_code == 1:
        return False
    raise _git_failure(E_INTERNAL, f"git show-ref {ref} failed", result)


def _resolve_parent_ref(runtime: Runtime, cwd: Path, parent_branch: str) -> str:
    """Prefer the local parent branch and fall back to ``origin/<parent>``."""
    if _ref_exists(runtime, cwd, f"refs/heads/{parent_branch}"):
        return parent_branch
    if _ref_exists(runtime, cwd, f"refs/remotes/origin/{parent_branch}"):
        return f"origin/{parent_branch}"
    raise AgencyError(
        E_PARENT_NOT_FOUND,
        f"parent branch {parent_branch!r} not found locally or on origin",
        details={"parent_branch": parent_branch},
    )


def _commits_ahead(runtime: Runtime, cwd: Path, base: str, branch: str) -> int:
    result = _run_git(runtime, cwd, ["rev-list", "--count", f"{base}..{branch}"])
    if not result.ok:
        raise _git_failure(E_INTERNAL, "git rev-list --count failed", result)
    try:
        return int(result.stdout.strip())
    except ValueError as exc:
        raise AgencyError(
            E_INTERNAL,
            f"failed to parse commit count: {result.stdout.strip()!r}",
        ) from exc


def _rev_parse(runtime: Runtime, cwd: Path, ref: str) -> str | None:
    result = _run_git(runtime, cwd, ["rev-parse", "--verify", "--quiet", ref])
    if not result.ok:
        return None
    sha = result.stdout.strip()
    return sha or None


def _fetch_origin(runtime: Runtime, cwd: Path, refspec: str | None = None) -> None:
    args = ["fetch", "origin"]
    if refspec:
        args.append(refspec)
    result = _run_git(runtime, cwd, args, remote=True)
    if not result.ok:
        raise _git_failure(E_GIT_FETCH_FAILED, "git fetch origin failed", result)


def _push_branch(runtime: Runtime, cwd: Path, branch: str) -> None:
    result = _run_git(runtime, cwd, ["push", "-u", "origin", branch], remote=True)
    if not result.ok:
        raise _git_failure(E_GIT_PUSH_FAILED, "git push failed", result, branch=branch)


def _worktree_add(runtime: Runtime, repo_root: Path, *, branch: str, path: Path, parent: str) -> None:
    result = _run_git(runtime, repo_root, ["worktree", "add", "-b", branch, str(path), parent])
    if not result.ok:
        raise _git_failure(
            E_WORKTREE_CREATE_FAILED,
            "git worktree add failed",
            result,
            worktree_path=str(path),
        )


def _worktree_remove(runtime: Runtime, repo_root: Path, path: Path) -> ProcessResult:
    return _run_git(runtime, repo_root, ["worktree", "remove", "--force", str(path)])


def _delete_branch(runtime: Runtime, repo_root: Path, branch: str) -> ProcessResult:
    return _run_git(runtime, repo_root, ["branch", "-D", branch])
