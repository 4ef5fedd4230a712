from __future__ import annotations

import argparse
import sys

from agency.archive import clean_run
from agency.config import _parse_cli_duration
from agency.constants import E_INTERNAL, MERGE_STRATEGIES
from agency.git import _origin_url, _repo_root
from agency.identity import derive_repo_identity
from agency.lock import _force_break_lock, _inspect_lock
from agency.merge import merge_run
from agency.models import AgencyError
from agency.push import push_run
from agency.runs import create_run, list_runs, resolve_ref
from agency.runtime import Runtime
from agency.session import attach_run, kill_run, resume_run, stop_run
from agency.verify import verify_run


def _report_error(runtime: Runtime | None, exc: AgencyError) -> None:
    stream = runtime.stderr if runtime is not None else sys.stderr
    print(str(exc), file=stream)
    for hint in exc.hints:
        print(f"hint: {hint}", file=stream)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace, runtime: Runtime) -> int:
    create_run(
        runtime,
        name=args.name,
        title=args.title,
        runner=args.runner,
        parent=args.parent,
        detached=args.detached,
    )
    return 0


def _cmd_ls(args: argparse.Namespace, runtime: Runtime) -> int:
    list_runs(runtime, all_repos=args.all, include_archived=args.archived)
    return 0


def _cmd_resolve(args: argparse.Namespace, runtime: Runtime) -> int:
    resolve_ref(runtime, args.ref)
    return 0


def _cmd_push(args: argparse.Namespace, runtime: Runtime) -> int:
    push_run(runtime, args.ref, force=args.force)
    return 0


def _cmd_merge(args: argparse.Namespace, runtime: Runtime) -> int:
    merge_run(
        runtime,
        args.ref,
        strategy=args.strategy,
        force=args.force,
        allow_dirty=args.allow_dirty,
        no_delete_branch=args.no_delete_branch,
    )
    return 0


def _cmd_clean(args: argparse.Namespace, runtime: Runtime) -> int:
    clean_run(runtime, args.ref, delete_branch=args.delete_branch)
    return 0


def _cmd_verify(args: argparse.Namespace, runtime: Runtime) -> int:
    timeout = _parse_cli_duration(args.timeout) if args.timeout else None
    verify_run(runtime, args.ref, timeout_seconds=timeout)
    return 0


def _cmd_resume(args: argparse.Namespace, runtime: Runtime) -> int:
    resume_run(runtime, args.ref, detached=args.detached, restart=args.restart, yes=args.yes)
    return 0


def _cmd_attach(args: argparse.Namespace, runtime: Runtime) -> int:
    attach_run(runtime, args.ref)
    return 0


def _cmd_stop(args: argparse.Namespace, runtime: Runtime) -> int:
    stop_run(runtime, args.ref)
    return 0


def _cmd_kill(args: argparse.Namespace, runtime: Runtime) -> int:
    kill_run(runtime, args.ref)
    return 0


def _cmd_lock(args: argparse.Namespace, runtime: Runtime) -> int:
    repo_root = _repo_root(runtime, runtime.cwd)
    repo_id = derive_repo_identity(repo_root, _origin_url(runtime, repo_root)).repo_id
    lock_path = runtime.store.lock_path(repo_id)
    action = args.action

    if action == "status":
        info = _inspect_lock(lock_path)
        if info is None:
            runtime.out("agency lock: no active lock")
            return 0
        runtime.out("agency lock: active" if info.get("alive") else "agency lock: stale")
        for key in ("label", "pid", "host", "owner_uuid", "started_at"):
            runtime.out(f"  {key}: {info.get(key, '<unknown>')}")
        age = info.get("age_seconds")
        if age is not None:
            runtime.out(f"  age: {age:.0f}s")
        return 0

    if action == "break":
        reason = args.reason or "manual break"
        message = _force_break_lock(lock_path, reason=reason)
        runtime.log(f"lock break repo={repo_id}: {message}")
        runtime.out(f"agency lock: {message}")
        return 0

    runtime.err(f"agency lock: unknown action '{action}'")
    return 1


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_ref(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("ref", help="Run name, run id, or unique run id prefix")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agency", description="agency: parallel AI runs in git worktrees")
    parser.add_argument(
        "--deadline",
        default="",
        help="Abort external calls and retry waits after this duration (e.g. 90s, 5m)",
    )
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Create a worktree, branch and tmux session for a new run")
    run.add_argument("--name", required=True, help="Run name (lowercase, hyphenated, 2-40 chars)")
    run.add_argument("--title", default="", help="Human-readable title (used for the PR title)")
    run.add_argument("--runner", default="", help="Runner name from the user config (default: config defaults.runner)")
    run.add_argument("--parent", default="", help="Parent branch (default: config defaults.parent_branch)")
    run.add_argument("--detached", action="store_true", help="Do not attach to the tmux session")
    run.set_defaults(handler=_cmd_run)

    ls = subparsers.add_parser("ls", help="List runs for the current repository")
    ls.add_argument("--all", action="store_true", help="List runs across every repository")
    ls.add_argument("--archived", action="store_true", help="Include archived runs")
    ls.set_defaults(handler=_cmd_ls)

    resolve = subparsers.add_parser("resolve", help="Print the run id a reference resolves to")
    _add_ref(resolve)
    resolve.set_defaults(handler=_cmd_resolve)

    push = subparsers.add_parser("push", help="Push the run branch and create or update its PR")
    _add_ref(push)
    push.add_argument("--force", action="store_true", help="Push even when the report is missing or empty")
    push.set_defaults(handler=_cmd_push)

    merge = subparsers.add_parser("merge", help="Verify, merge the run's PR, and archive the run")
    _add_ref(merge)
    strategy = merge.add_mutually_exclusive_group()
    for name in MERGE_STRATEGIES:
        strategy.add_argument(
            f"--{name}",
            dest="strategy",
            action="store_const",
            const=name,
            help=f"Use gh pr merge --{name}",
        )
    merge.add_argument("--force", action="store_true", help="Continue past a failed verify without prompting")
    merge.add_argument("--allow-dirty", action="store_true", help="Allow uncommitted changes in the worktree")
    merge.add_argument("--no-delete-branch", action="store_true", help="Keep the remote branch after merging")
    merge.set_defaults(handler=_cmd_merge, strategy="squash")

    clean = subparsers.add_parser("clean", help="Archive a run without merging")
    _add_ref(clean)
    clean.add_argument("--delete-branch", action="store_true", help="Also delete the local run branch")
    clean.set_defaults(handler=_cmd_clean)

    verify = subparsers.add_parser("verify", help="Run the repository verify script in the run's worktree")
    _add_ref(verify)
    verify.add_argument("--timeout", default="", help="Override the verify timeout (e.g. 10m)")
    verify.set_defaults(handler=_cmd_verify)

    resume = subparsers.add_parser("resume", help="Attach to the run's session, creating it if missing")
    _add_ref(resume)
    resume.add_argument("--detached", action="store_true", help="Ensure the session exists without attaching")
    resume.add_argument("--restart", action="store_true", help="Kill and recreate the session")
    resume.add_argument("--yes", action="store_true", help="Skip the restart confirmation")
    resume.set_defaults(handler=_cmd_resume)

    attach = subparsers.add_parser("attach", help="Attach to an existing run session")
    _add_ref(attach)
    attach.set_defaults(handler=_cmd_attach)

    stop = subparsers.add_parser("stop", help="Send C-c to the run session")
    _add_ref(stop)
    stop.set_defaults(handler=_cmd_stop)

    kill = subparsers.add_parser("kill", help="Kill the run session")
    _add_ref(kill)
    kill.set_defaults(handler=_cmd_kill)

    # Lock management
    lock = subparsers.add_parser("lock", help="Inspect or break the current repository's lock")
    lock.add_argument(
        "action",
        choices=("status", "break"),
        help="Action: status (show lock info) or break (force remove lock)",
    )
    lock.add_argument(
        "--reason",
        default="manual break",
        help="Reason for breaking the lock (used in audit log)",
    )
    lock.set_defaults(handler=_cmd_lock)
    return parser


def main(argv: list[str] | None = None, *, runtime: Runtime | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    try:
        if runtime is None:
            deadline = _parse_cli_duration(args.deadline) if args.deadline else None
            runtime = Runtime.default(deadline_seconds=deadline)
        return int(handler(args, runtime))
    except AgencyError as exc:
        if runtime is not None:
            runtime.log(f"{args.command} failed: {exc}")
        _report_error(runtime, exc)
        return exc.exit_code
    except KeyboardInterrupt:
        _report_error(runtime, AgencyError(E_INTERNAL, "interrupted"))
        return 130
    except Exception as exc:  # noqa: BLE001
        error = AgencyError(E_INTERNAL, f"unexpected {type(exc).__name__}: {exc}")
        if runtime is not None:
            runtime.log(f"{args.command} failed: {error}")
        _report_error(runtime, error)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
