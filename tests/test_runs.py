from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from agency.identity import derive_repo_identity
from agency.models import AgencyError
from agency.runs import _validate_name, create_run, list_runs, resolve_ref
from conftest import fail, ok, read_events

ORIGIN = "git@github.com:acme/widgets.git"


def _script_repo(runner, runtime, *, setup_config: dict | None = None) -> None:
    runner.on("git", "rev-parse", "--show-toplevel", result=ok(f"{runtime.cwd}\n"))
    runner.on("git", "remote", "get-url", "origin", result=ok(ORIGIN + "\n"))
    runner.on("git", "show-ref", "--verify", "--quiet", "refs/heads/main", result=ok())

    def add_worktree(call):
        path = Path(call.words[4])
        path.mkdir(parents=True)
        if setup_config is not None:
            (path / "agency.yaml").write_text(yaml.safe_dump(setup_config), encoding="utf-8")
        return ok()

    runner.on("git", "worktree", "add", result=add_worktree)
    runner.on("tmux", "new-session", result=ok())


def _repo_id() -> str:
    return derive_repo_identity(Path("."), ORIGIN).repo_id


@pytest.mark.parametrize("name", ["fix-login", "ab", "a1-b2-c3"])
def test_valid_names(name: str) -> None:
    assert _validate_name(name) == name


@pytest.mark.parametrize("name", ["A", "x", "bad_name", "1abc", "trailing-", "double--dash", "a" * 41])
def test_invalid_names(name: str) -> None:
    with pytest.raises(AgencyError) as excinfo:
        _validate_name(name)
    assert excinfo.value.code == "E_INVALID_NAME"


def test_create_run_sets_up_worktree_meta_and_session(runtime, runner) -> None:
    _script_repo(runner, runtime)

    meta = create_run(runtime, name="fix-login", title="Fix login", detached=True)

    run_id = meta["run_id"]
    assert meta["repo_id"] == _repo_id()
    assert meta["branch"] == f"agency/fix-login-{run_id[-6:]}"
    assert meta["runner_cmd"] == "claude"
    worktree = Path(meta["worktree_path"])
    assert (worktree / ".agency" / "report.md").read_text(encoding="utf-8").startswith("# Fix login\n")
    assert (worktree / ".agency" / "out").is_dir()

    add = next(words for words in runner.commands("git") if words[:2] == ["worktree", "add"])
    assert add == ["worktree", "add", "-b", meta["branch"], str(worktree), "main"]
    new_session = next(words for words in runner.commands("tmux") if words[:1] == ["new-session"])
    assert new_session[-2:] == ["--", "claude"]
    assert runner.interactive == []

    assert runtime.stdout.getvalue().splitlines() == [
        f"run_id: {run_id}",
        "name: fix-login",
        f"branch: {meta['branch']}",
        f"worktree: {worktree}",
        f"tmux: agency_{run_id}",
    ]
    names = [event["event"] for event in read_events(runtime, meta)]
    assert names == ["run_started", "worktree_created", "setup_finished", "tmux_session_created", "run_finished"]
    assert runtime.store.read_meta(meta["repo_id"], run_id)["name"] == "fix-login"
    assert runtime.store.repo_record_path(meta["repo_id"]).exists()


def test_create_run_uses_configured_runner(runtime, runner) -> None:
    runtime.config_dir.mkdir(parents=True)
    (runtime.config_dir / "config.yaml").write_text(
        yaml.safe_dump({"defaults": {"runner": "mine"}, "runners": {"mine": "my-agent --fast"}}),
        encoding="utf-8",
    )
    _script_repo(runner, runtime)

    meta = create_run(runtime, name="fix-login", detached=True)

    assert meta["runner"] == "mine"
    new_session = next(words for words in runner.commands("tmux") if words[:1] == ["new-session"])
    assert new_session[-3:] == ["--", "my-agent", "--fast"]


def test_missing_parent_branch_fails_before_worktree(runtime, runner) -> None:
    _script_repo(runner, runtime)
    runner.on("git", "show-ref", "--verify", "--quiet", "refs/heads/develop", result=fail(1, ""))

    with pytest.raises(AgencyError) as excinfo:
        create_run(runtime, name="fix-login", parent="develop", detached=True)

    assert excinfo.value.code == "E_PARENT_NOT_FOUND"
    assert not any(words[:2] == ["worktree", "add"] for words in runner.commands("git"))


def test_locked_repo_writes_nothing(runtime, runner) -> None:
    _script_repo(runner, runtime)
    held = runtime.repo_lock().acquire(_repo_id(), "merge")
    try:
        with pytest.raises(AgencyError) as excinfo:
            create_run(runtime, name="fix-login", detached=True)
    finally:
        held.release()

    assert excinfo.value.code == "E_REPO_LOCKED"
    assert not runtime.store.repo_record_path(_repo_id()).exists()
    assert not any(words[:2] == ["worktree", "add"] for words in runner.commands("git"))


def test_duplicate_active_name_is_rejected(runtime, runner, seed_run) -> None:
    seed_run(repo_id=_repo_id(), name="fix-login")
    _script_repo(runner, runtime)

    with pytest.raises(AgencyError) as excinfo:
        create_run(runtime, name="fix-login", detached=True)

    assert excinfo.value.code == "E_NAME_EXISTS"


def test_outside_a_repository(runtime, runner) -> None:
    runner.on("git", "rev-parse", "--show-toplevel", result=fail(128, "not a git repository"))

    with pytest.raises(AgencyError) as excinfo:
        create_run(runtime, name="fix-login", detached=True)

    assert excinfo.value.code == "E_NO_REPO"


def test_failed_setup_flags_run_and_skips_session(runtime, runner) -> None:
    _script_repo(runner, runtime, setup_config={"scripts": {"setup": "./scripts/setup.sh"}})
    runner.on("sh", "-lc", result=fail(4, ""))

    with pytest.raises(AgencyError) as excinfo:
        create_run(runtime, name="fix-login", detached=True)

    assert excinfo.value.code == "E_SCRIPT_FAILED"
    assert excinfo.value.message == "setup script exit 4"
    assert excinfo.value.hints[-1].startswith("fix the worktree, then: agency resume ")
    assert runner.commands("tmux") == []

    records = runtime.store.scan_repo_runs(_repo_id())
    assert len(records) == 1
    meta = runtime.store.read_meta(records[0].repo_id, records[0].run_id)
    assert meta["flags"]["needs_attention_reason"] == "setup_failed"
    failed = [event for event in read_events(runtime, meta) if event["event"] == "run_failed"]
    assert failed[0]["data"]["step"] == "setup"
    assert not runtime.store.lock_path(meta["repo_id"]).exists()


def test_failed_worktree_add_leaves_no_run(runtime, runner) -> None:
    _script_repo(runner, runtime)
    runner.on("git", "worktree", "add", result=fail(128, "fatal: a branch named 'x' already exists"))

    with pytest.raises(AgencyError) as excinfo:
        create_run(runtime, name="fix-login", detached=True)

    assert excinfo.value.code == "E_WORKTREE_CREATE_FAILED"
    assert runtime.store.scan_repo_runs(_repo_id()) == []


def test_list_runs_shows_status_and_pr(runtime, runner, seed_run) -> None:
    runner.on("git", "rev-parse", "--show-toplevel", result=fail(128, "not a git repository"))
    seed_run("20260101T000000Z_aaaaaa", name="alpha", pr_number=12)
    seed_run(
        "20260102T000000Z_bbbbbb",
        name="beta",
        flags={"needs_attention": True, "needs_attention_reason": "stopped", "abandoned": False},
    )
    seed_run("20260103T000000Z_cccccc", name="gamma", archive={"archived_at": "2026-01-04T00:00:00Z"})

    list_runs(runtime)

    assert runtime.stdout.getvalue().splitlines() == [
        "20260101T000000Z_aaaaaa\talpha\tactive\t#12\trepo0000000000aa",
        "20260102T000000Z_bbbbbb\tbeta\tneeds attention (stopped)\t-\trepo0000000000aa",
    ]

    runtime.stdout.truncate(0)
    runtime.stdout.seek(0)
    list_runs(runtime, all_repos=True, include_archived=True)
    assert runtime.stdout.getvalue().splitlines()[-1] == "20260103T000000Z_cccccc\tgamma\tarchived\t-\trepo0000000000aa"


def test_list_runs_scopes_to_current_repo(runtime, runner, seed_run) -> None:
    _script_repo(runner, runtime)
    seed_run("20260101T000000Z_aaaaaa", name="alpha")

    list_runs(runtime)

    assert runtime.stdout.getvalue() == "no runs\n"


def test_resolve_ref_prints_run_id(runtime, seed_run) -> None:
    seed_run("20260101T000000Z_aaaaaa", name="alpha")

    record = resolve_ref(runtime, "20260101T000000Z_a")

    assert record.name == "alpha"
    assert runtime.stdout.getvalue() == "20260101T000000Z_aaaaaa\n"
