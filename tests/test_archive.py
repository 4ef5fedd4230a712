from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from agency.archive import _archive_run, _delete_stage, clean_run
from agency.models import AgencyError
from agency.store import Store
from conftest import fail, ok


def _no_session(runner) -> None:
    runner.on("tmux", "has-session", result=fail(1, "can't find session"))


def test_archive_is_idempotent(runtime, runner, seed_run, events_of) -> None:
    meta = seed_run()
    _no_session(runner)
    events = runtime.events(meta["repo_id"], meta["run_id"])

    first = _archive_run(runtime, meta, events)
    assert first.success and not first.already_archived
    assert not Path(meta["worktree_path"]).exists()
    recorded = events_of(meta)
    assert recorded == ["archive_started", "archive_finished"]

    second = _archive_run(runtime, meta, events)
    assert second.already_archived
    assert events_of(meta) == recorded

    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["archive"]["archived_at"]
    assert stored["archive"]["delete_ok"] is True


def test_partial_failure_reports_first_stage_and_marks_deleted_run_archived(runtime, runner, seed_run, events_of) -> None:
    meta = seed_run()
    (Path(meta["worktree_path"]) / "agency.yaml").write_text(
        yaml.safe_dump({"scripts": {"archive": "./scripts/archive.sh"}}), encoding="utf-8"
    )
    runner.on("sh", "-lc", result=ok("archived\n"))
    runner.on("tmux", "has-session", result=fail(2, "server exited unexpectedly"))
    events = runtime.events(meta["repo_id"], meta["run_id"])

    outcome = _archive_run(runtime, meta, events)

    assert not outcome.success
    assert outcome.script.ok and outcome.delete.ok
    error = outcome.to_error()
    assert error is not None and error.code == "E_ARCHIVE_FAILED"
    assert error.message.startswith("archive failed: tmux kill failed (tmux has-session failed (exit=2)")

    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["archive"]["tmux_ok"] is False
    assert stored["archive"]["archived_at"]
    assert events_of(meta)[-1] == "archive_failed"
    log = runtime.store.log_path(meta["repo_id"], meta["run_id"], "archive")
    assert "archived" in log.read_text(encoding="utf-8")


def test_live_session_is_killed(runtime, runner, seed_run) -> None:
    meta = seed_run()
    runner.on("tmux", "has-session", result=ok())
    runner.on("tmux", "kill-session", result=ok())

    outcome = _archive_run(runtime, meta, runtime.events(meta["repo_id"], meta["run_id"]))

    assert outcome.success
    assert ["kill-session", "-t", f"={meta['tmux_session_name']}"] in runner.commands("tmux")


def test_delete_stage_refuses_paths_outside_the_worktrees_dir(runtime, seed_run, tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    meta = seed_run(worktree_path=str(outside), repo_root="")

    outcome = _delete_stage(runtime, meta)

    assert not outcome.ok
    assert outcome.reason.startswith("refusing to delete")
    assert outside.is_dir()


def test_clean_archives_and_marks_abandoned(runtime, runner, console, seed_run, events_of) -> None:
    meta = seed_run()
    _no_session(runner)
    runner.on("git", "branch", "-D", result=ok())
    console.answers = ["clean"]

    clean_run(runtime, "fix-login", delete_branch=True)

    assert console.prompts == ["confirm: type 'clean' to proceed: "]
    assert runtime.stdout.getvalue() == f"cleaned: {meta['run_id']}\n"
    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["flags"]["abandoned"] is True
    assert stored["archive"]["archived_at"]
    assert ["branch", "-D", meta["branch"]] in runner.commands("git")
    assert events_of(meta) == ["clean_started", "archive_started", "archive_finished", "clean_finished"]

    clean_run(runtime, meta["run_id"])
    assert runtime.stdout.getvalue().endswith("already archived\n")


def test_clean_branch_delete_failure_only_warns(runtime, runner, console, seed_run) -> None:
    meta = seed_run()
    _no_session(runner)
    runner.on("git", "branch", "-D", result=fail(1, "error: branch not found"))
    console.answers = ["clean"]

    clean_run(runtime, meta["run_id"], delete_branch=True)

    assert f"warning: could not delete branch {meta['branch']}" in runtime.stderr.getvalue()


def test_clean_rejects_wrong_confirmation_and_non_tty(runtime, runner, console, seed_run) -> None:
    meta = seed_run()
    console.answers = ["yes"]

    with pytest.raises(AgencyError) as excinfo:
        clean_run(runtime, meta["run_id"])
    assert excinfo.value.code == "E_ABORTED"
    assert Path(meta["worktree_path"]).is_dir()
    assert not runtime.store.lock_path(meta["repo_id"]).exists()

    console.interactive = False
    with pytest.raises(AgencyError) as excinfo:
        clean_run(runtime, meta["run_id"])
    assert excinfo.value.code == "E_NOT_INTERACTIVE"


def test_clean_surfaces_archive_failure(runtime, runner, console, seed_run) -> None:
    meta = seed_run()
    runner.on("tmux", "has-session", result=fail(2, "no server"))
    console.answers = ["clean"]

    with pytest.raises(AgencyError) as excinfo:
        clean_run(runtime, meta["run_id"])

    assert excinfo.value.code == "E_ARCHIVE_FAILED"
    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["flags"]["abandoned"] is False


def test_retried_clean_after_partial_failure_reports_already_archived(runtime, runner, console, seed_run, events_of) -> None:
    meta = seed_run()
    (Path(meta["worktree_path"]) / "agency.yaml").write_text(
        yaml.safe_dump({"scripts": {"archive": "./scripts/archive.sh"}}), encoding="utf-8"
    )
    runner.on("sh", "-lc", result=fail(5, "archive hook broke"))
    runner.on("tmux", "has-session", result=fail(127, "tmux: not found"))
    console.answers = ["clean"]

    with pytest.raises(AgencyError) as excinfo:
        clean_run(runtime, meta["run_id"])

    assert excinfo.value.code == "E_ARCHIVE_FAILED"
    assert excinfo.value.message.startswith("archive failed: script failed")
    assert not Path(meta["worktree_path"]).exists()
    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["archive"]["archived_at"]
    assert stored["archive"]["script_ok"] is False
    assert stored["archive"]["delete_ok"] is True

    clean_run(runtime, meta["run_id"])
    assert runtime.stdout.getvalue() == "already archived\n"
    assert events_of(meta) == ["clean_started", "archive_started", "archive_failed"]


def test_stage_os_errors_do_not_stop_later_stages(runtime, runner, seed_run, events_of) -> None:
    meta = seed_run()
    (Path(meta["worktree_path"]) / "agency.yaml").write_text(
        yaml.safe_dump({"scripts": {"archive": "./scripts/archive.sh"}}), encoding="utf-8"
    )
    logs_dir = runtime.store.logs_dir(meta["repo_id"], meta["run_id"])
    logs_dir.parent.mkdir(parents=True, exist_ok=True)
    logs_dir.write_text("not a directory\n", encoding="utf-8")
    _no_session(runner)

    outcome = _archive_run(runtime, meta, runtime.events(meta["repo_id"], meta["run_id"]))

    assert not outcome.script.ok
    assert outcome.script.reason.startswith("FileExistsError")
    assert outcome.tmux.ok and outcome.delete.ok
    assert runner.commands("tmux") == [["has-session", "-t", f"={meta['tmux_session_name']}"]]
    assert not Path(meta["worktree_path"]).exists()
    assert events_of(meta)[-1] == "archive_failed"
    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["archive"]["script_ok"] is False


def test_deadline_is_raised_after_every_stage_ran(runtime, runner, seed_run, events_of) -> None:
    meta = seed_run()

    def expire(_call):
        raise AgencyError("E_DEADLINE_EXCEEDED", "deadline exceeded during tmux has-session")

    runner.on("tmux", "has-session", result=expire)

    with pytest.raises(AgencyError) as excinfo:
        _archive_run(runtime, meta, runtime.events(meta["repo_id"], meta["run_id"]))

    assert excinfo.value.code == "E_DEADLINE_EXCEEDED"
    assert not Path(meta["worktree_path"]).exists()
    stored = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert stored["archive"]["tmux_ok"] is False
    assert stored["archive"]["delete_ok"] is True
    assert events_of(meta)[-1] == "archive_failed"


def test_clean_rereads_meta_under_the_lock(runtime, runner, console, seed_run, monkeypatch) -> None:
    meta = seed_run()
    real_read = Store.read_meta

    def archived_by_concurrent_clean(self, repo_id, run_id):
        current = real_read(self, repo_id, run_id)
        if self.lock_path(repo_id).exists():
            current.setdefault("archive", {})["archived_at"] = "2026-01-01T00:00:00Z"
        return current

    monkeypatch.setattr(Store, "read_meta", archived_by_concurrent_clean)

    clean_run(runtime, meta["run_id"])

    assert runtime.stdout.getvalue() == "already archived\n"
    assert console.prompts == []
    assert Path(meta["worktree_path"]).is_dir()
    assert runner.commands("tmux") == []
