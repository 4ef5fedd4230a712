from __future__ import annotations

import json
from pathlib import Path

import pytest

from agency.events import _append_event, _read_events
from agency.models import AgencyError
from agency.utils import _orchestrator_log_path


def test_events_are_appended_one_json_object_per_line(tmp_path: Path) -> None:
    path = tmp_path / "run" / "events.jsonl"
    assert _append_event(path, repo_id="r", run_id="x", event="push_started", data={"force": False}).ok
    assert _append_event(path, repo_id="r", run_id="x", event="push_finished").ok

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["event"] == "push_started"
    assert first["data"] == {"force": False}
    assert first["schema_version"] == "1.0"
    assert [event["event"] for event in _read_events(path)] == ["push_started", "push_finished"]


def test_torn_trailing_line_is_skipped_and_next_append_starts_fresh(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    _append_event(path, repo_id="r", run_id="x", event="one")
    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"event": "tor')

    _append_event(path, repo_id="r", run_id="x", event="two")

    assert [event["event"] for event in _read_events(path)] == ["one", "two"]


def test_failed_append_is_reported_not_raised(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.mkdir()
    effect = _append_event(path, repo_id="r", run_id="x", event="stop")
    assert not effect.ok
    assert "append event stop" == effect.action


def test_event_log_failures_reach_the_orchestrator_log(runtime, seed_run) -> None:
    meta = seed_run()
    events_path = runtime.store.events_path(meta["repo_id"], meta["run_id"])
    events_path.mkdir(parents=True)

    effect = runtime.events(meta["repo_id"], meta["run_id"]).emit("stop")

    assert not effect.ok
    log_text = _orchestrator_log_path(runtime.data_dir).read_text(encoding="utf-8")
    assert "append event stop failed" in log_text


def test_read_meta_missing_and_broken(runtime, seed_run) -> None:
    with pytest.raises(AgencyError) as excinfo:
        runtime.store.read_meta("nope", "nope")
    assert excinfo.value.code == "E_RUN_NOT_FOUND"

    meta = seed_run()
    path = runtime.store.meta_path(meta["repo_id"], meta["run_id"])
    path.write_text(json.dumps({"run_id": meta["run_id"]}), encoding="utf-8")
    with pytest.raises(AgencyError) as excinfo:
        runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert excinfo.value.code == "E_RUN_BROKEN"


def test_update_meta_preserves_unknown_fields_and_identity(runtime, seed_run) -> None:
    meta = seed_run(custom_field={"kept": True})

    updated = runtime.store.update_meta(meta["repo_id"], meta["run_id"], lambda current: current.update(pr_number=7))

    assert updated["pr_number"] == 7
    assert updated["custom_field"] == {"kept": True}
    on_disk = runtime.store.read_meta(meta["repo_id"], meta["run_id"])
    assert on_disk["custom_field"] == {"kept": True}

    with pytest.raises(AgencyError) as excinfo:
        runtime.store.update_meta(meta["repo_id"], meta["run_id"], lambda current: current.update(run_id="other"))
    assert excinfo.value.code == "E_PERSIST_FAILED"


def test_scan_all_runs_flags_broken_and_archived(runtime, seed_run) -> None:
    seed_run("20260101T000000Z_aaaaaa", name="alpha")
    seed_run("20260102T000000Z_bbbbbb", name="beta", archive={"archived_at": "2026-01-03T00:00:00Z"})
    broken = seed_run("20260103T000000Z_cccccc", name="gamma")
    runtime.store.meta_path(broken["repo_id"], broken["run_id"]).write_text("[]", encoding="utf-8")

    records = {record.run_id: record for record in runtime.store.scan_all_runs()}

    assert records["20260101T000000Z_aaaaaa"].active
    assert records["20260102T000000Z_bbbbbb"].archived
    assert records["20260103T000000Z_cccccc"].broken
    assert records["20260103T000000Z_cccccc"].name == ""
