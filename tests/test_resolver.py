from __future__ import annotations

import pytest

from agency.models import AgencyError, RunRecord
from agency.resolver import _check_name_unique, _resolve_run, _resolve_run_ref


def _runs() -> list[RunRecord]:
    return [
        RunRecord(repo_id="r1", run_id="20260101T000000Z_aaaaaa", name="fix-login"),
        RunRecord(repo_id="r1", run_id="20260101T000000Z_aabbbb", name="docs"),
        RunRecord(repo_id="r2", run_id="20260102T000000Z_cccccc", name="old", archived=True),
        RunRecord(repo_id="r2", run_id="20260103T000000Z_dddddd", broken=True),
    ]


def test_unique_prefix_resolves_to_that_run() -> None:
    record = _resolve_run_ref("20260102", _runs())
    assert record.run_id == "20260102T000000Z_cccccc"


def test_ambiguous_prefix_lists_every_candidate_sorted() -> None:
    with pytest.raises(AgencyError) as excinfo:
        _resolve_run_ref("20260101T000000Z_aa", _runs())

    error = excinfo.value
    assert error.code == "E_RUN_ID_AMBIGUOUS"
    assert error.details["candidates"] == "20260101T000000Z_aaaaaa,20260101T000000Z_aabbbb"
    assert len(error.hints) == 2
    assert error.hints[0].startswith("candidate: 20260101T000000Z_aaaaaa")


def test_name_match_wins_over_prefix_and_input_is_trimmed() -> None:
    record = _resolve_run_ref("  docs  ", _runs())
    assert record.run_id == "20260101T000000Z_aabbbb"


def test_archived_and_broken_runs_are_not_matched_by_name_but_by_id() -> None:
    with pytest.raises(AgencyError) as excinfo:
        _resolve_run_ref("old", _runs())
    assert excinfo.value.code == "E_RUN_NOT_FOUND"
    assert "agency ls" in excinfo.value.hints[0]

    assert _resolve_run_ref("20260102T000000Z_cccccc", _runs()).archived is True
    assert _resolve_run_ref("20260103", _runs()).broken is True


def test_exact_id_beats_longer_ids_sharing_the_prefix() -> None:
    runs = [
        RunRecord(repo_id="r1", run_id="20260101T000000Z_aaaaaa"),
        RunRecord(repo_id="r1", run_id="20260101T000000Z_aaaaaa2"),
    ]
    assert _resolve_run_ref("20260101T000000Z_aaaaaa", runs).run_id == "20260101T000000Z_aaaaaa"


def test_blank_reference_is_not_found() -> None:
    with pytest.raises(AgencyError) as excinfo:
        _resolve_run_ref("   ", _runs())
    assert excinfo.value.code == "E_RUN_NOT_FOUND"


def test_check_name_unique_only_considers_active_runs_in_the_repo() -> None:
    with pytest.raises(AgencyError) as excinfo:
        _check_name_unique("fix-login", _runs(), repo_id="r1")
    assert excinfo.value.code == "E_NAME_EXISTS"

    _check_name_unique("fix-login", _runs(), repo_id="r2")
    _check_name_unique("old", _runs(), repo_id="r2")


def test_resolve_run_rejects_broken_metadata(runtime, seed_run) -> None:
    meta = seed_run()
    meta_path = runtime.store.meta_path(meta["repo_id"], meta["run_id"])
    meta_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(AgencyError) as excinfo:
        _resolve_run(runtime, meta["run_id"])
    assert excinfo.value.code == "E_RUN_BROKEN"


def test_resolve_run_loads_metadata_by_name(runtime, seed_run) -> None:
    meta = seed_run()
    record, loaded = _resolve_run(runtime, "fix-login")
    assert record.run_id == meta["run_id"]
    assert loaded["branch"] == meta["branch"]
