"""Map a user-supplied run reference to exactly one run."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

from agency.constants import E_NAME_EXISTS, E_RUN_BROKEN, E_RUN_ID_AMBIGUOUS, E_RUN_NOT_FOUND
from agency.models import AgencyError, RunRecord

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _sorted_candidates(records: Sequence[RunRecord]) -> list[RunRecord]:
    return sorted(records, key=lambda record: (record.run_id, record.repo_id))


def _not_found(ref: str) -> AgencyError:
    return AgencyError(
        E_RUN_NOT_FOUND,
        f"run not found: {ref}",
        details={"ref": ref},
        hints=("list runs with: agency ls",),
    )


def _ambiguous(ref: str, matches: Sequence[RunRecord]) -> AgencyError:
    candidates = _sorted_candidates(matches)
    return AgencyError(
        E_RUN_ID_AMBIGUOUS,
        f"ambiguous run id {ref!r} matches multiple runs",
        details={
            "ref": ref,
            "candidates": ",".join(candidate.run_id for candidate in candidates),
        },
        hints=tuple(
            f"candidate: {candidate.run_id} (repo {candidate.repo_id}{', name ' + candidate.name if candidate.name else ''})"
            for candidate in candidates
        ),
    )


def _resolve_run_ref(ref: str, runs: Sequence[RunRecord]) -> RunRecord:
    """Resolve by active name, then exact run id, then unique run-id prefix.

    Archived and broken runs never match by name but stay reachable by id.
    """
    needle = ref.strip()
    if not needle:
        raise _not_found(ref)

    by_name = [run for run in runs if run.active and run.name and run.name == needle]
    if len(by_name) == 1:
        return by_name[0]
    if len(by_name) > 1:
        raise _ambiguous(needle, by_name)

    exact = [run for run in runs if run.run_id == needle]
    if len(exact) == 1:
        return exact[0]
    if len(exact) > 1:
        raise _ambiguous(needle, exact)

    prefixed = [run for run in runs if run.run_id.startswith(needle)]
    if len(prefixed) == 1:
        return prefixed[0]
    if len(prefixed) > 1:
        raise _ambiguous(needle, prefixed)
    raise _not_found(needle)


def _check_name_unique(name: str, runs: Sequence[RunRecord], *, repo_id: str) -> None:
    for run in runs:
        if run.repo_id == repo_id and run.active and run.name == name:
            raise AgencyError(
                E_NAME_EXISTS,
                f"an active run named {name!r} already exists",
                details={"name": name, "run_id": run.run_id},
                hints=(f"pick another name, or clean the existing run: agency clean {run.run_id}",),
            )


def _resolve_run(runtime: Runtime, ref: str) -> tuple[RunRecord, dict[str, Any]]:
    """Resolve ``ref`` across every repository and load its metadata."""
    record = _resolve_run_ref(ref, runtime.store.scan_all_runs())
    if record.broken:
        raise AgencyError(
            E_RUN_BROKEN,
            "run exists but meta.json is unreadable or invalid",
            details={"repo_id": record.repo_id, "run_id": record.run_id},
        )
    meta = runtime.store.read_meta(record.repo_id, record.run_id)
    return (record, meta)
