"""Per-repository data directory: run metadata, logs, and run scans."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

from agency.constants import (
    E_PERSIST_FAILED,
    E_RUN_BROKEN,
    E_RUN_NOT_FOUND,
    SCHEMA_VERSION,
)
from agency.models import AgencyError, RunRecord, _coerce_bool, _coerce_positive_int
from agency.validators import _schema_errors
from agency.utils import _read_json, _utc_now, _write_json


def _is_archived(meta: dict[str, Any]) -> bool:
    archive = meta.get("archive")
    return isinstance(archive, dict) and bool(archive.get("archived_at"))


def _meta_flags(meta: dict[str, Any]) -> dict[str, Any]:
    flags = meta.get("flags")
    if not isinstance(flags, dict):
        flags = {}
        meta["flags"] = flags
    return flags


def _meta_archive(meta: dict[str, Any]) -> dict[str, Any]:
    archive = meta.get("archive")
    if not isinstance(archive, dict):
        archive = {}
        meta["archive"] = archive
    return archive


def _needs_attention(meta: dict[str, Any]) -> bool:
    flags = meta.get("flags")
    return isinstance(flags, dict) and _coerce_bool(flags.get("needs_attention"))


def _pr_number(meta: dict[str, Any]) -> int:
    return _coerce_positive_int(meta.get("pr_number"))


def _new_meta(
    *,
    run_id: str,
    repo_id: str,
    name: str,
    title: str,
    runner: str,
    runner_cmd: str,
    parent_branch: str,
    branch: str,
    worktree_path: Path,
    repo_root: Path,
    tmux_session_name: str,
) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "run_id": run_id,
        "repo_id": repo_id,
        "name": name,
        "title": title,
        "runner": runner,
        "runner_cmd": runner_cmd,
        "parent_branch": parent_branch,
        "branch": branch,
        "worktree_path": str(worktree_path),
        "repo_root": str(repo_root),
        "tmux_session_name": tmux_session_name,
        "created_at": _utc_now(),
        "flags": {"needs_attention": False, "needs_attention_reason": "", "abandoned": False},
        "archive": {},
    }


class Store:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir

    # -- paths ---------------------------------------------------------------

    def repos_dir(self) -> Path:
        return self.data_dir / "repos"

    def repo_dir(self, repo_id: str) -> Path:
        return self.repos_dir() / repo_id

    def repo_record_path(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / "repo.json"

    def lock_path(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / "repo.lock"

    def worktrees_dir(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / "worktrees"

    def worktree_path(self, repo_id: str, run_id: str) -> Path:
        return self.worktrees_dir(repo_id) / run_id

    def run_dir(self, repo_id: str, run_id: str) -> Path:
        return self.repo_dir(repo_id) / "runs" / run_id

    def meta_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / "meta.json"

    def events_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / "events.jsonl"

    def logs_dir(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / "logs"

    def log_path(self, repo_id: str, run_id: str, name: str) -> Path:
        return self.logs_dir(repo_id, run_id) / f"{name}.log"

    def verify_record_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / "verify_record.json"

    # -- metadata ------------------------------------------------------------

    def read_meta(self, repo_id: str, run_id: str) -> dict[str, Any]:
        path = self.meta_path(repo_id, run_id)
        if not path.exists():
            raise AgencyError(
                E_RUN_NOT_FOUND,
                f"run not found: {run_id}",
                details={"repo_id": repo_id, "run_id": run_id},
            )
        try:
            meta = _read_json(path)
        except (OSError, ValueError) as exc:
            raise AgencyError(
                E_RUN_BROKEN,
                "run exists but meta.json is unreadable or invalid",
                details={"repo_id": repo_id, "run_id": run_id, "error": str(exc)},
            ) from exc
        problems = _schema_errors(meta, schema_key="run_meta")
        if problems:
            raise AgencyError(
                E_RUN_BROKEN,
                "run exists but meta.json is unreadable or invalid",
                details={"repo_id": repo_id, "run_id": run_id, "error": problems[0]},
            )
        return meta

    def write_meta(self, meta: dict[str, Any]) -> None:
        _write_json(self.meta_path(str(meta["repo_id"]), str(meta["run_id"])), meta)

    def update_meta(
        self,
        repo_id: str,
        run_id: str,
        mutate: Callable[[dict[str, Any]], None],
    ) -> dict[str, Any]:
        """Read-modify-write one run's metadata; unknown fields are preserved."""
        meta = self.read_meta(repo_id, run_id)
        mutate(meta)
        if meta.get("run_id") != run_id or meta.get("repo_id") != repo_id:
            raise AgencyError(
                E_PERSIST_FAILED,
                "run identity fields are immutable",
                details={"repo_id": repo_id, "run_id": run_id},
            )
        self.write_meta(meta)
        return meta

    def write_repo_record(self, repo_id: str, *, repo_key: str, repo_root: Path, origin_url: str) -> None:
        _write_json(
            self.repo_record_path(repo_id),
            {
                "schema_version": SCHEMA_VERSION,
                "repo_id": repo_id,
                "repo_key": repo_key,
                "repo_root": str(repo_root),
                "origin_url": origin_url,
                "updated_at": _utc_now(),
            },
        )

    # -- scanning ------------------------------------------------------------

    def scan_repo_runs(self, repo_id: str) -> list[RunRecord]:
        runs_dir = self.repo_dir(repo_id) / "runs"
        if not runs_dir.is_dir():
            return []
        records: list[RunRecord] = []
        for run_dir in sorted(runs_dir.iterdir()):
            if not run_dir.is_dir():
                continue
            records.append(self._scan_run(repo_id, run_dir.name))
        return records

    def scan_all_runs(self) -> list[RunRecord]:
        repos_dir = self.repos_dir()
        if not repos_dir.is_dir():
            return []
        records: list[RunRecord] = []
        for repo_dir in sorted(repos_dir.iterdir()):
            if repo_dir.is_dir():
                records.extend(self.scan_repo_runs(repo_dir.name))
        return records

    def _scan_run(self, repo_id: str, run_id: str) -> RunRecord:
        path = self.meta_path(repo_id, run_id)
        try:
            meta = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return RunRecord(repo_id=repo_id, run_id=run_id, broken=True)
        if not isinstance(meta, dict) or _schema_errors(meta, schema_key="run_meta"):
            return RunRecord(repo_id=repo_id, run_id=run_id, broken=True)
        return RunRecord(
            repo_id=repo_id,
            run_id=run_id,
            name=str(meta.get("name", "") or ""),
            archived=_is_archived(meta),
            meta=meta,
        )
