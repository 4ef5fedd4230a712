"""Agency utility functions: timestamps, JSON persistence, and log helpers."""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import uuid
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agency.constants import E_PERSIST_FAILED
from agency.models import AgencyError, SideEffect


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _generate_run_id() -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = uuid.uuid4().hex[:6]
    return f"{timestamp}_{suffix}"


def _short_run_id(run_id: str) -> str:
    _, _, suffix = run_id.rpartition("_")
    return (suffix or run_id)[:6]


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def _atomic_write_text(path: Path, content: str) -> None:
    """Write text via temp file + rename so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    try:
        _atomic_write_text(path, json.dumps(payload, indent=2) + "\n")
    except OSError as exc:
        raise AgencyError(
            E_PERSIST_FAILED,
            f"failed to write {path.name}",
            details={"path": str(path), "error": str(exc)},
        ) from exc


def _read_json(path: Path) -> dict[str, Any]:
    """Read a JSON object; raises ValueError on malformed content."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object in {path}")
    return payload


def _sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _tail(text: str, limit: int) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[-limit:]


# ---------------------------------------------------------------------------
# Orchestrator log
# ---------------------------------------------------------------------------


def _orchestrator_log_path(data_dir: Path) -> Path:
    return data_dir / "logs" / "agency.log"


def _append_log(data_dir: Path, message: str) -> None:
    log_path = _orchestrator_log_path(data_dir)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _record_side_effect(data_dir: Path, effect: SideEffect) -> SideEffect:
    """Log a failed best-effort write to the orchestrator log and pass it on."""
    if effect.ok:
        return effect
    try:
        _append_log(data_dir, f"{effect.action} failed: {effect.detail}")
    except OSError:
        pass
    return effect
