"""Repository-scoped, non-blocking, file-backed mutual exclusion."""

from __future__ import annotations

import json
import os
import socket
import tempfile
import uuid
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from agency.constants import E_INTERNAL, E_REPO_LOCKED
from agency.models import AgencyError, SideEffect
from agency.utils import _parse_utc, _utc_now


# ---------------------------------------------------------------------------
# Lock file payloads
# ---------------------------------------------------------------------------


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    if not lock_path.exists():
        return {}
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    """Create ``lock_path`` with its full payload, or raise FileExistsError.

    The payload is written to a temp file first and hard-linked into place,
    so no reader ever observes an existing but empty lock file.
    """
    rendered = json.dumps(payload, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{lock_path.name}.", suffix=".tmp", dir=str(lock_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        os.link(tmp_name, lock_path)
    finally:
        with suppress(OSError):
            os.unlink(tmp_name)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _holder_alive(payload: dict[str, Any]) -> bool:
    if not payload:
        return False
    if str(payload.get("host", "")) != socket.gethostname():
        # Liveness of a foreign host's pid cannot be probed.
        return True
    try:
        pid = int(payload.get("pid", -1))
    except (TypeError, ValueError):
        return False
    return _pid_alive(pid)


def _lock_age_seconds(payload: dict[str, Any], *, now: datetime) -> float | None:
    started = _parse_utc(str(payload.get("started_at", "")))
    if started is None:
        return None
    return max(0.0, (now - started).total_seconds())


def _describe_holder(payload: dict[str, Any]) -> str:
    return (
        f"pid={payload.get('pid', '<unknown>')}, host={payload.get('host', '<unknown>')}, "
        f"command={payload.get('label', '<unknown>')}, started_at={payload.get('started_at', '<unknown>')}"
    )


# ---------------------------------------------------------------------------
# Acquire / release
# ---------------------------------------------------------------------------


class LockHandle:
    """Held lock; ``release`` is idempotent and never raises."""

    def __init__(
        self,
        lock_path: Path,
        *,
        owner_uuid: str,
        label: str,
        on_side_effect: Callable[[SideEffect], SideEffect],
    ) -> None:
        self.lock_path = lock_path
        self.owner_uuid = owner_uuid
        self.label = label
        self._on_side_effect = on_side_effect
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> SideEffect:
        if self._released:
            return SideEffect(ok=True, action="release lock")
        self._released = True
        try:
            payload = _read_lock_payload(self.lock_path)
            if payload and payload.get("owner_uuid") != self.owner_uuid:
                effect = SideEffect(
                    ok=False,
                    action="release lock",
                    detail=f"{self.lock_path} is now held by another owner ({_describe_holder(payload)})",
                )
                return self._on_side_effect(effect)
            self.lock_path.unlink(missing_ok=True)
        except OSError as exc:
            return self._on_side_effect(
                SideEffect(ok=False, action="release lock", detail=f"{self.lock_path}: {exc}")
            )
        return SideEffect(ok=True, action="release lock")

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()


class RepoLock:
    def __init__(
        self,
        lock_path_for: Callable[[str], Path],
        *,
        on_side_effect: Callable[[SideEffect], SideEffect] = lambda effect: effect,
        log: Callable[[str], None] = lambda message: None,
    ) -> None:
        self._lock_path_for = lock_path_for
        self._on_side_effect = on_side_effect
        self._log = log

    def acquire(self, repo_id: str, label: str) -> LockHandle:
        lock_path = self._lock_path_for(repo_id)
        owner_uuid = uuid.uuid4().hex
        payload: dict[str, Any] = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "owner_uuid": owner_uuid,
            "label": label,
            "repo_id": repo_id,
            "started_at": _utc_now(),
        }
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise AgencyError(E_INTERNAL, f"failed to create lock directory: {exc}") from exc

        for _ in range(3):
            try:
                _write_lock_payload_exclusive(lock_path, payload)
                return LockHandle(
                    lock_path,
                    owner_uuid=owner_uuid,
                    label=label,
                    on_side_effect=self._on_side_effect,
                )
            except FileExistsError:
                existing = _read_lock_payload(lock_path)
                if _holder_alive(existing):
                    raise AgencyError(
                        E_REPO_LOCKED,
                        f"repo is locked by another agency process ({_describe_holder(existing)})",
                        details={
                            "repo_id": repo_id,
                            "holder_label": str(existing.get("label", "")),
                            "holder_pid": str(existing.get("pid", "")),
                            "lock_path": str(lock_path),
                        },
                        hints=("wait for the other command to finish, or run: agency lock break",),
                    ) from None
                self._replace_stale(lock_path, existing, owner_uuid)
                continue
            except OSError as exc:
                raise AgencyError(
                    E_INTERNAL,
                    f"failed to acquire lock at {lock_path}: {exc}",
                    details={"lock_path": str(lock_path)},
                ) from exc
        raise AgencyError(
            E_REPO_LOCKED,
            f"failed to acquire lock at {lock_path} after retries",
            details={"repo_id": repo_id, "lock_path": str(lock_path)},
        )

    def _replace_stale(self, lock_path: Path, stale: dict[str, Any], owner_uuid: str) -> None:
        stale_path = lock_path.with_name(f"{lock_path.name}.stale.{owner_uuid[:8]}")
        try:
            os.replace(lock_path, stale_path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise AgencyError(E_INTERNAL, f"failed to replace stale lock at {lock_path}: {exc}") from exc
        moved = _read_lock_payload(stale_path)
        if moved.get("owner_uuid") != stale.get("owner_uuid") and _holder_alive(moved):
            # Another process replaced the stale lock first; give theirs back.
            with suppress(OSError):
                os.link(stale_path, lock_path)
        self._log(f"replaced stale lock at {lock_path}: {_describe_holder(stale)}")
        with suppress(OSError):
            stale_path.unlink()


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def _inspect_lock(lock_path: Path) -> dict[str, Any] | None:
    """Return lock payload with computed age and liveness, or None if no lock exists."""
    if not lock_path.exists():
        return None
    payload = _read_lock_payload(lock_path)
    result = dict(payload)
    result["age_seconds"] = _lock_age_seconds(payload, now=datetime.now(timezone.utc))
    result["alive"] = _holder_alive(payload)
    return result


def _force_break_lock(lock_path: Path, *, reason: str) -> str:
    """Forcibly remove a lock file and return an audit message."""
    if not lock_path.exists():
        return "no lock to break"
    payload = _read_lock_payload(lock_path)
    lock_path.unlink(missing_ok=True)
    return f"lock broken: {_describe_holder(payload)}, reason={reason}"
