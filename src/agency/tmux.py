"""tmux session client."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from agency.constants import E_TMUX_FAILED, E_TMUX_NOT_INSTALLED, STDERR_TAIL_LIMIT, TMUX_SESSION_PREFIX
from agency.models import AgencyError, ProcessResult
from agency.utils import _tail

if TYPE_CHECKING:
    from agency.runtime import Runtime


def _session_name(run_id: str) -> str:
    return f"{TMUX_SESSION_PREFIX}{run_id}"


class TmuxClient:
    def __init__(self, runtime: Runtime) -> None:
        self._runtime = runtime

    def _run(self, args: Sequence[str]) -> ProcessResult:
        result = self._runtime.runner.run("tmux", list(args))
        if result.exit_code == 127:
            raise AgencyError(
                E_TMUX_NOT_INSTALLED,
                "tmux not found on PATH",
                hints=("install tmux and retry",),
            )
        return result

    def _failure(self, subcommand: str, result: ProcessResult, session: str) -> AgencyError:
        stderr = _tail(result.stderr, STDERR_TAIL_LIMIT)
        return AgencyError(
            E_TMUX_FAILED,
            f"tmux {subcommand} failed (exit={result.exit_code}): {stderr}",
            details={"session": session, "exit_code": result.exit_code, "stderr": stderr},
        )

    def has_session(self, name: str) -> bool:
        result = self._run(["has-session", "-t", f"={name}"])
        if result.exit_code == 0:
            return True
        if result.exit_code == 1:
            return False
        raise self._failure("has-session", result, name)

    def new_session(self, name: str, cwd: Path, command: Sequence[str]) -> None:
        result = self._run(["new-session", "-d", "-s", name, "-c", str(cwd), "--", *command])
        if not result.ok:
            raise self._failure("new-session", result, name)

    def kill_session(self, name: str) -> None:
        result = self._run(["kill-session", "-t", f"={name}"])
        if not result.ok:
            raise self._failure("kill-session", result, name)

    def send_keys(self, name: str, keys: Sequence[str]) -> None:
        result = self._run(["send-keys", "-t", f"={name}", *keys])
        if not result.ok:
            raise self._failure("send-keys", result, name)

    def attach(self, name: str) -> None:
        exit_code = self._runtime.runner.run_interactive("tmux", ["attach-session", "-t", f"={name}"])
        if exit_code == 127:
            raise AgencyError(E_TMUX_NOT_INSTALLED, "tmux not found on PATH")
        if exit_code != 0:
            raise AgencyError(
                E_TMUX_FAILED,
                f"tmux attach-session failed (exit={exit_code})",
                details={"session": name, "exit_code": exit_code},
            )
