"""Process executor: the single seam for git, gh, tmux and user scripts."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Mapping, Sequence

from agency.clock import Deadline
from agency.constants import E_DEADLINE_EXCEEDED, NON_INTERACTIVE_ENV
from agency.models import AgencyError, ProcessResult


class ProcessTimeout(Exception):
    """Raised when a command outlives its own timeout (not the deadline)."""

    def __init__(self, program: str, timeout: float, output: str = "") -> None:
        super().__init__(f"{program} timed out after {timeout:g}s")
        self.timeout = timeout
        self.output = output


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class CommandRunner:
    """Run external programs with captured output.

    A program that cannot be started yields exit code 127 instead of an
    exception, matching how callers treat "tool missing" as a failed call.
    """

    def __init__(self, *, deadline: Deadline | None = None) -> None:
        self.deadline = deadline

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        combine_output: bool = False,
    ) -> ProcessResult:
        command = [program, *args]
        effective_timeout = timeout
        deadline_bound = False
        if self.deadline is not None:
            effective_timeout = self.deadline.cap(timeout, action=program)
            deadline_bound = timeout is None or effective_timeout < float(timeout)
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        try:
            proc = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env,
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if combine_output else subprocess.PIPE,
                timeout=effective_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            return ProcessResult("", f"{program} not found: {exc}", 127)
        except subprocess.TimeoutExpired as exc:
            if deadline_bound:
                raise AgencyError(
                    E_DEADLINE_EXCEEDED,
                    f"deadline exceeded while running {program}",
                ) from exc
            raise ProcessTimeout(program, float(timeout or 0), _decode(exc.stdout)) from exc
        except OSError as exc:
            return ProcessResult("", str(exc), 126)
        return ProcessResult(proc.stdout or "", proc.stderr or "", proc.returncode)

    def run_remote(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        """Run a tool that may talk to a remote, with prompts disabled."""
        overlay = dict(NON_INTERACTIVE_ENV)
        if env:
            overlay.update(env)
        return self.run(program, args, cwd=cwd, env=overlay, timeout=timeout)

    def look_path(self, name: str) -> str | None:
        return shutil.which(name)

    def run_interactive(self, program: str, args: Sequence[str]) -> int:
        """Run a program attached to the caller's terminal (tmux attach)."""
        try:
            return subprocess.run([program, *args], check=False).returncode
        except FileNotFoundError:
            return 127
