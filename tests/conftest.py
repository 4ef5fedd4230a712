from __future__ import annotations

import io
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from agency.clock import Jitter, Sleeper
from agency.constants import NON_INTERACTIVE_ENV
from agency.models import ProcessResult
from agency.runtime import Runtime
from agency.store import _new_meta
from agency.tmux import _session_name


@dataclass
class Call:
    program: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None

    @property
    def words(self) -> list[str]:
        """Arguments with a leading ``-C <dir>`` (git) stripped."""
        if self.program == "git" and self.args[:1] == ["-C"]:
            return self.args[2:]
        return self.args


@dataclass
class _Rule:
    program: str
    prefix: tuple[str, ...]
    responses: list[Any]

    def matches(self, call: Call) -> bool:
        return call.program == self.program and tuple(call.words[: len(self.prefix)]) == self.prefix

    def respond(self, call: Call) -> ProcessResult:
        response = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if callable(response):
            return response(call)
        return response


def ok(stdout: str = "") -> ProcessResult:
    return ProcessResult(stdout, "", 0)


def fail(exit_code: int = 1, stderr: str = "boom") -> ProcessResult:
    return ProcessResult("", stderr, exit_code)


def gh_json(payload: Any) -> ProcessResult:
    return ProcessResult(json.dumps(payload), "", 0)


class FakeRunner:
    """Scripted stand-in for CommandRunner; the most recent matching rule wins."""

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.interactive: list[Call] = []
        self.paths: dict[str, str] = {"gh": "/usr/bin/gh", "git": "/usr/bin/git", "tmux": "/usr/bin/tmux"}
        self.interactive_exit = 0
        self._rules: list[_Rule] = []

    def on(self, program: str, *prefix: str, result: Any = None, results: Sequence[Any] = ()) -> None:
        responses = list(results) if results else [result if result is not None else ok()]
        self._rules.append(_Rule(program, tuple(prefix), responses))

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Any = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        combine_output: bool = False,
    ) -> ProcessResult:
        call = Call(program, list(args), dict(env or {}), timeout)
        self.calls.append(call)
        for rule in reversed(self._rules):
            if rule.matches(call):
                return rule.respond(call)
        return ProcessResult("", f"unscripted call: {program} {' '.join(args)}", 1)

    def run_remote(self, program: str, args: Sequence[str], *, cwd: Any = None, env: Any = None, timeout: Any = None):
        overlay = dict(NON_INTERACTIVE_ENV)
        overlay.update(env or {})
        return self.run(program, args, cwd=cwd, env=overlay, timeout=timeout)

    def look_path(self, name: str) -> str | None:
        return self.paths.get(name)

    def run_interactive(self, program: str, args: Sequence[str]) -> int:
        self.interactive.append(Call(program, list(args)))
        return self.interactive_exit

    def commands(self, program: str) -> list[list[str]]:
        return [call.words for call in self.calls if call.program == program]


class ScriptedConsole:
    def __init__(self, *, interactive: bool = True, answers: Sequence[str] = ()) -> None:
        self.interactive = interactive
        self.answers = list(answers)
        self.prompts: list[str] = []

    def is_interactive(self) -> bool:
        return self.interactive

    def prompt(self, message: str) -> str:
        self.prompts.append(message)
        return self.answers.pop(0) if self.answers else ""

    def confirm(self, message: str) -> bool:
        return self.prompt(message).lower() in {"y", "yes"}


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def console() -> ScriptedConsole:
    return ScriptedConsole()


@pytest.fixture
def runtime(tmp_path: Path, runner: FakeRunner, console: ScriptedConsole, sleeps: list[float]) -> Runtime:
    repo = tmp_path / "repo"
    repo.mkdir()
    return Runtime(
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
        cwd=repo,
        runner=runner,  # type: ignore[arg-type]
        sleeper=Sleeper(sleeps.append),
        jitter=Jitter(0.0),
        console=console,  # type: ignore[arg-type]
        stdout=io.StringIO(),
        stderr=io.StringIO(),
    )


@pytest.fixture
def seed_run(runtime: Runtime) -> Callable[..., dict[str, Any]]:
    """Write a run's meta.json (and by default its worktree directory)."""

    def _seed(
        run_id: str = "20260101T000000Z_abc123",
        *,
        repo_id: str = "repo0000000000aa",
        name: str = "fix-login",
        with_worktree: bool = True,
        **overrides: Any,
    ) -> dict[str, Any]:
        store = runtime.store
        worktree = store.worktree_path(repo_id, run_id)
        if with_worktree:
            worktree.mkdir(parents=True, exist_ok=True)
        meta = _new_meta(
            run_id=run_id,
            repo_id=repo_id,
            name=name,
            title="Fix login",
            runner="claude",
            runner_cmd="claude",
            parent_branch="main",
            branch=f"agency/{name}-{run_id[-6:]}",
            worktree_path=worktree,
            repo_root=runtime.cwd,
            tmux_session_name=_session_name(run_id),
        )
        meta.update(overrides)
        store.write_meta(meta)
        return meta

    return _seed


def read_events(runtime: Runtime, meta: dict[str, Any]) -> list[dict[str, Any]]:
    from agency.events import _read_events

    return _read_events(runtime.store.events_path(meta["repo_id"], meta["run_id"]))


@pytest.fixture
def events_of(runtime: Runtime) -> Callable[[dict[str, Any]], list[str]]:
    def _names(meta: dict[str, Any]) -> list[str]:
        return [event["event"] for event in read_events(runtime, meta)]

    return _names
