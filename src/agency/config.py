from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml

from agency.constants import (
    BUILTIN_RUNNERS,
    DEFAULT_EDITOR,
    DEFAULT_PARENT_BRANCH,
    DEFAULT_RUNNER,
    DEFAULT_SCRIPT_TIMEOUTS,
    E_INVALID_CONFIG,
    E_USAGE,
    MAX_SCRIPT_TIMEOUT_SECONDS,
    MIN_SCRIPT_TIMEOUT_SECONDS,
    REPO_CONFIG_FILENAMES,
    USER_CONFIG_FILENAME,
)
from agency.models import AgencyError, RepoConfig, ScriptConfig, UserConfig

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------


def _resolve_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    explicit = str(env.get("AGENCY_DATA_DIR", "")).strip()
    if explicit:
        return Path(explicit).expanduser()
    xdg = str(env.get("XDG_DATA_HOME", "")).strip()
    if xdg:
        return Path(xdg).expanduser() / "agency"
    return Path.home() / ".local" / "share" / "agency"


def _resolve_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    explicit = str(env.get("AGENCY_CONFIG_DIR", "")).strip()
    if explicit:
        return Path(explicit).expanduser()
    xdg = str(env.get("XDG_CONFIG_HOME", "")).strip()
    if xdg:
        return Path(xdg).expanduser() / "agency"
    return Path.home() / ".config" / "agency"


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


def _parse_duration(value: Any) -> float:
    """Parse ``90``, ``"90s"``, ``"5m"``, ``"1h30m"`` or ``"250ms"`` into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        amount = float(match.group(1))
        unit = match.group(2)
        total += {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}[unit] * amount
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _parse_cli_duration(value: str) -> float:
    try:
        return _parse_duration(value)
    except ValueError as exc:
        raise AgencyError(E_USAGE, str(exc)) from exc


def _clamp_timeout(seconds: float) -> float:
    return min(MAX_SCRIPT_TIMEOUT_SECONDS, max(MIN_SCRIPT_TIMEOUT_SECONDS, seconds))


# ---------------------------------------------------------------------------
# Repository config (agency.yaml / agency.json)
# ---------------------------------------------------------------------------


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise AgencyError(
            E_INVALID_CONFIG,
            f"failed to parse {path.name}",
            details={"path": str(path), "error": str(exc)},
        ) from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise AgencyError(
            E_INVALID_CONFIG,
            f"{path.name} must contain a mapping",
            details={"path": str(path)},
        )
    return loaded


def _find_repo_config(root: Path) -> Path | None:
    for filename in REPO_CONFIG_FILENAMES:
        candidate = root / filename
        if candidate.is_file():
            return candidate
    return None


def _script_config(name: str, raw: Any, *, source: Path | None) -> ScriptConfig:
    default_timeout = DEFAULT_SCRIPT_TIMEOUTS[name]
    if raw is None:
        return ScriptConfig(name=name, path="", timeout_seconds=default_timeout)
    if isinstance(raw, str):
        return ScriptConfig(name=name, path=raw.strip(), timeout_seconds=default_timeout)
    if not isinstance(raw, dict):
        raise AgencyError(
            E_INVALID_CONFIG,
            f"scripts.{name} must be a path or a mapping",
            details={"path": str(source or "")},
        )
    path = str(raw.get("path", "") or "").strip()
    timeout = default_timeout
    if raw.get("timeout") not in (None, ""):
        try:
            timeout = _clamp_timeout(_parse_duration(raw["timeout"]))
        except ValueError as exc:
            raise AgencyError(
                E_INVALID_CONFIG,
                f"scripts.{name}.timeout: {exc}",
                details={"path": str(source or "")},
            ) from exc
    return ScriptConfig(name=name, path=path, timeout_seconds=timeout)


def _load_repo_config(root: Path) -> RepoConfig:
    source = _find_repo_config(root)
    payload = _load_yaml_mapping(source) if source is not None else {}
    scripts_raw = payload.get("scripts", {}) or {}
    if not isinstance(scripts_raw, dict):
        raise AgencyError(
            E_INVALID_CONFIG,
            "scripts must be a mapping",
            details={"path": str(source or "")},
        )
    scripts = {
        name: _script_config(name, scripts_raw.get(name), source=source)
        for name in DEFAULT_SCRIPT_TIMEOUTS
    }
    return RepoConfig(scripts=scripts, source=source)


# ---------------------------------------------------------------------------
# User config
# ---------------------------------------------------------------------------


def _string_map(raw: Any, *, key: str, source: Path) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise AgencyError(
            E_INVALID_CONFIG,
            f"{key} must be a mapping",
            details={"path": str(source)},
        )
    return {str(name): str(value).strip() for name, value in raw.items() if str(value).strip()}


def _load_user_config(config_dir: Path) -> UserConfig:
    path = config_dir / USER_CONFIG_FILENAME
    if not path.is_file():
        return UserConfig(
            runner=DEFAULT_RUNNER,
            editor=DEFAULT_EDITOR,
            parent_branch=DEFAULT_PARENT_BRANCH,
        )
    payload = _load_yaml_mapping(path)
    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise AgencyError(E_INVALID_CONFIG, "defaults must be a mapping", details={"path": str(path)})
    return UserConfig(
        runner=str(defaults.get("runner") or DEFAULT_RUNNER).strip(),
        editor=str(defaults.get("editor") or DEFAULT_EDITOR).strip(),
        parent_branch=str(defaults.get("parent_branch") or DEFAULT_PARENT_BRANCH).strip(),
        runners=_string_map(payload.get("runners"), key="runners", source=path),
        editors=_string_map(payload.get("editors"), key="editors", source=path),
    )


def _resolve_runner_command(user_config: UserConfig, runner: str) -> str:
    name = runner.strip() or user_config.runner
    if name in user_config.runners:
        return user_config.runners[name]
    if name in BUILTIN_RUNNERS:
        return BUILTIN_RUNNERS[name]
    raise AgencyError(
        E_INVALID_CONFIG,
        f"unknown runner: {name}",
        details={"runner": name},
        hints=("add it under `runners:` in the user config",),
    )
