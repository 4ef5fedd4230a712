from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from agency.config import (
    _clamp_timeout,
    _load_repo_config,
    _load_user_config,
    _parse_cli_duration,
    _parse_duration,
    _resolve_data_dir,
    _resolve_runner_command,
)
from agency.models import AgencyError


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [(90, 90.0), ("90", 90.0), ("90s", 90.0), ("5m", 300.0), ("1h30m", 5400.0), ("250ms", 0.25)],
)
def test_parse_duration_accepts_units_and_bare_numbers(raw, seconds) -> None:
    assert _parse_duration(raw) == pytest.approx(seconds)


def test_parse_duration_rejects_garbage() -> None:
    for raw in ("", "5x", "m5", "1h junk", True):
        with pytest.raises(ValueError):
            _parse_duration(raw)
    with pytest.raises(AgencyError) as excinfo:
        _parse_cli_duration("soon")
    assert excinfo.value.code == "E_USAGE"
    assert excinfo.value.exit_code == 2


def test_clamp_timeout_bounds() -> None:
    assert _clamp_timeout(5) == 60.0
    assert _clamp_timeout(600) == 600.0
    assert _clamp_timeout(10 * 24 * 3600) == 24 * 3600.0


def test_load_repo_config_reads_yaml_scripts(tmp_path: Path) -> None:
    config = {
        "scripts": {
            "setup": "./scripts/setup.sh",
            "verify": {"path": "./scripts/verify.sh", "timeout": "2m"},
            "archive": {"path": "./scripts/archive.sh", "timeout": "1s"},
        }
    }
    (tmp_path / "agency.yaml").write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")

    loaded = _load_repo_config(tmp_path)

    assert loaded.source == tmp_path / "agency.yaml"
    assert loaded.script("setup").path == "./scripts/setup.sh"
    assert loaded.script("setup").timeout_seconds == 600.0
    assert loaded.script("verify").timeout_seconds == 120.0
    assert loaded.script("archive").timeout_seconds == 60.0


def test_load_repo_config_falls_back_to_json_and_defaults(tmp_path: Path) -> None:
    assert not _load_repo_config(tmp_path).script("verify").configured

    (tmp_path / "agency.json").write_text(json.dumps({"scripts": {"verify": "make test"}}), encoding="utf-8")
    loaded = _load_repo_config(tmp_path)
    assert loaded.script("verify").path == "make test"
    assert loaded.script("verify").timeout_seconds == 1800.0
    assert not loaded.script("archive").configured


def test_malformed_repo_config_is_invalid_config(tmp_path: Path) -> None:
    (tmp_path / "agency.yaml").write_text("scripts: [unclosed\n", encoding="utf-8")
    with pytest.raises(AgencyError) as excinfo:
        _load_repo_config(tmp_path)
    assert excinfo.value.code == "E_INVALID_CONFIG"
    assert excinfo.value.details["path"].endswith("agency.yaml")

    (tmp_path / "agency.yaml").write_text(yaml.safe_dump({"scripts": {"verify": {"timeout": "forever"}}}), encoding="utf-8")
    with pytest.raises(AgencyError) as excinfo:
        _load_repo_config(tmp_path)
    assert excinfo.value.code == "E_INVALID_CONFIG"


def test_user_config_defaults_and_runner_overrides(tmp_path: Path) -> None:
    defaults = _load_user_config(tmp_path)
    assert (defaults.runner, defaults.editor, defaults.parent_branch) == ("claude", "code", "main")
    assert _resolve_runner_command(defaults, "") == "claude"
    assert _resolve_runner_command(defaults, "codex") == "codex"

    payload = {
        "defaults": {"runner": "mine", "parent_branch": "develop"},
        "runners": {"mine": "my-agent --yolo"},
    }
    (tmp_path / "config.yaml").write_text(yaml.safe_dump(payload), encoding="utf-8")
    user = _load_user_config(tmp_path)
    assert user.parent_branch == "develop"
    assert _resolve_runner_command(user, "") == "my-agent --yolo"

    with pytest.raises(AgencyError) as excinfo:
        _resolve_runner_command(user, "unknown-runner")
    assert excinfo.value.code == "E_INVALID_CONFIG"


def test_data_dir_resolution_order(tmp_path: Path) -> None:
    assert _resolve_data_dir({"AGENCY_DATA_DIR": str(tmp_path / "x")}) == tmp_path / "x"
    assert _resolve_data_dir({"XDG_DATA_HOME": str(tmp_path)}) == tmp_path / "agency"
    assert _resolve_data_dir({}) == Path.home() / ".local" / "share" / "agency"
