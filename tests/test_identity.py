from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from agency.identity import derive_repo_identity, parse_github_owner_repo, parse_origin_host
from agency.models import AgencyError


@pytest.mark.parametrize(
    ("url", "host"),
    [
        ("git@github.com:o/r.git", "github.com"),
        ("https://gitlab.com/o/r", "gitlab.com"),
        ("ssh://git@github.com/o/r.git", "github.com"),
        ("", ""),
        ("/srv/git/repo.git", ""),
    ],
)
def test_parse_origin_host(url: str, host: str) -> None:
    assert parse_origin_host(url) == host


def test_parse_github_owner_repo_strips_git_suffix() -> None:
    assert parse_github_owner_repo("git@github.com:acme/widgets.git") == "acme/widgets"
    assert parse_github_owner_repo("https://github.com/acme/widgets") == "acme/widgets"


def test_parse_github_owner_repo_rejects_other_hosts_and_shapes() -> None:
    for url in ("https://gitlab.com/acme/widgets", "https://github.com/acme", "https://github.com/a/b/c"):
        with pytest.raises(AgencyError) as excinfo:
            parse_github_owner_repo(url)
        assert excinfo.value.code == "E_GH_REPO_PARSE_FAILED"


def test_repo_identity_prefers_github_key_and_is_stable(tmp_path: Path) -> None:
    github = derive_repo_identity(tmp_path, "git@github.com:acme/widgets.git")
    assert github.repo_key == "github:acme/widgets"
    assert github.repo_id == hashlib.sha256(b"github:acme/widgets").hexdigest()[:16]
    assert derive_repo_identity(tmp_path / "elsewhere", "https://github.com/acme/widgets").repo_id == github.repo_id

    local = derive_repo_identity(tmp_path, "")
    assert local.repo_key == f"path:{tmp_path.resolve()}"
    assert local.github_owner_repo == ""
    assert len(local.repo_id) == 16
