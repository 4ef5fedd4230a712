"""Repository identity and origin URL parsing."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from agency.constants import E_GH_REPO_PARSE_FAILED, GITHUB_HOST
from agency.models import AgencyError


@dataclass(frozen=True)
class RepoIdentity:
    repo_id: str
    repo_key: str
    github_owner_repo: str = ""


def _split_scp_url(url: str) -> tuple[str, str] | None:
    """Split ``user@host:path`` (scp-like ssh syntax) into host and path."""
    if "://" in url or ":" not in url:
        return None
    authority, _, path = url.partition(":")
    host = authority.rpartition("@")[2]
    if not host or "/" in host:
        return None
    return (host, path)


def parse_origin_host(url: str) -> str:
    text = url.strip()
    if not text:
        return ""
    scp = _split_scp_url(text)
    if scp is not None:
        return scp[0]
    parsed = urlparse(text)
    if parsed.scheme in {"https", "http", "ssh", "git"} and parsed.hostname:
        return parsed.hostname
    return ""


def _origin_path(url: str) -> str:
    text = url.strip()
    scp = _split_scp_url(text)
    if scp is not None:
        return scp[1]
    return urlparse(text).path


def parse_github_owner_repo(url: str) -> str:
    """Return ``owner/repo`` for a github.com origin URL."""
    if parse_origin_host(url) != GITHUB_HOST:
        raise AgencyError(
            E_GH_REPO_PARSE_FAILED,
            f"origin is not a github.com URL: {url}",
            details={"origin_url": url},
        )
    path = _origin_path(url).strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = [part for part in path.split("/") if part]
    if len(parts) != 2:
        raise AgencyError(
            E_GH_REPO_PARSE_FAILED,
            f"could not parse owner/repo from origin: {url}",
            details={"origin_url": url},
        )
    return f"{parts[0]}/{parts[1]}"


def derive_repo_identity(repo_root: Path, origin_url: str) -> RepoIdentity:
    owner_repo = ""
    if parse_origin_host(origin_url) == GITHUB_HOST:
        try:
            owner_repo = parse_github_owner_repo(origin_url)
        except AgencyError:
            owner_repo = ""
    if owner_repo:
        repo_key = f"github:{owner_repo}"
    else:
        repo_key = f"path:{repo_root.resolve()}"
    repo_id = hashlib.sha256(repo_key.encode("utf-8")).hexdigest()[:16]
    return RepoIdentity(repo_id=repo_id, repo_key=repo_key, github_owner_repo=owner_repo)
