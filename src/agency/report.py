"""Work-in-progress report (``.agency/report.md``) helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from agency.constants import REPORT_MIN_CHARS, REPORT_RELATIVE_PATH
from agency.utils import _sha256_text

REQUIRED_SECTIONS = ("summary", "how to test")
_HEADING_ALIASES = {
    "summary": "summary",
    "overview": "summary",
    "how to test": "how to test",
    "how-to-test": "how to test",
    "testing": "how to test",
    "tests": "how to test",
}
_HEADING_PATTERN = re.compile(r"^##\s+(.+)$")
_FENCE_PATTERN = re.compile(r"^```")

REPORT_TEMPLATE = """# {title}

## summary
- what changed (high level)
- why (intent)

## scope
- completed
- explicitly not done / deferred

## decisions
- important choices + rationale

## how to test
- exact commands
- expected output

## review notes
- files deserving scrutiny
- potential risks
"""


@dataclass(frozen=True)
class ReportState:
    path: Path
    text: str

    @property
    def empty(self) -> bool:
        return len(self.text.strip()) < REPORT_MIN_CHARS

    @property
    def digest(self) -> str:
        return _sha256_text(self.text) if self.text else ""


def _report_path(worktree: Path) -> Path:
    return worktree / REPORT_RELATIVE_PATH


def _read_report(worktree: Path) -> ReportState:
    path = _report_path(worktree)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        text = ""
    return ReportState(path=path, text=text)


def _normalize_heading(title: str) -> str:
    normalized = " ".join(title.lower().split())
    return normalized.rstrip(":.-")


def _section_contents(text: str) -> dict[str, str]:
    sections: dict[str, str] = {}
    current: str | None = None
    in_fence = False
    for line in text.splitlines():
        if _FENCE_PATTERN.match(line):
            in_fence = not in_fence
        if not in_fence:
            match = _HEADING_PATTERN.match(line)
            if match:
                normalized = _normalize_heading(match.group(1))
                current = _HEADING_ALIASES.get(normalized, normalized)
                sections.setdefault(current, "")
                continue
        if current is not None:
            sections[current] += line + "\n"
    return sections


def _missing_sections(text: str) -> list[str]:
    sections = _section_contents(text)
    return [name for name in REQUIRED_SECTIONS if not sections.get(name, "").strip()]
