"""Agency constants: error codes, schedules, paths, and defaults."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

SCHEMA_VERSION = "1.0"
EVENT_SCHEMA_VERSION = "1.0"

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

E_USAGE = "E_USAGE"
E_NO_REPO = "E_NO_REPO"
E_INVALID_CONFIG = "E_INVALID_CONFIG"
E_INVALID_NAME = "E_INVALID_NAME"
E_NAME_EXISTS = "E_NAME_EXISTS"
E_RUN_NOT_FOUND = "E_RUN_NOT_FOUND"
E_RUN_ID_AMBIGUOUS = "E_RUN_ID_AMBIGUOUS"
E_RUN_BROKEN = "E_RUN_BROKEN"
E_REPO_LOCKED = "E_REPO_LOCKED"
E_NO_ORIGIN = "E_NO_ORIGIN"
E_UNSUPPORTED_ORIGIN_HOST = "E_UNSUPPORTED_ORIGIN_HOST"
E_PARENT_NOT_FOUND = "E_PARENT_NOT_FOUND"
E_WORKTREE_CREATE_FAILED = "E_WORKTREE_CREATE_FAILED"
E_WORKTREE_MISSING = "E_WORKTREE_MISSING"
E_DIRTY_WORKTREE = "E_DIRTY_WORKTREE"
E_REPORT_INVALID = "E_REPORT_INVALID"
E_EMPTY_DIFF = "E_EMPTY_DIFF"
E_GIT_PUSH_FAILED = "E_GIT_PUSH_FAILED"
E_GIT_FETCH_FAILED = "E_GIT_FETCH_FAILED"
E_REMOTE_OUT_OF_DATE = "E_REMOTE_OUT_OF_DATE"
E_GH_NOT_INSTALLED = "E_GH_NOT_INSTALLED"
E_GH_NOT_AUTHENTICATED = "E_GH_NOT_AUTHENTICATED"
E_GH_REPO_PARSE_FAILED = "E_GH_REPO_PARSE_FAILED"
E_GH_PR_CREATE_FAILED = "E_GH_PR_CREATE_FAILED"
E_GH_PR_EDIT_FAILED = "E_GH_PR_EDIT_FAILED"
E_GH_PR_VIEW_FAILED = "E_GH_PR_VIEW_FAILED"
E_GH_PR_MERGE_FAILED = "E_GH_PR_MERGE_FAILED"
E_NO_PR = "E_NO_PR"
E_PR_NOT_OPEN = "E_PR_NOT_OPEN"
E_PR_DRAFT = "E_PR_DRAFT"
E_PR_MISMATCH = "E_PR_MISMATCH"
E_PR_NOT_MERGEABLE = "E_PR_NOT_MERGEABLE"
E_PR_MERGEABILITY_UNKNOWN = "E_PR_MERGEABILITY_UNKNOWN"
E_TMUX_NOT_INSTALLED = "E_TMUX_NOT_INSTALLED"
E_TMUX_FAILED = "E_TMUX_FAILED"
E_SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"
E_CONFIRMATION_REQUIRED = "E_CONFIRMATION_REQUIRED"
E_NOT_INTERACTIVE = "E_NOT_INTERACTIVE"
E_ABORTED = "E_ABORTED"
E_SCRIPT_FAILED = "E_SCRIPT_FAILED"
E_SCRIPT_TIMEOUT = "E_SCRIPT_TIMEOUT"
E_ARCHIVE_FAILED = "E_ARCHIVE_FAILED"
E_PERSIST_FAILED = "E_PERSIST_FAILED"
E_DEADLINE_EXCEEDED = "E_DEADLINE_EXCEEDED"
E_INTERNAL = "E_INTERNAL"

USAGE_EXIT_CODE = 2
ERROR_EXIT_CODE = 1

# ---------------------------------------------------------------------------
# Retry schedules (seconds; the first entry precedes the first attempt and
# is never slept)
# ---------------------------------------------------------------------------

PR_VIEW_RETRY_DELAYS = (0.0, 1.0, 2.0, 4.0, 8.0, 16.0)
MERGEABILITY_RETRY_DELAYS = (0.0, 1.0, 2.0, 2.0)
MERGE_CONFIRM_RETRY_DELAYS = (0.25, 0.75, 1.5)
JITTER_FRACTION = 0.2

# ---------------------------------------------------------------------------
# Remote tooling
# ---------------------------------------------------------------------------

GITHUB_HOST = "github.com"
NON_INTERACTIVE_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GH_PROMPT_DISABLED": "1",
    "CI": "1",
}
PR_TITLE_PREFIX = "[agency] "
PR_VIEW_FIELDS = "number,url,state,isDraft,mergeable,headRefName"
PR_LIST_FIELDS = "number,url,state"
MERGE_STRATEGIES = ("squash", "merge", "rebase")
STDERR_TAIL_LIMIT = 512
ARCHIVE_REASON_LIMIT = 512
PLACEHOLDER_PR_BODY = (
    "agency: report missing/empty (pushed with --force).\n\n"
    "- branch: {branch}\n"
    "- run_id: {run_id}\n"
)

# ---------------------------------------------------------------------------
# Run naming and layout
# ---------------------------------------------------------------------------

RUN_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$")
RUN_NAME_MIN_LENGTH = 2
RUN_NAME_MAX_LENGTH = 40
BRANCH_PREFIX = "agency/"
TMUX_SESSION_PREFIX = "agency_"
REPORT_RELATIVE_PATH = Path(".agency") / "report.md"
REPORT_MIN_CHARS = 20
WORKSPACE_DIRS = (".agency", ".agency/out", ".agency/tmp", ".agency/state")
RUN_ID_TIMESTAMP_PATTERN = re.compile(r"^\d{8}T\d{6}Z_[0-9a-f]{6}$")

REPO_CONFIG_FILENAMES = ("agency.yaml", "agency.json")
USER_CONFIG_FILENAME = "config.yaml"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_RUNNER = "claude"
DEFAULT_EDITOR = "code"
DEFAULT_PARENT_BRANCH = "main"
BUILTIN_RUNNERS = {"claude": "claude", "codex": "codex"}
DEFAULT_SCRIPT_TIMEOUTS = {
    "setup": 10 * 60.0,
    "verify": 30 * 60.0,
    "archive": 5 * 60.0,
}
MIN_SCRIPT_TIMEOUT_SECONDS = 60.0
MAX_SCRIPT_TIMEOUT_SECONDS = 24 * 60 * 60.0

NEEDS_ATTENTION_VERIFY_FAILED = "verify_failed"
NEEDS_ATTENTION_STOPPED = "stopped"
NEEDS_ATTENTION_SETUP_FAILED = "setup_failed"
