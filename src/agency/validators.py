"""JSON schema validation for persisted metadata and gh payloads."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from agency.constants import PACKAGE_SCHEMA_DIR

SCHEMAS: dict[str, str] = {
    "run_meta": "run_meta.schema.json",
    "pr_view": "pr_view.schema.json",
    "pr_list": "pr_list.schema.json",
    "verify_record": "verify_record.schema.json",
}


@lru_cache(maxsize=None)
def _validator(schema_key: str) -> Draft202012Validator:
    schema_path = PACKAGE_SCHEMA_DIR / SCHEMAS[schema_key]
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema)


def _format_error_path(path: Iterable[Any]) -> str:
    parts = [str(part) for part in path]
    return "$" if not parts else "$." + ".".join(parts)


def _schema_errors(payload: Any, *, schema_key: str) -> list[str]:
    validator = _validator(schema_key)
    failures: list[str] = []
    for error in sorted(
        validator.iter_errors(payload), key=lambda item: _format_error_path(item.path)
    ):
        failures.append(f"{_format_error_path(error.path)}: {error.message}")
    return failures
