"""Boundary validation for values entering the memory store.

The store layer trusts its callers for size limits; the HTTP worker,
the CLI and ``MemoryManager`` run these checks first.
"""

import re
from typing import Any, Iterable, List, Optional

from .exceptions import InvalidProjectError, ValidationError

MAX_PROJECT_LENGTH = 200
MAX_TITLE_LENGTH = 500
MAX_TEXT_LENGTH = 100_000
MAX_SUMMARY_FIELD_LENGTH = 50_000
MAX_BATCH_IDS = 500

_PROJECT_PATTERN = re.compile(r"^[\w\-./@ ]+$")


def is_valid_project(project: Any) -> bool:
    return (
        isinstance(project, str)
        and 0 < len(project) <= MAX_PROJECT_LENGTH
        and bool(_PROJECT_PATTERN.match(project))
        and ".." not in project
    )


def validate_project(project: Any) -> str:
    if not is_valid_project(project):
        raise InvalidProjectError(str(project)[:MAX_PROJECT_LENGTH] if project is not None else None)
    return project


def _validate_length(field: str, value: Optional[str], max_len: int, required: bool = False) -> Optional[str]:
    if value is None:
        if required:
            raise ValidationError(field, f'Missing "{field}"')
        return None
    if not isinstance(value, str):
        raise ValidationError(field, f'"{field}" must be a string')
    if required and not value.strip():
        raise ValidationError(field, f'Missing "{field}"')
    if len(value) > max_len:
        raise ValidationError(field, f'"{field}" too large (max {max_len} chars)', value=value[:50])
    return value


def validate_title(title: Any) -> str:
    return _validate_length("title", title, MAX_TITLE_LENGTH, required=True)


def validate_text(value: Any, field: str = "content") -> Optional[str]:
    return _validate_length(field, value, MAX_TEXT_LENGTH)


def validate_summary_field(value: Any, field: str) -> Optional[str]:
    return _validate_length(field, value, MAX_SUMMARY_FIELD_LENGTH)


def validate_string_list(values: Any, field: str) -> Optional[List[str]]:
    if values is None:
        return None
    if not isinstance(values, (list, tuple)):
        raise ValidationError(field, f'"{field}" must be an array')
    return [str(v) for v in values]


def validate_ids(ids: Iterable[Any], max_ids: int = MAX_BATCH_IDS) -> List[int]:
    ids = list(ids)
    if not ids or len(ids) > max_ids:
        raise ValidationError("ids", f'"ids" must contain 1-{max_ids} elements')
    for value in ids:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError("ids", "All IDs must be positive integers", value=str(value))
    return ids


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    """Parse an integer; fall back to the default when missing or out of range."""
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if parsed < minimum or parsed > maximum:
        return default
    return parsed
