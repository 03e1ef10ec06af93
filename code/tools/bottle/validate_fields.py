#!/usr/bin/env python3
"""Field-level validation for bottle draft inputs.

Every check runs against a single field value. A failing check leaves exactly one inline
message for that field in a FieldErrors store; a passing check clears it.
"""

import re
from collections import OrderedDict
from typing import Dict, List, NamedTuple, Optional, Pattern, Tuple

REQUIRED = "Required"
TOO_LONG = "TooLong"
PATTERN_MISMATCH = "PatternMismatch"

EMAIL_RE = re.compile(r"^\w+(?:[.-]\w+)*@\w+(?:[.-]\w+)*(?:\.\w{2,3})+$", re.ASCII)
LABEL_KEY_RE = re.compile(r"^(?:(?:[A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
LABEL_VALUE_RE = re.compile(r"^(?![0-9]+$)(?!.*-$)(?!-)[a-zA-Z0-9-]{1,63}$")
METRIC_NAME_RE = re.compile(r"^(?:(?:[A-Za-z0-9][-A-Za-z0-9_. ]*)?[A-Za-z0-9])?$")
METRIC_VALUE_RE = re.compile(r"^-?(?:\d+(?:\.\d+)?|\.\d+)$", re.ASCII)
PART_SIZE_RE = re.compile(r"^\d+$", re.ASCII)


class ValidationError(Exception):
    def __init__(self, field_id: str, kind: str, message: str):
        super().__init__(f"{field_id}: {message}")
        self.field_id = field_id
        self.kind = kind
        self.message = message


class FieldRule(NamedTuple):
    name: str
    required: bool = False
    max_length: int = 0
    pattern: Optional[Pattern] = None


class FieldErrors:
    """Inline error messages keyed by field id, at most one per field."""

    def __init__(self):
        self._errors: Dict[str, ValidationError] = OrderedDict()

    def set(self, field_id: str, kind: str, message: str) -> None:
        self._errors[field_id] = ValidationError(field_id, kind, message)

    def clear(self, field_id: str) -> None:
        self._errors.pop(field_id, None)

    def clear_prefix(self, prefix: str) -> None:
        for field_id in [f for f in self._errors if f.startswith(prefix)]:
            del self._errors[field_id]

    def get(self, field_id: str) -> Optional[ValidationError]:
        return self._errors.get(field_id)

    def as_dict(self) -> Dict[str, dict]:
        return {fid: {"kind": err.kind, "message": err.message} for fid, err in self._errors.items()}

    def __contains__(self, field_id: str) -> bool:
        return field_id in self._errors

    def __len__(self) -> int:
        return len(self._errors)


def check_field(value: str, required: bool, max_length: int = 0, pattern: Optional[Pattern] = None) -> Optional[Tuple[str, str]]:
    value = value or ""
    if required and not value.strip():
        return REQUIRED, "This is required"
    if value and max_length > 0 and len(value) > max_length:
        return TOO_LONG, f"Input must be less/equal to {max_length}"
    if value and pattern is not None and not pattern.fullmatch(value):
        return PATTERN_MISMATCH, "Input must be a valid format."
    return None


def validate(errors: FieldErrors, field_id: str, value: str, required: bool, max_length: int = 0, pattern: Optional[Pattern] = None) -> bool:
    failure = check_field(value, required, max_length, pattern)
    if failure is None:
        errors.clear(field_id)
        return True
    errors.set(field_id, *failure)
    return False


def validate_fields(errors: FieldErrors, prefix: str, rules: List[FieldRule], values: Dict[str, str]) -> bool:
    # Evaluate every rule so each failing field shows its own message.
    results = [
        validate(errors, f"{prefix}.{rule.name}", values.get(rule.name, ""), rule.required, rule.max_length, rule.pattern)
        for rule in rules
    ]
    return all(results)


AUTHOR_RULES = [
    FieldRule("name", required=True, max_length=256),
    FieldRule("email", required=True, max_length=256, pattern=EMAIL_RE),
    FieldRule("url"),
]
SOURCE_RULES = [
    FieldRule("name", required=True, max_length=256),
    FieldRule("uri", required=True),
]
LABEL_RULES = [
    FieldRule("key", required=True, max_length=63, pattern=LABEL_KEY_RE),
    FieldRule("value", required=False, max_length=63, pattern=LABEL_VALUE_RE),
]
ANNOTATION_RULES = [
    FieldRule("key", required=True, max_length=63, pattern=LABEL_KEY_RE),
    FieldRule("value", required=True),
]
METRIC_RULES = [
    FieldRule("name", required=True, max_length=63, pattern=METRIC_NAME_RE),
    FieldRule("value", required=True, max_length=63, pattern=METRIC_VALUE_RE),
    FieldRule("description"),
]
PART_RULES = [
    FieldRule("digest", required=True),
    FieldRule("name", required=True, max_length=256),
    FieldRule("size", required=True, pattern=PART_SIZE_RE),
]
PART_LABEL_RULES = [
    FieldRule("key", required=True, max_length=63, pattern=LABEL_KEY_RE),
    FieldRule("value", required=False, max_length=63, pattern=LABEL_KEY_RE),
]
