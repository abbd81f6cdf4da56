"""
formlogic/tokenize.py

Regex-level scanning of expression text.
Single source of truth for finding form-field references without parsing.
"""

import re
from typing import List, Set

from formlogic.canonical import canonicalize_expression

# formValue.x / formValue?.x / formValue['x'] / formValue["x"]
FORM_VALUE_ACCESS_PATTERN = re.compile(r"\bformValue\s*(?:\??\.|\[)")

# formValue.parent.child -> 'parent.child' (optional chaining allowed between segments)
_DOT_PATTERN = re.compile(r"\bformValue\s*\??\.\s*([A-Za-z_$][\w$]*(?:\s*\??\.\s*[A-Za-z_$][\w$]*)*)")
_BRACKET_SINGLE_PATTERN = re.compile(r"\bformValue\s*(?:\?\.)?\[\s*'([\w.$-]+)'\s*\]")
_BRACKET_DOUBLE_PATTERN = re.compile(r'\bformValue\s*(?:\?\.)?\[\s*"([\w.$-]+)"\s*\]')
_SEGMENT_SEP = re.compile(r"\s*\??\.\s*")


def references_form_value(expression: str) -> bool:
    """True if the expression reads a property of ``formValue``."""
    if not expression:
        return False
    return FORM_VALUE_ACCESS_PATTERN.search(expression) is not None


def extract_form_value_paths(expression: str) -> List[str]:
    """
    Extract field paths read through ``formValue``, in order of appearance.

    Nested access yields both the root field and the full path:

        "formValue.address.city + formValue['zip']"
        -> ['address', 'address.city', 'zip']

    Computed access (formValue[someVar]) is not detected; callers needing it
    must declare dependencies explicitly.
    """
    if not expression:
        return []

    text = canonicalize_expression(expression)
    found: List[str] = []
    seen: Set[str] = set()

    def _add(path: str) -> None:
        if path and path not in seen:
            seen.add(path)
            found.append(path)

    hits = []
    for m in _DOT_PATTERN.finditer(text):
        hits.append((m.start(), _SEGMENT_SEP.sub(".", m.group(1))))
    for pattern in (_BRACKET_SINGLE_PATTERN, _BRACKET_DOUBLE_PATTERN):
        for m in pattern.finditer(text):
            hits.append((m.start(), m.group(1)))

    for _, path in sorted(hits, key=lambda h: h[0]):
        _add(path.split(".")[0])
        if "." in path:
            _add(path)
    return found


def extract_root_fields(expression: str) -> Set[str]:
    """Wrapper for dependency analysis: unique root field names only."""
    return {p.split(".")[0] for p in extract_form_value_paths(expression)}
