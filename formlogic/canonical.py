"""
formlogic/canonical.py - Shared Canonicalization Logic
"""
import json
import math
from collections.abc import Mapping
from typing import Any

from .values import UNDEFINED


def canonicalize_expression(expression: str) -> str:
    """
    Normalize expression text for AST-cache lookup.

    Only leading/trailing whitespace is stripped. The text is parsed as
    written: string literals keep their exact code points, so no Unicode
    normalization happens here.
    """
    if expression is None:
        return ""
    return expression.strip()


def _stringify_number(value) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            # 1.0 and 1 are the same request
            return str(int(value))
    return json.dumps(value)


def stable_stringify(value: Any) -> str:
    """
    Deterministic serialization used for cache and dedup keys.

    Standard:
    - Object keys sorted recursively (insertion order never matters)
    - Arrays keep their order
    - UNDEFINED renders as the bare token `undefined`, distinct from `null`
    - Strings ASCII-escaped, no whitespace separators

        stable_stringify({"url": "/api/check", "method": UNDEFINED})
        -> '{"method":undefined,"url":"/api/check"}'

    Values outside the JSON model render as their quoted string form
    (datetimes via isoformat()) so a key can always be produced.
    """
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, float)):
        return _stringify_number(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=True)
    if isinstance(value, Mapping):
        items = sorted(((str(k), v) for k, v in value.items()), key=lambda kv: kv[0])
        body = ",".join(json.dumps(k, ensure_ascii=True) + ":" + stable_stringify(v) for k, v in items)
        return "{" + body + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(v) for v in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "[" + ",".join(sorted(stable_stringify(v) for v in value)) + "]"
    if hasattr(value, "isoformat"):
        return json.dumps(value.isoformat(), ensure_ascii=True)
    return json.dumps(str(value), ensure_ascii=True)


def cache_key(kind: str, value: Any) -> str:
    """
    Namespaced lookup key: `kind` prefix + stable_stringify(value).

    The prefix keeps structurally equal payloads of different roles apart
    (a condition and a request body never collide).
    """
    return f"{kind}:{stable_stringify(value)}"
