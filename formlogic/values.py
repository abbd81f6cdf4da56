"""
values.py

Value semantics shared by the expression evaluator, the condition evaluator
and the validators.

Form values are plain JSON-like data (dict / list / str / int / float / bool /
None). Descriptions and expressions are written against JavaScript-flavoured
semantics (the configuration format is shared with browser front-ends), so this
module pins those semantics down for Python values:

    - UNDEFINED is distinct from None (``undefined`` vs ``null``)
    - truthiness follows JS (empty list/dict are truthy, "" / 0 / NaN are not)
    - string and number coercion follow JS for the primitive cases
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from typing import Any, Iterable, Tuple, Union

from .diagnostics import get_logger

logger = get_logger("values")

# ==========================================
# UNDEFINED SENTINEL
# ==========================================


class _Undefined:
    """Singleton marking an absent value (JS ``undefined``)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Undefined, ())


UNDEFINED = _Undefined()

PathKey = Union[str, int]


def is_nullish(x: Any) -> bool:
    """True for None and UNDEFINED (the operands ``??`` and ``?.`` react to)."""
    return x is None or x is UNDEFINED


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


# ==========================================
# COERCION
# ==========================================


def js_truthy(x: Any) -> bool:
    if x is None or x is UNDEFINED:
        return False
    if isinstance(x, bool):
        return x
    if _is_number(x):
        return not (x == 0 or (isinstance(x, float) and math.isnan(x)))
    if isinstance(x, str):
        return x != ""
    # Containers and objects are always truthy
    return True


def js_typeof(x: Any) -> str:
    if x is UNDEFINED:
        return "undefined"
    if isinstance(x, bool):
        return "boolean"
    if _is_number(x):
        return "number"
    if isinstance(x, str):
        return "string"
    if callable(x):
        return "function"
    return "object"


def format_number(x: Union[int, float]) -> str:
    if isinstance(x, int):
        return str(x)
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x.is_integer() and abs(x) < 1e21:
        return str(int(x))
    return repr(x)


def to_js_string(x: Any) -> str:
    if x is UNDEFINED:
        return "undefined"
    if x is None:
        return "null"
    if isinstance(x, bool):
        return "true" if x else "false"
    if _is_number(x):
        return format_number(x)
    if isinstance(x, str):
        return x
    if isinstance(x, (list, tuple)):
        return ",".join("" if is_nullish(v) else to_js_string(v) for v in x)
    if isinstance(x, Mapping):
        return "[object Object]"
    return str(x)


def to_number(x: Any) -> Union[int, float]:
    if x is None:
        return 0
    if x is UNDEFINED:
        return math.nan
    if isinstance(x, bool):
        return int(x)
    if _is_number(x):
        return x
    if isinstance(x, str):
        s = x.strip()
        if s == "":
            return 0
        if s in ("Infinity", "+Infinity"):
            return math.inf
        if s == "-Infinity":
            return -math.inf
        try:
            return int(s)
        except ValueError:
            pass
        try:
            # Python accepts "nan"/"inf" spellings JS does not
            if s.lower().lstrip("+-") in ("nan", "inf", "infinity"):
                return math.nan
            return float(s)
        except ValueError:
            return math.nan
    if isinstance(x, (list, tuple)):
        if len(x) == 0:
            return 0
        if len(x) == 1:
            return to_number(to_js_string(x[0]) if not is_nullish(x[0]) else "")
    return math.nan


# ==========================================
# EQUALITY
# ==========================================


def strict_equals(a: Any, b: Any) -> bool:
    """
    JS ``===`` for primitives; containers compare structurally.

    Booleans never equal numbers. NaN never equals anything.
    """
    if a is b:
        # NaN is the only value not equal to itself
        return not (isinstance(a, float) and math.isnan(a))
    if a is UNDEFINED or b is UNDEFINED or a is None or b is None:
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if _is_number(a) and _is_number(b):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if set(a.keys()) != set(b.keys()):
            return False
        return all(strict_equals(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(strict_equals(x, y) for x, y in zip(a, b))
    return False


def loose_equals(a: Any, b: Any) -> bool:
    """JS ``==`` for the primitive coercion cases."""
    if is_nullish(a) and is_nullish(b):
        return True
    if is_nullish(a) or is_nullish(b):
        return False
    if isinstance(a, bool):
        return loose_equals(int(a), b)
    if isinstance(b, bool):
        return loose_equals(a, int(b))
    if _is_number(a) and isinstance(b, str):
        return a == to_number(b)
    if isinstance(a, str) and _is_number(b):
        return to_number(a) == b
    if isinstance(a, (Mapping, list, tuple)) and isinstance(b, (str,)) or _is_number(b) and isinstance(a, (list, tuple)):
        return loose_equals(to_js_string(a), b)
    return strict_equals(a, b)


# ==========================================
# PATHS
# ==========================================

_PATH_TOKEN_RE = re.compile(
    r"""
      \[\s*(?P<index>-?\d+)\s*\]          # [0]
    | \[\s*'(?P<sq>[^']*)'\s*\]           # ['key']
    | \[\s*"(?P<dq>[^"]*)"\s*\]           # ["key"]
    | \.?(?P<name>[^.\[\]]+)              # name or .name
    """,
    re.VERBOSE,
)


def parse_path(path: Union[str, Sequence[PathKey], None]) -> Tuple[PathKey, ...]:
    """
    Split a dot/bracket path into keys.

        "address.city"        -> ("address", "city")
        "items[0].name"       -> ("items", 0, "name")
        "items.0.name"        -> ("items", 0, "name")
        "data['with-dash']"   -> ("data", "with-dash")

    Digit-only segments become ints; dict lookups fall back to the string form.
    """
    if path is None:
        return ()
    if not isinstance(path, str):
        return tuple(path)
    if path == "":
        return ()

    keys = []
    pos = 0
    while pos < len(path):
        m = _PATH_TOKEN_RE.match(path, pos)
        if not m or m.end() == pos:
            # Unparseable remainder: treat it as a single literal key
            keys.append(path[pos:])
            break
        if m.group("index") is not None:
            keys.append(int(m.group("index")))
        elif m.group("sq") is not None:
            keys.append(m.group("sq"))
        elif m.group("dq") is not None:
            keys.append(m.group("dq"))
        else:
            name = m.group("name")
            keys.append(int(name) if name.isdigit() else name)
        pos = m.end()
    return tuple(keys)


def format_path(keys: Iterable[PathKey]) -> str:
    """Inverse of parse_path: ("items", 0, "name") -> "items[0].name"."""
    out = ""
    for k in keys:
        if isinstance(k, int):
            out += f"[{k}]"
        elif out:
            out += f".{k}"
        else:
            out = str(k)
    return out


def _step(container: Any, key: PathKey) -> Any:
    if isinstance(container, Mapping):
        if key in container:
            return container[key]
        if isinstance(key, int) and str(key) in container:
            return container[str(key)]
        return UNDEFINED
    if isinstance(container, (list, tuple)):
        try:
            idx = int(key)
        except (TypeError, ValueError):
            return UNDEFINED
        if 0 <= idx < len(container):
            return container[idx]
        return UNDEFINED
    return UNDEFINED


def get_nested_value(obj: Any, path: Union[str, Sequence[PathKey], None]) -> Any:
    """
    Resolve ``path`` inside ``obj``.

    Missing intermediate keys, out-of-range indices and traversal through
    primitives all yield UNDEFINED rather than raising.
    """
    keys = parse_path(path)
    if not keys:
        return UNDEFINED
    curr = obj
    for k in keys:
        if is_nullish(curr):
            return UNDEFINED
        curr = _step(curr, k)
        if curr is UNDEFINED:
            return UNDEFINED
    return curr


def has_nested_property(obj: Any, path: Union[str, Sequence[PathKey], None]) -> bool:
    """True when every key of ``path`` exists, even if the leaf value is UNDEFINED/None."""
    keys = parse_path(path)
    if not keys:
        return False
    curr = obj
    for k in keys:
        if isinstance(curr, Mapping):
            if k in curr:
                curr = curr[k]
            elif isinstance(k, int) and str(k) in curr:
                curr = curr[str(k)]
            else:
                return False
        elif isinstance(curr, (list, tuple)):
            try:
                idx = int(k)
            except (TypeError, ValueError):
                return False
            if not 0 <= idx < len(curr):
                return False
            curr = curr[idx]
        else:
            return False
    return True


def set_nested_value(obj: Any, path: Union[str, Sequence[PathKey]], value: Any) -> Any:
    """
    Return a copy of ``obj`` with ``path`` set to ``value``.

    Containers along the path are shallow-copied so the original value stays
    untouched (cells compare old and new values). Missing intermediates are
    created as dicts, or lists when the next key is an int.
    """
    keys = parse_path(path)
    if not keys:
        return value

    head, rest = keys[0], keys[1:]
    if isinstance(obj, list):
        new = list(obj)
        idx = int(head)
        while len(new) <= idx:
            new.append(None)
        child = new[idx]
    elif isinstance(obj, Mapping):
        new = dict(obj)
        child = new.get(head, UNDEFINED)
        if child is UNDEFINED and isinstance(head, int) and str(head) in new:
            head = str(head)
            child = new[head]
    elif isinstance(head, int):
        new = [None] * (head + 1)
        child = None
    else:
        new = {}
        child = UNDEFINED

    if rest:
        if not isinstance(child, (Mapping, list)):
            child = [] if isinstance(rest[0], int) else {}
        new[head] = set_nested_value(child, rest, value)
    else:
        new[head] = copy.deepcopy(value)
    return new


# ==========================================
# COMPARISON OPERATORS
# ==========================================


def _numeric_compare(actual: Any, expected: Any, op) -> bool:
    a = to_number(actual)
    b = to_number(expected)
    if math.isnan(a) or math.isnan(b):
        return False
    return op(a, b)


def compare_values(actual: Any, expected: Any, operator: str) -> bool:
    """
    Apply a comparison operator from COMPARISON_OPERATORS.

    Ordering operators coerce both sides to numbers (NaN -> False); the string
    operators coerce both sides to strings; an invalid ``matches`` pattern is
    False; an unknown operator is False.
    """
    if operator == "equals":
        return strict_equals(actual, expected)
    if operator == "notEquals":
        return not strict_equals(actual, expected)
    if operator == "greater":
        return _numeric_compare(actual, expected, lambda a, b: a > b)
    if operator == "less":
        return _numeric_compare(actual, expected, lambda a, b: a < b)
    if operator == "greaterOrEqual":
        return _numeric_compare(actual, expected, lambda a, b: a >= b)
    if operator == "lessOrEqual":
        return _numeric_compare(actual, expected, lambda a, b: a <= b)
    if operator == "contains":
        if isinstance(actual, (list, tuple)):
            return any(strict_equals(item, expected) for item in actual)
        return to_js_string(expected) in to_js_string(actual)
    if operator == "startsWith":
        return to_js_string(actual).startswith(to_js_string(expected))
    if operator == "endsWith":
        return to_js_string(actual).endswith(to_js_string(expected))
    if operator == "matches":
        try:
            return re.search(to_js_string(expected), to_js_string(actual)) is not None
        except re.error:
            logger.debug("Invalid regex pattern in 'matches': %r", expected)
            return False
    logger.debug("Unknown comparison operator: %r", operator)
    return False
