"""
formlogic/expression_evaluator.py

Safe evaluation of parsed expressions against a scope mapping.

Pure and side-effect free: the only names visible to an expression are the
keys of the scope it is evaluated with; the only callable things are the
whitelisted methods of strings, numbers and arrays.
"""

from __future__ import annotations

import math
from collections import ChainMap
from collections.abc import Mapping
from typing import Any, Dict

from .errors import ExpressionError, ExpressionRuntimeError
from .expression_parser import (
    ArrayLiteral,
    Binary,
    Call,
    Conditional,
    FunctionBody,
    Identifier,
    Iife,
    Index,
    Literal,
    Logical,
    Member,
    Node,
    OptionalChain,
    Unary,
    parse_expression,
)
from .operator_lexicon import SAFE_METHODS, is_blocked_property
from .values import (
    UNDEFINED,
    format_number,
    is_nullish,
    js_truthy,
    js_typeof,
    loose_equals,
    strict_equals,
    to_js_string,
    to_number,
)


class _ShortCircuit(Exception):
    """Raised by a ?. link on a nullish receiver; caught at the chain boundary."""


def _normalize_number(x):
    # JS has one number type: keep integral results as int
    if isinstance(x, float) and x.is_integer() and abs(x) < 2 ** 53:
        return int(x)
    return x


def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _receiver_type(obj) -> str:
    if isinstance(obj, str):
        return "string"
    if _is_number(obj):
        return "number"
    if isinstance(obj, (list, tuple)):
        return "array"
    return js_typeof(obj)


def _to_int(x, default=0) -> int:
    if x is UNDEFINED:
        return default
    n = to_number(x)
    if isinstance(n, float):
        if math.isnan(n):
            return 0
        if math.isinf(n):
            return 2 ** 31 if n > 0 else -(2 ** 31)
    return int(n)


def _relative_index(idx: int, length: int) -> int:
    if idx < 0:
        return max(length + idx, 0)
    return min(idx, length)


def _js_slice(seq, start=UNDEFINED, end=UNDEFINED):
    length = len(seq)
    s = _relative_index(_to_int(start, 0), length)
    e = _relative_index(_to_int(end, length), length) if end is not UNDEFINED else length
    return seq[s:e] if s < e else seq[:0]


def _js_index_of(seq, target, from_index=UNDEFINED):
    start = _relative_index(_to_int(from_index, 0), len(seq))
    for i in range(start, len(seq)):
        if strict_equals(seq[i], target):
            return i
    return -1


def _js_last_index_of(seq, target):
    for i in range(len(seq) - 1, -1, -1):
        if strict_equals(seq[i], target):
            return i
    return -1


def _array_includes(seq, target):
    # SameValueZero: NaN finds NaN
    if isinstance(target, float) and math.isnan(target):
        return any(isinstance(v, float) and math.isnan(v) for v in seq)
    return any(strict_equals(v, target) for v in seq)


def _char_at(s: str, i=UNDEFINED) -> str:
    k = _to_int(i, 0)
    return s[k] if 0 <= k < len(s) else ""


def _substring(s: str, start=UNDEFINED, end=UNDEFINED) -> str:
    length = len(s)
    a = min(max(_to_int(start, 0), 0), length)
    b = min(max(_to_int(end, length), 0), length) if end is not UNDEFINED else length
    if a > b:
        a, b = b, a
    return s[a:b]


def _pad(s: str, target_len, fill=UNDEFINED, at_start=True) -> str:
    n = _to_int(target_len, 0)
    filler = " " if fill is UNDEFINED else to_js_string(fill)
    if n <= len(s) or filler == "":
        return s
    need = n - len(s)
    pad = (filler * (need // len(filler) + 1))[:need]
    return pad + s if at_start else s + pad


def _split(s: str, sep=UNDEFINED, limit=UNDEFINED):
    if sep is UNDEFINED:
        parts = [s]
    else:
        sep = to_js_string(sep)
        parts = list(s) if sep == "" else s.split(sep)
    if limit is not UNDEFINED:
        parts = parts[: max(_to_int(limit, 0), 0)]
    return parts


def _to_fixed(x, digits=UNDEFINED) -> str:
    d = _to_int(digits, 0)
    if d < 0 or d > 100:
        raise ExpressionRuntimeError("toFixed() digits argument must be between 0 and 100")
    n = to_number(x)
    if isinstance(n, float) and (math.isnan(n) or math.isinf(n)):
        return format_number(n)
    return f"{n:.{d}f}"


def _number_to_string(x, radix=UNDEFINED) -> str:
    if radix is UNDEFINED or _to_int(radix) == 10:
        return format_number(x)
    base = _to_int(radix)
    if not 2 <= base <= 36 or not float(x).is_integer():
        return format_number(x)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    n = int(x)
    neg, n = n < 0, abs(n)
    out = ""
    while True:
        n, r = divmod(n, base)
        out = digits[r] + out
        if n == 0:
            break
    return "-" + out if neg else out


def _array_concat(seq, *args):
    out = list(seq)
    for a in args:
        if isinstance(a, (list, tuple)):
            out.extend(a)
        else:
            out.append(a)
    return out


# Python renditions of the whitelisted methods, per receiver type
_METHOD_IMPLS: Dict[str, Dict[str, Any]] = {
    "string": {
        "charAt": _char_at,
        "concat": lambda s, *a: s + "".join(to_js_string(x) for x in a),
        "endsWith": lambda s, x=UNDEFINED: s.endswith(to_js_string(x)),
        "includes": lambda s, x=UNDEFINED, pos=UNDEFINED: to_js_string(x) in s[max(_to_int(pos, 0), 0):],
        "indexOf": lambda s, x=UNDEFINED, pos=UNDEFINED: s.find(to_js_string(x), max(_to_int(pos, 0), 0)),
        "lastIndexOf": lambda s, x=UNDEFINED: s.rfind(to_js_string(x)),
        "padEnd": lambda s, n=0, fill=UNDEFINED: _pad(s, n, fill, at_start=False),
        "padStart": lambda s, n=0, fill=UNDEFINED: _pad(s, n, fill, at_start=True),
        "repeat": lambda s, n=0: s * max(_to_int(n, 0), 0),
        "replace": lambda s, a=UNDEFINED, b=UNDEFINED: s.replace(to_js_string(a), to_js_string(b), 1),
        "slice": _js_slice,
        "split": _split,
        "startsWith": lambda s, x=UNDEFINED: s.startswith(to_js_string(x)),
        "substring": _substring,
        "toLowerCase": lambda s: s.lower(),
        "toUpperCase": lambda s: s.upper(),
        "trim": lambda s: s.strip(),
        "trimEnd": lambda s: s.rstrip(),
        "trimStart": lambda s: s.lstrip(),
        "toString": lambda s: s,
    },
    "number": {
        "toFixed": _to_fixed,
        "toString": _number_to_string,
    },
    "array": {
        "concat": _array_concat,
        "includes": _array_includes,
        "indexOf": _js_index_of,
        "join": lambda seq, sep=UNDEFINED: ("," if sep is UNDEFINED else to_js_string(sep)).join(
            "" if is_nullish(v) else to_js_string(v) for v in seq
        ),
        "lastIndexOf": _js_last_index_of,
        "slice": lambda seq, a=UNDEFINED, b=UNDEFINED: list(_js_slice(seq, a, b)),
        "toString": lambda seq: to_js_string(seq),
    },
}


class ExpressionEvaluator:
    """
    Walks an AST with a fixed scope.

    One evaluator per evaluation call; the expression text is carried only
    for error messages.
    """

    def __init__(self, scope: Mapping, expression: str = ""):
        self.scope = scope
        self.expression = expression

    def _fail(self, message: str):
        raise ExpressionRuntimeError(message, self.expression)

    def evaluate(self, node: Node) -> Any:
        method = getattr(self, "_eval_" + type(node).__name__, None)
        if method is None:
            self._fail(f"Unknown node type: {type(node).__name__}")
        return method(node)

    # --- leaves ---

    def _eval_Literal(self, node: Literal):
        return node.value

    def _eval_Identifier(self, node: Identifier):
        if node.name in self.scope:
            return self.scope[node.name]
        return UNDEFINED

    def _eval_ArrayLiteral(self, node: ArrayLiteral):
        return [self.evaluate(e) for e in node.elements]

    # --- member access ---

    def _read_property(self, obj, key):
        if is_nullish(obj):
            return UNDEFINED
        if isinstance(key, str) and is_blocked_property(key):
            self._fail(f'Property "{key}" is not accessible for security reasons')

        if isinstance(obj, Mapping):
            if key in obj:
                return obj[key]
            if _is_number(key):
                skey = format_number(key)
                return obj[skey] if skey in obj else UNDEFINED
            return UNDEFINED

        if isinstance(obj, (str, list, tuple)):
            if key == "length":
                return len(obj)
            if _is_number(key) or (isinstance(key, str) and key.isdigit()):
                idx = to_number(key)
                if isinstance(idx, float) and not idx.is_integer():
                    return UNDEFINED
                idx = int(idx)
                return obj[idx] if 0 <= idx < len(obj) else UNDEFINED
        return UNDEFINED

    def _eval_Member(self, node: Member):
        obj = self.evaluate(node.object)
        if node.optional and is_nullish(obj):
            raise _ShortCircuit()
        return self._read_property(obj, node.property)

    def _eval_Index(self, node: Index):
        obj = self.evaluate(node.object)
        if node.optional and is_nullish(obj):
            raise _ShortCircuit()
        key = self.evaluate(node.index)
        if not isinstance(key, (str, int, float)) or isinstance(key, bool):
            key = to_js_string(key)
        return self._read_property(obj, key)

    def _eval_OptionalChain(self, node: OptionalChain):
        try:
            return self.evaluate(node.expression)
        except _ShortCircuit:
            return UNDEFINED

    # --- calls ---

    def _eval_Call(self, node: Call):
        callee = node.callee
        if not isinstance(callee, (Member, Index)):
            self._fail("Only method calls are allowed, not arbitrary function calls")

        obj = self.evaluate(callee.object)
        if is_nullish(obj):
            if callee.optional or node.optional:
                raise _ShortCircuit()
            name = callee.property if isinstance(callee, Member) else to_js_string(self.evaluate(callee.index))
            self._fail(f"Cannot call method '{name}' on {to_js_string(obj)}")

        if isinstance(callee, Member):
            name = callee.property
        else:
            name = to_js_string(self.evaluate(callee.index))

        if is_blocked_property(name):
            self._fail(f'Property "{name}" is not accessible for security reasons')

        rtype = _receiver_type(obj)
        if name not in SAFE_METHODS.get(rtype, ()):
            self._fail(f'Method "{name}" is not allowed for security reasons')

        args = [self.evaluate(a) for a in node.args]
        impl = _METHOD_IMPLS[rtype][name]
        try:
            return impl(obj, *args)
        except ExpressionError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            self._fail(f"Method '{name}' failed: {e}")

    # --- operators ---

    def _eval_Unary(self, node: Unary):
        if node.op == "typeof":
            try:
                operand = self.evaluate(node.operand)
            except _ShortCircuit:
                operand = UNDEFINED
            return js_typeof(operand)
        operand = self.evaluate(node.operand)
        if node.op == "!":
            return not js_truthy(operand)
        if node.op == "-":
            return _normalize_number(-to_number(operand))
        if node.op == "+":
            return to_number(operand)
        self._fail(f"Unknown unary operator: {node.op}")

    def _eval_Logical(self, node: Logical):
        left = self.evaluate(node.left)
        if node.op == "&&":
            return self.evaluate(node.right) if js_truthy(left) else left
        if node.op == "||":
            return left if js_truthy(left) else self.evaluate(node.right)
        if node.op == "??":
            return self.evaluate(node.right) if is_nullish(left) else left
        self._fail(f"Unknown logical operator: {node.op}")

    def _eval_Binary(self, node: Binary):
        left = self.evaluate(node.left)
        right = self.evaluate(node.right)
        op = node.op

        if op == "+":
            if isinstance(left, (str, list, tuple, Mapping)) or isinstance(right, (str, list, tuple, Mapping)):
                return to_js_string(left) + to_js_string(right)
            return _normalize_number(to_number(left) + to_number(right))
        if op in ("-", "*", "/", "%"):
            a, b = to_number(left), to_number(right)
            if op == "-":
                return _normalize_number(a - b)
            if op == "*":
                return _normalize_number(a * b)
            # Division by zero yields null rather than Infinity/NaN
            if b == 0:
                return None
            if op == "/":
                return _normalize_number(a / b)
            return _normalize_number(math.fmod(a, b))

        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)

        if op in ("<", ">", "<=", ">="):
            if isinstance(left, str) and isinstance(right, str):
                a, b = left, right
            else:
                a, b = to_number(left), to_number(right)
                if math.isnan(a) or math.isnan(b):
                    return False
            if op == "<":
                return a < b
            if op == ">":
                return a > b
            if op == "<=":
                return a <= b
            return a >= b

        self._fail(f"Unknown binary operator: {op}")

    def _eval_Conditional(self, node: Conditional):
        if js_truthy(self.evaluate(node.test)):
            return self.evaluate(node.consequent)
        return self.evaluate(node.alternate)

    # --- self-invoking function ---

    def _eval_Iife(self, node: Iife):
        return self._eval_FunctionBody(node.body)

    def _eval_FunctionBody(self, node: FunctionBody):
        # Declarations live in a fresh layer; the caller's scope is never written
        local: Dict[str, Any] = {}
        inner = ExpressionEvaluator(ChainMap(local, self.scope), self.expression)
        for decl in node.declarations:
            if decl.name in local:
                self._fail(f"Identifier '{decl.name}' has already been declared")
            local[decl.name] = inner.evaluate(decl.value)
        return inner.evaluate(node.result)


def evaluate_ast(node: Node, scope: Mapping, expression: str = "") -> Any:
    """Evaluate a parsed AST. Unexpected Python faults become ExpressionRuntimeError."""
    try:
        return ExpressionEvaluator(scope, expression).evaluate(node)
    except ExpressionError:
        raise
    except _ShortCircuit:
        return UNDEFINED
    except RecursionError as e:
        raise ExpressionRuntimeError("Expression nesting too deep", expression) from e
    except (TypeError, ValueError, ArithmeticError, KeyError, IndexError) as e:
        raise ExpressionRuntimeError(f"Evaluation failed: {e}", expression) from e


def evaluate(expression: str, scope: Mapping) -> Any:
    """
    Parse (cached) and evaluate ``expression`` against ``scope``.

    Raises ExpressionSyntaxError for malformed text and ExpressionRuntimeError
    for evaluation faults. Property access on null/undefined is not a fault:
    it yields UNDEFINED.

        evaluate("(formValue.qty||0)*(formValue.price||0)",
                 {"formValue": {"qty": 3, "price": 4}})
        -> 12
    """
    node = parse_expression(expression)
    return evaluate_ast(node, scope, expression)
