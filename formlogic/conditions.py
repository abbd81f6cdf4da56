"""
formlogic/conditions.py

The Condition model: a closed set of immutable variants describing a boolean
predicate over form/field state.

    LiteralCondition      true / false
    FieldValueCondition   compare one field's value
    FormValueCondition    compare the whole form value
    ExpressionCondition   restricted expression, coerced to bool
    CustomCondition       registered predicate by name
    AndCondition / OrCondition   short-circuit composites
    RemoteCondition       network-backed, resolved out of band
    AsyncCondition        async-function-backed, resolved out of band

Descriptions arrive as plain nested data; parse_condition() turns them into
variants and to_dict() turns them back (the form used for cache keys).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from .canonical import cache_key
from .errors import InvalidConditionShapeError
from .operator_lexicon import COMPARISON_OPERATORS, CONDITION_TYPE_ALIASES, CONDITION_TYPES
from .values import UNDEFINED


class Condition:
    """Base class of all condition variants."""

    __slots__ = ()
    kind: ClassVar[str] = ""
    # Resolved out of band (cannot take part in a synchronous boolean fold)
    out_of_band: ClassVar[bool] = False


@dataclass(frozen=True)
class LiteralCondition(Condition):
    kind: ClassVar[str] = "literal"
    value: bool


@dataclass(frozen=True)
class FieldValueCondition(Condition):
    kind: ClassVar[str] = "fieldValue"
    field_path: str
    operator: str
    value: Any = None

    def __post_init__(self):
        _check_operator(self.operator)


@dataclass(frozen=True)
class FormValueCondition(Condition):
    kind: ClassVar[str] = "formValue"
    operator: str
    value: Any = None

    def __post_init__(self):
        _check_operator(self.operator)


@dataclass(frozen=True)
class ExpressionCondition(Condition):
    kind: ClassVar[str] = "expression"
    code: str


@dataclass(frozen=True)
class CustomCondition(Condition):
    kind: ClassVar[str] = "custom"
    function_name: str


def _check_children(kind: str, conditions) -> None:
    for child in conditions:
        if not isinstance(child, Condition):
            raise InvalidConditionShapeError(f"'{kind}' children must be conditions, got {type(child).__name__}")
        if child.out_of_band:
            raise InvalidConditionShapeError(
                f"'{child.kind}' conditions cannot be nested inside '{kind}': they resolve "
                f"asynchronously and cannot take part in a synchronous boolean expression"
            )


@dataclass(frozen=True)
class AndCondition(Condition):
    kind: ClassVar[str] = "and"
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "conditions", tuple(self.conditions))
        _check_children(self.kind, self.conditions)


@dataclass(frozen=True)
class OrCondition(Condition):
    kind: ClassVar[str] = "or"
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "conditions", tuple(self.conditions))
        _check_children(self.kind, self.conditions)


@dataclass(frozen=True)
class RequestSpec:
    """
    An HTTP request description.

    ``query_params`` values are expressions evaluated against the field
    context; ``body`` string values are evaluated too when
    ``evaluate_body_expressions`` is set, otherwise the body is sent as is.
    """

    url: str
    method: Optional[str] = None
    query_params: Mapping[str, str] = field(default_factory=dict)
    body: Any = UNDEFINED
    headers: Mapping[str, str] = field(default_factory=dict)
    evaluate_body_expressions: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"url": self.url}
        if self.method is not None:
            out["method"] = self.method
        if self.query_params:
            out["queryParams"] = dict(self.query_params)
        if self.body is not UNDEFINED:
            out["body"] = self.body
        if self.headers:
            out["headers"] = dict(self.headers)
        if self.evaluate_body_expressions:
            out["evaluateBodyExpressions"] = True
        return out


@dataclass(frozen=True)
class RemoteCondition(Condition):
    """Network-backed condition. ``None`` timings fall back to configuration defaults."""

    kind: ClassVar[str] = "remote"
    out_of_band: ClassVar[bool] = True
    request: RequestSpec
    response_expression: Optional[str] = None
    pending_value: bool = False
    cache_duration_ms: Optional[int] = None
    debounce_ms: Optional[int] = None


@dataclass(frozen=True)
class AsyncCondition(Condition):
    """
    Condition backed by a registered async function.

    ``params`` maps argument names to expressions; the evaluated mapping is
    what the function receives and what keys the response cache.
    """

    kind: ClassVar[str] = "async"
    out_of_band: ClassVar[bool] = True
    function_name: str
    params: Mapping[str, str] = field(default_factory=dict)
    pending_value: bool = False
    cache_duration_ms: Optional[int] = None
    debounce_ms: Optional[int] = None


ConditionLike = Union[Condition, bool, Mapping[str, Any]]


def _check_operator(operator: str) -> None:
    if operator not in COMPARISON_OPERATORS:
        raise InvalidConditionShapeError(
            f"Unknown comparison operator '{operator}'. Expected one of: {', '.join(sorted(COMPARISON_OPERATORS))}"
        )


# ==========================================
# PARSING (plain data -> variants)
# ==========================================


def _require(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    raise InvalidConditionShapeError(
        f"'{data.get('type')}' condition requires '{names[0]}'" + (f" (or '{names[1]}')" if len(names) > 1 else "")
    )


def _optional_int(data: Mapping[str, Any], name: str, fallback: Mapping[str, Any] = None) -> Optional[int]:
    for source in (data, fallback or {}):
        if source.get(name) is not None:
            try:
                return int(source[name])
            except (TypeError, ValueError) as e:
                raise InvalidConditionShapeError(f"'{name}' must be an integer, got {source[name]!r}") from e
    return None


def parse_request(data: Mapping[str, Any]) -> RequestSpec:
    if isinstance(data, RequestSpec):
        return data
    if not isinstance(data, Mapping):
        raise InvalidConditionShapeError(f"request must be a mapping, got {type(data).__name__}")
    if not data.get("url"):
        raise InvalidConditionShapeError("request requires 'url'")
    return RequestSpec(
        url=str(data["url"]),
        method=data.get("method"),
        query_params=dict(data.get("queryParams") or {}),
        body=data.get("body", UNDEFINED),
        headers=dict(data.get("headers") or {}),
        evaluate_body_expressions=bool(data.get("evaluateBodyExpressions", False)),
    )


def parse_condition(data: ConditionLike) -> Condition:
    """
    Turn a condition description into a variant.

    Accepts a Condition (returned as is), a bare bool, or a mapping with a
    ``type`` key. Raises InvalidConditionShapeError for anything malformed,
    including remote/async conditions nested in and/or.
    """
    if isinstance(data, Condition):
        return data
    if isinstance(data, bool):
        return LiteralCondition(data)
    if not isinstance(data, Mapping):
        raise InvalidConditionShapeError(f"Condition must be a mapping or bool, got {type(data).__name__}")

    raw_type = data.get("type")
    ctype = CONDITION_TYPE_ALIASES.get(raw_type, raw_type)
    if ctype not in CONDITION_TYPES:
        raise InvalidConditionShapeError(f"Unknown condition type: {raw_type!r}")

    if ctype == "fieldValue":
        return FieldValueCondition(
            field_path=str(_require(data, "fieldPath")),
            operator=_require(data, "operator"),
            value=data.get("value"),
        )
    if ctype == "formValue":
        return FormValueCondition(operator=_require(data, "operator"), value=data.get("value"))
    if ctype == "expression":
        return ExpressionCondition(code=str(_require(data, "expression", "code")))
    if ctype == "custom":
        return CustomCondition(function_name=str(_require(data, "functionName", "expression")))
    if ctype in ("and", "or"):
        children = data.get("conditions") or []
        if not isinstance(children, (list, tuple)):
            raise InvalidConditionShapeError(f"'{ctype}' requires a list of conditions")
        parsed = tuple(parse_condition(c) for c in children)
        return AndCondition(parsed) if ctype == "and" else OrCondition(parsed)
    if ctype == "remote":
        raw_request = _require(data, "request", "http")
        return RemoteCondition(
            request=parse_request(raw_request),
            response_expression=data.get("responseExpression"),
            pending_value=bool(data.get("pendingValue", False)),
            cache_duration_ms=_optional_int(data, "cacheDurationMs"),
            debounce_ms=_optional_int(data, "debounceMs", raw_request if isinstance(raw_request, Mapping) else None),
        )
    # async
    return AsyncCondition(
        function_name=str(_require(data, "functionName", "asyncFunctionName")),
        params=dict(data.get("params") or {}),
        pending_value=bool(data.get("pendingValue", False)),
        cache_duration_ms=_optional_int(data, "cacheDurationMs"),
        debounce_ms=_optional_int(data, "debounceMs"),
    )


def to_dict(condition: Condition) -> Any:
    """Canonical plain-data form of a condition (bools stay bare)."""
    if isinstance(condition, LiteralCondition):
        return condition.value
    if isinstance(condition, FieldValueCondition):
        return {"type": "fieldValue", "fieldPath": condition.field_path, "operator": condition.operator, "value": condition.value}
    if isinstance(condition, FormValueCondition):
        return {"type": "formValue", "operator": condition.operator, "value": condition.value}
    if isinstance(condition, ExpressionCondition):
        return {"type": "expression", "expression": condition.code}
    if isinstance(condition, CustomCondition):
        return {"type": "custom", "functionName": condition.function_name}
    if isinstance(condition, (AndCondition, OrCondition)):
        return {"type": condition.kind, "conditions": [to_dict(c) for c in condition.conditions]}
    if isinstance(condition, RemoteCondition):
        out = {"type": "remote", "request": condition.request.to_dict(), "pendingValue": condition.pending_value}
        if condition.response_expression is not None:
            out["responseExpression"] = condition.response_expression
        if condition.cache_duration_ms is not None:
            out["cacheDurationMs"] = condition.cache_duration_ms
        if condition.debounce_ms is not None:
            out["debounceMs"] = condition.debounce_ms
        return out
    if isinstance(condition, AsyncCondition):
        out = {"type": "async", "functionName": condition.function_name, "pendingValue": condition.pending_value}
        if condition.params:
            out["params"] = dict(condition.params)
        if condition.cache_duration_ms is not None:
            out["cacheDurationMs"] = condition.cache_duration_ms
        if condition.debounce_ms is not None:
            out["debounceMs"] = condition.debounce_ms
        return out
    raise InvalidConditionShapeError(f"Not a condition: {condition!r}")


def condition_key(condition: ConditionLike) -> str:
    """Stable lookup key: structurally equal conditions share it, whatever their key order."""
    return cache_key("condition", to_dict(parse_condition(condition)))

