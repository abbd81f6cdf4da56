"""
formlogic/validators.py

Validator descriptions and the factory applying them.

    ValidatorConfig    - immutable description (built-in, custom, customAsync, customRemote)
    ValidationError    - one failure: kind, field path, params
    ValidationResult   - collected failures of one validation pass
    ValidatorFactory   - config -> compiled Validator, memoized per form

Built-ins take a static ``value`` or a dynamic ``expression`` evaluated per
call. Every validator may carry ``when`` guards; a guard evaluating false
skips the validator for that pass.

Validators read the form through untracked contexts: they never register
reactive dependencies on the values they check.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

from .canonical import cache_key
from .conditions import Condition, ConditionLike, parse_condition, to_dict
from .context import EvaluationContext, FieldState
from .diagnostics import get_logger
from .errors import ExpressionError, InvalidConditionShapeError, ResolutionFailure
from .expression_evaluator import evaluate
from .logic_factory import LogicFactory
from .operator_lexicon import BUILTIN_VALIDATORS, FUNCTION_VALIDATORS
from .reactive import untracked
from .registry import AsyncValidatorSpec, RegisteredValidator, RemoteValidatorSpec
from .transport import Transport, append_query
from .values import UNDEFINED, is_nullish, js_truthy, to_js_string, to_number

logger = get_logger("validators")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

VALIDATOR_TYPE_ALIASES = {"customHttp": "customRemote"}


# ==========================================
# RESULTS
# ==========================================


@dataclass
class ValidationError:
    kind: str
    path: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {"kind": self.kind, "field": self.path, "params": dict(self.params)}
        if self.message is not None:
            out["message"] = self.message
        return out


@dataclass
class ValidationResult:
    """Every failure of one pass, in declaration order (collect-all)."""

    errors: List[ValidationError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def for_field(self, path: str) -> List[ValidationError]:
        return [e for e in self.errors if e.path == path]

    def kinds(self, path: Optional[str] = None) -> List[str]:
        return [e.kind for e in self.errors if path is None or e.path == path]

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult(self.errors + other.errors)


# ==========================================
# CONFIG
# ==========================================


@dataclass(frozen=True)
class ValidatorConfig:
    """
    One validator description.

    ``when`` holds guard conditions that must all pass. ``depends_on`` lists
    other fields the validator reads (marks it cross-field).
    """

    type: str
    value: Any = UNDEFINED
    expression: Optional[str] = None
    when: Tuple[Condition, ...] = ()
    kind: Optional[str] = None
    message: Optional[str] = None
    function_name: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)
    error_params: Mapping[str, str] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()

    @property
    def is_async(self) -> bool:
        return self.type in ("customAsync", "customRemote")

    @property
    def error_kind(self) -> str:
        if self.kind:
            return self.kind
        if self.type in BUILTIN_VALIDATORS:
            return self.type
        return self.function_name or self.type

    def with_guard(self, condition: ConditionLike) -> "ValidatorConfig":
        """Copy with ``condition`` as an extra (outermost) guard."""
        return replace(self, when=(parse_condition(condition),) + self.when)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.value is not UNDEFINED:
            out["value"] = self.value
        if self.expression is not None:
            out["expression"] = self.expression
        if self.when:
            out["when"] = [to_dict(c) for c in self.when]
        if self.kind is not None:
            out["kind"] = self.kind
        if self.message is not None:
            out["message"] = self.message
        if self.function_name is not None:
            out["functionName"] = self.function_name
        if self.params:
            out["params"] = dict(self.params)
        if self.error_params:
            out["errorParams"] = dict(self.error_params)
        if self.depends_on:
            out["dependsOn"] = list(self.depends_on)
        return out


ValidatorLike = Union[ValidatorConfig, str, Mapping[str, Any]]


def _parse_guards(raw: Any) -> Tuple[Condition, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(parse_condition(c) for c in raw)
    return (parse_condition(raw),)


def parse_validator(data: ValidatorLike) -> ValidatorConfig:
    """
    Turn a validator description into a ValidatorConfig.

        "required"
        {"type": "min", "value": 18}
        {"type": "min", "expression": "formValue.minAge"}
        {"type": "custom", "expression": "fieldValue === formValue.password", "kind": "mismatch"}
        {"type": "customAsync", "functionName": "checkUsername"}

    Raises InvalidConditionShapeError for malformed descriptions.
    """
    if isinstance(data, ValidatorConfig):
        return data
    if isinstance(data, str):
        data = {"type": data}
    if not isinstance(data, Mapping):
        raise InvalidConditionShapeError(f"Validator must be a mapping or name, got {type(data).__name__}")

    raw_type = data.get("type")
    vtype = VALIDATOR_TYPE_ALIASES.get(raw_type, raw_type)
    if vtype not in BUILTIN_VALIDATORS and vtype not in FUNCTION_VALIDATORS:
        raise InvalidConditionShapeError(f"Unknown validator type: {raw_type!r}")

    function_name = data.get("functionName")
    expression = data.get("expression")
    if vtype == "custom" and not (function_name or expression):
        raise InvalidConditionShapeError("'custom' validator requires 'functionName' or 'expression'")
    if vtype in ("customAsync", "customRemote") and not function_name:
        raise InvalidConditionShapeError(f"'{vtype}' validator requires 'functionName'")

    depends_on = data.get("dependsOn") or ()
    if isinstance(depends_on, str):
        depends_on = (depends_on,)

    return ValidatorConfig(
        type=vtype,
        value=data.get("value", UNDEFINED),
        expression=expression,
        when=_parse_guards(data.get("when")),
        kind=data.get("kind"),
        message=data.get("message"),
        function_name=function_name,
        params=dict(data.get("params") or {}),
        error_params=dict(data.get("errorParams") or {}),
        depends_on=tuple(depends_on),
    )


def validator_key(config: ValidatorLike) -> str:
    return cache_key("validator", parse_validator(config).to_dict())


# ==========================================
# BUILT-IN CHECKS
# ==========================================


def is_empty_value(value: Any) -> bool:
    """Empty for ``required``: nullish, "", False, NaN or an empty list."""
    if is_nullish(value) or value is False:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, (str, list, tuple)) and len(value) == 0


def _blank(value: Any) -> bool:
    # Every built-in except required lets an empty value through
    return is_nullish(value) or (isinstance(value, (str, list, tuple)) and len(value) == 0)


def check_builtin(vtype: str, value: Any, bound: Any = UNDEFINED) -> Optional[Dict[str, Any]]:
    """
    Run built-in ``vtype`` on ``value``. None when it passes, otherwise the
    error params.
    """
    if vtype == "required":
        return {} if is_empty_value(value) else None
    if _blank(value):
        return None

    if vtype == "email":
        return None if EMAIL_PATTERN.match(to_js_string(value)) else {}

    if vtype in ("min", "max"):
        if is_nullish(bound):
            return None
        actual, limit = to_number(value), to_number(bound)
        if math.isnan(actual) or math.isnan(limit):
            return None
        failed = actual < limit if vtype == "min" else actual > limit
        return {vtype: bound, "actual": value} if failed else None

    if vtype in ("minLength", "maxLength"):
        if is_nullish(bound) or not isinstance(value, (str, list, tuple)):
            return None
        limit = to_number(bound)
        if math.isnan(limit):
            return None
        length = len(value)
        failed = length < limit if vtype == "minLength" else length > limit
        return {vtype: bound, "actualLength": length} if failed else None

    if vtype == "pattern":
        if is_nullish(bound):
            return None
        pattern = bound.pattern if isinstance(bound, re.Pattern) else to_js_string(bound)
        try:
            matched = re.search(pattern, to_js_string(value)) is not None
        except re.error as e:
            logger.error("Invalid pattern %r: %s", pattern, e)
            return None
        return None if matched else {"pattern": pattern, "actual": value}

    logger.error("Unknown built-in validator: %s", vtype)
    return None


# ==========================================
# COMPILED VALIDATORS
# ==========================================


class Validator:
    """A compiled validator; ``validate`` for the sync pass, ``validate_async`` for all."""

    is_async = False

    def __init__(self, config: ValidatorConfig, logic: LogicFactory):
        self.config = config
        self.logic = logic

    def guard_passes(self, ctx: EvaluationContext, state: Optional[FieldState] = None) -> bool:
        for cond in self.config.when:
            if not cond.out_of_band:
                passed = self.logic.evaluator.evaluate(cond, ctx)
            elif state is not None:
                compiled = self.logic.compile(cond)
                passed = untracked(lambda: compiled(state))
            else:
                logger.warning(
                    "'%s' guard on %s cannot resolve in a snapshot pass, using pendingValue",
                    cond.kind, ctx.path or "<root>",
                )
                passed = bool(cond.pending_value)
            if not passed:
                return False
        return True

    def error(self, ctx: EvaluationContext, params: Optional[Dict[str, Any]] = None, kind: Optional[str] = None):
        return ValidationError(kind or self.config.error_kind, ctx.path, dict(params or {}), self.config.message)

    def interpret(self, result: Any, ctx: EvaluationContext) -> Optional[ValidationError]:
        """
        Map a function result to an error.

        None/True pass. False fails with the default kind, a string names the
        kind, a mapping gives ``kind`` plus params.
        """
        if result is None or result is True:
            return None
        if result is False:
            return self.error(ctx)
        if isinstance(result, ValidationError):
            if not result.path:
                result.path = ctx.path
            return result
        if isinstance(result, str):
            return self.error(ctx, kind=result)
        if isinstance(result, Mapping):
            params = {k: v for k, v in result.items() if k not in ("kind", "message")}
            err = self.error(ctx, params, kind=result.get("kind"))
            if result.get("message") is not None:
                err.message = result["message"]
            return err
        return self.error(ctx, {"result": result})

    def check(self, ctx: EvaluationContext) -> Optional[ValidationError]:
        raise NotImplementedError

    def validate(self, ctx: EvaluationContext, state: Optional[FieldState] = None) -> Optional[ValidationError]:
        """Never raises: unexpected faults are logged and count as "no error"."""
        try:
            if not self.guard_passes(ctx, state):
                return None
            return self.check(ctx)
        except Exception:
            logger.exception("Validator %s failed at %s", self.config.type, ctx.path or "<root>")
            return None

    async def validate_async(self, ctx: EvaluationContext, state: Optional[FieldState] = None):
        return self.validate(ctx, state)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.config.to_dict()!r})"


class BuiltinValidator(Validator):
    def bound(self, ctx: EvaluationContext) -> Any:
        if self.config.expression is not None:
            return self.logic.compile_value(self.config.expression)(ctx)
        return self.config.value

    def check(self, ctx):
        params = check_builtin(self.config.type, ctx.current_value, self.bound(ctx))
        return None if params is None else self.error(ctx, params)


class _ErrorParamsMixin:
    def error_params(self, ctx: EvaluationContext) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, expression in self.config.error_params.items():
            value = self.logic.compile_value(expression)(ctx)
            if value is not UNDEFINED:
                out[name] = value
        return out


class ExpressionValidator(_ErrorParamsMixin, Validator):
    """Inline expression: truthy means valid."""

    def check(self, ctx):
        try:
            passed = evaluate(self.config.expression, ctx.to_scope())
        except ExpressionError as e:
            logger.error("Error evaluating validator expression %r: %s", self.config.expression, e)
            return None
        if js_truthy(passed):
            return None
        return self.error(ctx, self.error_params(ctx), kind=self.config.kind or "custom")


class FunctionValidator(_ErrorParamsMixin, Validator):
    """Registered validator ``fn(ctx, params)``."""

    def __init__(self, config: ValidatorConfig, logic: LogicFactory, registered: RegisteredValidator):
        super().__init__(config, logic)
        self.registered = registered

    def check(self, ctx):
        err = self.interpret(self.registered.fn(ctx, dict(self.config.params)), ctx)
        if err is not None:
            err.params = {**self.error_params(ctx), **err.params}
        return err


class _AsyncBase(Validator):
    is_async = True

    def validate(self, ctx, state=None):
        # Sync pass: async validators only run in validate_async
        return None

    def on_failure(self, spec, error: BaseException, ctx: EvaluationContext):
        try:
            return self.interpret(spec.on_error(error, ctx), ctx)
        except Exception:
            logger.exception("onError of %s raised at %s", self.config.function_name, ctx.path or "<root>")
            return None

    def on_result(self, spec, result: Any, ctx: EvaluationContext):
        # Success of the call is not success of the validation
        try:
            return self.interpret(spec.on_success(result, ctx), ctx)
        except Exception:
            logger.exception("onSuccess of %s raised at %s", self.config.function_name, ctx.path or "<root>")
            return None

    async def validate_async(self, ctx, state=None):
        try:
            if not self.guard_passes(ctx, state):
                return None
        except Exception:
            logger.exception("Guard of %s failed at %s", self.config.function_name, ctx.path or "<root>")
            return None
        return await self.run(ctx)

    async def run(self, ctx: EvaluationContext) -> Optional[ValidationError]:
        raise NotImplementedError


class AsyncValidator(_AsyncBase):
    def __init__(self, config: ValidatorConfig, logic: LogicFactory, spec: AsyncValidatorSpec):
        super().__init__(config, logic)
        self.spec = spec

    async def run(self, ctx):
        try:
            params = dict(self.config.params)
            if self.spec.params is not None:
                params = self.spec.params(ctx, params)
            result = await self.spec.run(params)
        except Exception as e:
            return self.on_failure(self.spec, e, ctx)
        return self.on_result(self.spec, result, ctx)


def concrete_request(request: Mapping) -> Dict[str, Any]:
    """``{url, method?, queryParams?, body?, headers?}`` with concrete values -> transport request."""
    params = {k: to_js_string(v) for k, v in (request.get("queryParams") or {}).items() if not is_nullish(v)}
    out: Dict[str, Any] = {
        "url": append_query(str(request["url"]), params),
        "method": request.get("method", UNDEFINED),
    }
    if "body" in request:
        out["body"] = request["body"]
    if request.get("headers"):
        out["headers"] = dict(request["headers"])
    return out


class RemoteValidator(_AsyncBase):
    def __init__(
        self,
        config: ValidatorConfig,
        logic: LogicFactory,
        spec: RemoteValidatorSpec,
        transport: Optional[Transport],
    ):
        super().__init__(config, logic)
        self.spec = spec
        self.transport = transport

    async def run(self, ctx):
        try:
            request = self.spec.request(ctx, dict(self.config.params))
            if request is None:
                return None
            if self.transport is None:
                raise ResolutionFailure(str(request.get("url")), detail="no transport configured")
            response = await self.transport.perform_request(concrete_request(request))
        except Exception as e:
            return self.on_failure(self.spec, e, ctx)
        return self.on_result(self.spec, response, ctx)


# ==========================================
# FACTORY
# ==========================================


class ValidatorFactory:
    """
    Compiles validator configs for one form.

    Unregistered function names raise UnknownFunctionError here, when the
    validator is applied, rather than failing silently later.
    """

    def __init__(self, logic: LogicFactory, transport: Optional[Transport] = None):
        self.logic = logic
        self.transport = transport

    @property
    def registry(self):
        return self.logic.registry

    def build(self, config: ValidatorLike) -> Validator:
        cfg = parse_validator(config)
        return self.logic.scope.memoize(self.logic.scope.validators, validator_key(cfg), lambda: self._create(cfg))

    def _create(self, cfg: ValidatorConfig) -> Validator:
        if cfg.type in BUILTIN_VALIDATORS:
            return BuiltinValidator(cfg, self.logic)
        if cfg.type == "custom":
            if cfg.function_name:
                return FunctionValidator(cfg, self.logic, self.registry.get_validator(cfg.function_name))
            return ExpressionValidator(cfg, self.logic)
        if cfg.type == "customAsync":
            return AsyncValidator(cfg, self.logic, self.registry.get_async_validator(cfg.function_name))
        return RemoteValidator(cfg, self.logic, self.registry.get_remote_validator(cfg.function_name), self.transport)
