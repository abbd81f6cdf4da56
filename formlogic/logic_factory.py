"""
formlogic/logic_factory.py

LogicFactory: compiles condition descriptions into cached logic functions
``fn(field_state) -> bool`` bound to one form's CacheScope.

Compiled functions are referentially stable: structurally equal conditions
(in any key order) compile to the very same function object, which lets the
reactive layer keep its subscriptions.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from .async_resolver import ConditionResolver
from .cache_scope import CacheScope, DebouncedSlot
from .canonical import cache_key
from .condition_evaluator import ConditionEvaluator
from .conditions import Condition, ConditionLike, condition_key, parse_condition
from .config import FormLogicConfig, get_config
from .context import (
    EvaluationContext,
    FieldState,
    build_tracked_context,
    build_untracked_context,
    context_for_path,
)
from .diagnostics import get_logger
from .errors import ExpressionError
from .expression_evaluator import evaluate
from .operator_lexicon import TYPE_NAMES
from .reactive import Cell, debounce
from .registry import FunctionRegistry
from .transport import Transport
from .values import UNDEFINED, js_truthy, js_typeof

logger = get_logger("logic")

LogicFn = Callable[[FieldState], bool]
ValueFn = Callable[[EvaluationContext], Any]


def _type_matches(type_name: str, value: Any) -> bool:
    if type_name == "array":
        return isinstance(value, (list, tuple))
    if type_name == "null":
        return value is None
    if type_name == "object":
        # typeof null is "object", but a type guard for objects wants a real mapping
        return value is not None and js_typeof(value) == "object" and not isinstance(value, (list, tuple))
    return js_typeof(value) == type_name


class LogicFactory:
    def __init__(
        self,
        scope: Optional[CacheScope] = None,
        registry: Optional[FunctionRegistry] = None,
        transport: Optional[Transport] = None,
        external_data: Optional[Callable[[], Any]] = None,
        config: Optional[FormLogicConfig] = None,
    ):
        self.scope = scope or CacheScope()
        self.registry = registry or FunctionRegistry()
        self.config = config or get_config()
        self._external_data = external_data or (lambda: UNDEFINED)
        self.evaluator = ConditionEvaluator(self.scope.warnings)
        self.resolver = ConditionResolver(self.scope, self.registry, transport, self._external_data, self.config)

    # ==========================================
    # CONDITIONS
    # ==========================================

    def compile(self, condition: ConditionLike, debounce_ms: Optional[int] = None) -> LogicFn:
        """
        Compile ``condition``.

        Raises InvalidConditionShapeError for malformed descriptions (for
        example a remote condition inside and/or). Remote/async conditions
        are handed to the ConditionResolver. With ``debounce_ms`` the result
        only follows the condition after that much quiet time.
        """
        cond = parse_condition(condition)
        if cond.out_of_band:
            return self.resolver.compile(cond)

        key = condition_key(cond)
        if debounce_ms is None:
            return self.scope.memoize(self.scope.logic_functions, key, lambda: self._build_sync(cond))

        debounced_key = f"{key}|debounce:{int(debounce_ms)}"
        return self.scope.memoize(
            self.scope.logic_functions,
            debounced_key,
            lambda: self._build_debounced(cond, debounced_key, int(debounce_ms)),
        )

    def _build_sync(self, cond: Condition) -> LogicFn:
        def logic_fn(state: FieldState) -> bool:
            ctx = self.context_for(state)
            return self.evaluator.evaluate(cond, ctx)

        logic_fn.condition = cond  # type: ignore[attr-defined]
        return logic_fn

    def _build_debounced(self, cond: Condition, key: str, debounce_ms: int) -> LogicFn:
        immediate_fn = self._build_sync(cond)

        def logic_fn(state: FieldState) -> bool:
            slot_key = (key, tuple(state.path_keys()))
            slot = self.scope.debounced_slots.get(slot_key)
            if slot is None:
                immediate = Cell(None, name="immediate")
                slot = DebouncedSlot(immediate, debounce(immediate, debounce_ms, self.scope.scheduler, initial=False))
                self.scope.debounced_slots[slot_key] = slot
            slot.immediate.write(immediate_fn(state))
            return bool(slot.debounced.read())

        logic_fn.condition = cond  # type: ignore[attr-defined]
        return logic_fn

    # ==========================================
    # DYNAMIC VALUES
    # ==========================================

    def compile_value(self, expression: str) -> ValueFn:
        """
        Compile an expression computing a value (validator bounds, error
        params, derivations) from an already built context.

        Evaluation faults are logged and yield UNDEFINED.
        """
        key = cache_key("value", expression)

        def _build():
            def value_fn(ctx: EvaluationContext) -> Any:
                try:
                    return evaluate(expression, ctx.to_scope())
                except ExpressionError as e:
                    logger.error("Error evaluating dynamic value %r: %s", expression, e)
                    return UNDEFINED

            return value_fn

        return self.scope.memoize(self.scope.value_functions, key, _build)

    def context_for(self, state: FieldState, tracked: bool = True) -> EvaluationContext:
        """Context for ``state`` with this factory's custom functions and external data."""
        build = build_tracked_context if tracked else build_untracked_context
        return build(state, self.registry.get_custom_functions(), self._external_data())

    def snapshot_context(self, root_value: Any, path: Any) -> EvaluationContext:
        """Context over a plain snapshot of the form (tree-level pass, derivations)."""
        return context_for_path(root_value, path, self.registry.get_custom_functions(), self._external_data())

    def compile_type_predicate(self, predicate: str) -> Callable[[Any], bool]:
        """
        Runtime type guard for applyWhenValue.

        A type name ("string", "array", "object", ...) checks the value's
        type; anything else is an expression over ``value`` evaluated by the
        restricted evaluator (never exec).
        """
        if predicate in TYPE_NAMES:
            return lambda value: _type_matches(predicate, value)

        def type_predicate(value: Any) -> bool:
            try:
                return js_truthy(evaluate(predicate, {"value": value}))
            except ExpressionError as e:
                logger.error("Error evaluating type predicate %r: %s", predicate, e)
                return False

        return type_predicate
