"""
formlogic/condition_evaluator.py

evaluate_condition(): dispatch one Condition variant to a boolean.

Never raises. Any fault inside the dispatch is logged and the condition
evaluates to False, so a broken condition cannot poison the reactive graph
it sits in.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional

from .conditions import (
    AndCondition,
    AsyncCondition,
    Condition,
    ConditionLike,
    CustomCondition,
    ExpressionCondition,
    FieldValueCondition,
    FormValueCondition,
    LiteralCondition,
    OrCondition,
    RemoteCondition,
    parse_condition,
)
from .context import EvaluationContext
from .diagnostics import WarningTracker, get_logger
from .errors import ExpressionError
from .expression_evaluator import evaluate
from .values import compare_values, get_nested_value, has_nested_property, js_truthy

logger = get_logger("conditions")


def coerce_result(value: Any, site: str, warnings: Optional[WarningTracker], what: str = "Expression") -> bool:
    """
    ``!!value``; a non-boolean result is accepted but diagnosed once per site.
    """
    if isinstance(value, bool):
        return value
    coerced = js_truthy(value)
    message = "%s %s returned a non-boolean value (%r), coerced to %s. Return an explicit boolean instead."
    if warnings is not None:
        warnings.warn_once(site, message, what, site, value, coerced)
    else:
        logger.warning(message, what, site, value, coerced)
    return coerced


def resolve_field_value(field_path: str, ctx: EvaluationContext) -> Any:
    """
    Value of ``field_path`` as seen from ``ctx``.

    Array-scoped contexts look in the current item first and fall back to the
    whole form only when the item has no such key.
    """
    if ctx.is_array_scoped and isinstance(ctx.form_value, Mapping):
        if has_nested_property(ctx.form_value, field_path):
            return get_nested_value(ctx.form_value, field_path)
        return get_nested_value(ctx.root_value, field_path)
    return get_nested_value(ctx.form_value, field_path)


class ConditionEvaluator:
    """Stateless dispatcher; ``warnings`` scopes the one-time diagnostics."""

    def __init__(self, warnings: Optional[WarningTracker] = None):
        self.warnings = warnings
        self._handlers: Dict[type, Callable[[Any, EvaluationContext], bool]] = {
            LiteralCondition: self._literal,
            FieldValueCondition: self._field_value,
            FormValueCondition: self._form_value,
            ExpressionCondition: self._expression,
            CustomCondition: self._custom,
            AndCondition: self._and,
            OrCondition: self._or,
            RemoteCondition: self._out_of_band,
            AsyncCondition: self._out_of_band,
        }

    def evaluate(self, condition: ConditionLike, ctx: EvaluationContext) -> bool:
        try:
            cond = parse_condition(condition)
            handler = self._handlers.get(type(cond))
            if handler is None:
                logger.error("No evaluator for condition type %s", type(cond).__name__)
                return False
            return handler(cond, ctx)
        except Exception:
            logger.exception("Condition evaluation failed for %r at %s", condition, ctx.path or "<root>")
            return False

    def _literal(self, cond: LiteralCondition, ctx: EvaluationContext) -> bool:
        return bool(cond.value)

    def _field_value(self, cond: FieldValueCondition, ctx: EvaluationContext) -> bool:
        actual = resolve_field_value(cond.field_path, ctx)
        return compare_values(actual, cond.value, cond.operator)

    def _form_value(self, cond: FormValueCondition, ctx: EvaluationContext) -> bool:
        return compare_values(ctx.form_value, cond.value, cond.operator)

    def _expression(self, cond: ExpressionCondition, ctx: EvaluationContext) -> bool:
        try:
            result = evaluate(cond.code, ctx.to_scope())
        except ExpressionError as e:
            logger.error("Error evaluating expression condition %r: %s", cond.code, e)
            return False
        return coerce_result(result, cond.code, self.warnings)

    def _custom(self, cond: CustomCondition, ctx: EvaluationContext) -> bool:
        fn = ctx.custom_functions.get(cond.function_name)
        if fn is None:
            logger.error(
                "Custom function '%s' not found. Registered: %s",
                cond.function_name,
                ", ".join(sorted(ctx.custom_functions)) or "<none>",
            )
            return False
        try:
            return js_truthy(fn(ctx))
        except Exception:
            logger.exception("Error executing custom function '%s'", cond.function_name)
            return False

    def _and(self, cond: AndCondition, ctx: EvaluationContext) -> bool:
        # Empty and -> True
        return all(self.evaluate(c, ctx) for c in cond.conditions)

    def _or(self, cond: OrCondition, ctx: EvaluationContext) -> bool:
        # Empty or -> False
        return any(self.evaluate(c, ctx) for c in cond.conditions)

    def _out_of_band(self, cond: Condition, ctx: EvaluationContext) -> bool:
        logger.error(
            "'%s' conditions resolve asynchronously; compile them with LogicFactory. Using pendingValue.",
            cond.kind,
        )
        return bool(cond.pending_value)


def evaluate_condition(
    condition: ConditionLike,
    ctx: EvaluationContext,
    warnings: Optional[WarningTracker] = None,
) -> bool:
    """
    Evaluate ``condition`` against ``ctx``.

        evaluate_condition(
            {"type": "fieldValue", "fieldPath": "accountType", "operator": "notEquals", "value": "business"},
            EvaluationContext(form_value={"accountType": "personal"}),
        )
        -> True
    """
    return ConditionEvaluator(warnings).evaluate(condition, ctx)
