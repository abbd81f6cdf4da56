"""
formlogic/cross_field.py

Static detection of rules that read fields other than their own target.

A validator re-evaluated on every change of its field must not reactively
read another field: the other field's write re-triggers it, and the pair can
keep feeding each other. Such validators are hoisted out of the field-level
pass into the tree-level pass, which runs over an untracked snapshot of the
whole form.

Detection is shape based:
    - fieldValue conditions naming another field
    - formValue conditions (they read the whole form)
    - expressions reading ``formValue.x`` / ``rootFormValue.x``
    - custom functions not registered with scope="field"
    - declared ``dependsOn`` lists and form-scoped validator functions
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, List, Optional, Set, Tuple

from .conditions import (
    AndCondition,
    AsyncCondition,
    ConditionLike,
    CustomCondition,
    ExpressionCondition,
    FieldValueCondition,
    FormValueCondition,
    OrCondition,
    RemoteCondition,
    parse_condition,
)
from .registry import FIELD_SCOPE, FunctionRegistry
from .tokenize import extract_root_fields, references_form_value
from .validators import ValidatorConfig, ValidatorLike, parse_validator
from .values import parse_path

# Array-scoped expressions reach the whole form through rootFormValue
ROOT_VALUE_ACCESS_PATTERN = re.compile(r"\brootFormValue\s*(?:\??\.|\[)")

ALL_FIELDS = "*"

FunctionScopeLookup = Callable[[str], Optional[str]]


def expression_is_cross_field(expression: Optional[str]) -> bool:
    if not expression:
        return False
    return references_form_value(expression) or ROOT_VALUE_ACCESS_PATTERN.search(expression) is not None


def is_same_field(field_path: str, target_path: str) -> bool:
    """
    True if ``field_path`` designates ``target_path`` itself.

    Inside an array item a relative path names the item's own key:
    "quantity" is the same field as "items[2].quantity".
    """
    fp = parse_path(field_path)
    tp = parse_path(target_path)
    if not fp:
        return False
    if fp == tp:
        return True
    for pos in range(len(tp) - 1, -1, -1):
        if isinstance(tp[pos], int):
            return fp == tp[pos + 1:]
    return False


def condition_is_cross_field(
    condition: Optional[ConditionLike],
    target_path: str = "",
    function_scope: Optional[FunctionScopeLookup] = None,
) -> bool:
    if condition is None:
        return False
    cond = parse_condition(condition)

    if isinstance(cond, FieldValueCondition):
        return not is_same_field(cond.field_path, target_path)
    if isinstance(cond, FormValueCondition):
        return True
    if isinstance(cond, ExpressionCondition):
        return expression_is_cross_field(cond.code)
    if isinstance(cond, CustomCondition):
        scope = function_scope(cond.function_name) if function_scope else None
        return scope != FIELD_SCOPE
    if isinstance(cond, (AndCondition, OrCondition)):
        return any(condition_is_cross_field(c, target_path, function_scope) for c in cond.conditions)
    if isinstance(cond, RemoteCondition):
        expressions = list(cond.request.query_params.values())
        if cond.request.evaluate_body_expressions and isinstance(cond.request.body, dict):
            expressions.extend(cond.request.body.values())
        return any(isinstance(e, str) and expression_is_cross_field(e) for e in expressions)
    if isinstance(cond, AsyncCondition):
        return any(isinstance(e, str) and expression_is_cross_field(e) for e in cond.params.values())
    # literal
    return False


def condition_dependencies(condition: Optional[ConditionLike]) -> Set[str]:
    """
    Root fields a condition reads. ALL_FIELDS ("*") stands for "the whole
    form" (formValue comparisons, custom functions).
    """
    if condition is None:
        return set()
    cond = parse_condition(condition)
    if isinstance(cond, FieldValueCondition):
        root = parse_path(cond.field_path)
        return {str(root[0])} if root else set()
    if isinstance(cond, (FormValueCondition, CustomCondition)):
        return {ALL_FIELDS}
    if isinstance(cond, ExpressionCondition):
        return extract_root_fields(cond.code)
    if isinstance(cond, (AndCondition, OrCondition)):
        deps: Set[str] = set()
        for child in cond.conditions:
            deps |= condition_dependencies(child)
        return deps
    return set()


def validator_is_cross_field(
    config: ValidatorLike,
    target_path: str = "",
    registry: Optional[FunctionRegistry] = None,
) -> bool:
    """
    Should this validator run in the tree-level pass?

    Raises UnknownFunctionError for an unregistered custom validator
    function, the same as applying it would.
    """
    cfg = parse_validator(config)
    scope_lookup = registry.get_function_scope if registry is not None else None

    if any(not is_same_field(dep, target_path) for dep in cfg.depends_on):
        return True
    if any(condition_is_cross_field(guard, target_path, scope_lookup) for guard in cfg.when):
        return True
    if any(expression_is_cross_field(e) for e in cfg.error_params.values()):
        return True
    if cfg.is_async:
        # Async validators always run over an untracked snapshot
        return False
    if cfg.type == "custom" and cfg.function_name:
        return registry is not None and registry.get_validator(cfg.function_name).cross_field
    return expression_is_cross_field(cfg.expression)


def split_validators(
    bindings: Iterable[Tuple[str, ValidatorConfig]],
    registry: Optional[FunctionRegistry] = None,
) -> Tuple[List[Tuple[str, ValidatorConfig]], List[Tuple[str, ValidatorConfig]]]:
    """Partition ``(path, config)`` pairs into (field-level, tree-level), order kept."""
    field_level: List[Tuple[str, ValidatorConfig]] = []
    tree_level: List[Tuple[str, ValidatorConfig]] = []
    for path, config in bindings:
        if validator_is_cross_field(config, path, registry):
            tree_level.append((path, config))
        else:
            field_level.append((path, config))
    return field_level, tree_level
