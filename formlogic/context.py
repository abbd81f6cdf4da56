"""
formlogic/context.py

EvaluationContext: the inputs one condition/expression evaluation sees.

Two read modes over live form state:
    - tracked   : reads register reactive dependencies (visibility, enablement)
    - untracked : snapshot reads (validators, tree-level pass)

A context is rebuilt on every evaluation call and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .reactive import untracked
from .values import UNDEFINED, PathKey, format_path, get_nested_value, parse_path

_MISSING = object()


@runtime_checkable
class FieldState(Protocol):
    """
    Accessor for one field occurrence, provided by the form layer.

    ``path_keys()`` is the structural identity used to key per-occurrence
    state (signal pairs, debounced cells); it is stable across evaluations
    even though contexts are recreated each time.
    """

    def current_value(self) -> Any: ...

    def path_keys(self) -> Tuple[PathKey, ...]: ...

    def value_at(self, other_path: str) -> Any: ...

    def root_value(self) -> Any: ...


@dataclass
class EvaluationContext:
    """Everything an evaluation may read. ``form_value`` is the array item for array-scoped fields."""

    current_value: Any = UNDEFINED
    form_value: Any = field(default_factory=dict)
    root_value: Any = None
    path: str = ""
    custom_functions: Mapping[str, Callable] = field(default_factory=dict)
    external_data: Any = UNDEFINED
    array_index: Optional[int] = None
    array_path: Optional[str] = None

    def __post_init__(self):
        if self.root_value is None:
            self.root_value = self.form_value

    @property
    def is_array_scoped(self) -> bool:
        return self.array_index is not None

    def to_scope(self, **extra: Any) -> Dict[str, Any]:
        """Identifiers visible to expressions evaluated in this context."""
        scope = {
            "fieldValue": self.current_value,
            "formValue": self.form_value,
            "rootFormValue": self.root_value,
            "fieldPath": self.path,
            "externalData": self.external_data,
            "arrayIndex": UNDEFINED if self.array_index is None else self.array_index,
        }
        scope.update(extra)
        return scope


def _array_scope(root_value: Any, keys: Sequence[PathKey]):
    """Locate the innermost array item on the path: (item, index, array_path) or None."""
    for pos in range(len(keys) - 1, -1, -1):
        if isinstance(keys[pos], int) and pos > 0:
            item = get_nested_value(root_value, keys[: pos + 1])
            return item, keys[pos], format_path(keys[:pos])
    return None


def context_for_path(
    root_value: Any,
    path: Any,
    custom_functions: Optional[Mapping[str, Callable]] = None,
    external_data: Any = UNDEFINED,
    current_value: Any = _MISSING,
) -> EvaluationContext:
    """
    Build a context from plain values.

    ``current_value`` defaults to the value at ``path``. When the path runs
    through an array item, ``form_value`` is that item.
    """
    keys = parse_path(path)
    if current_value is _MISSING:
        current_value = get_nested_value(root_value, keys) if keys else UNDEFINED

    form_value, array_index, array_path = root_value, None, None
    scoped = _array_scope(root_value, keys)
    if scoped is not None:
        item, array_index, array_path = scoped
        if item is not UNDEFINED:
            form_value = item

    return EvaluationContext(
        current_value=current_value,
        form_value=form_value,
        root_value=root_value,
        path=format_path(keys),
        custom_functions=custom_functions or {},
        external_data=external_data,
        array_index=array_index,
        array_path=array_path,
    )


def build_tracked_context(
    state: FieldState,
    custom_functions: Optional[Mapping[str, Callable]] = None,
    external_data: Any = UNDEFINED,
) -> EvaluationContext:
    """Context whose reads register dependencies on the form value."""
    root = state.root_value()
    return context_for_path(
        root,
        tuple(state.path_keys()),
        custom_functions,
        external_data,
        current_value=state.current_value(),
    )


def build_untracked_context(
    state: FieldState,
    custom_functions: Optional[Mapping[str, Callable]] = None,
    external_data: Any = UNDEFINED,
) -> EvaluationContext:
    """Snapshot context: no dependency is registered on the caller's computation."""
    return untracked(lambda: build_tracked_context(state, custom_functions, external_data))
