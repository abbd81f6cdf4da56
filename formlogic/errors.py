"""
errors.py

Exception taxonomy for formlogic.

Only two families escape to callers at setup time:
    - InvalidConditionShapeError (malformed condition description)
    - UnknownFunctionError       (validator references an unregistered function)

Everything raised while evaluating conditions/logic is caught at the nearest
evaluation boundary and downgraded to a safe default plus a logged diagnostic.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


# -------------------------------------------------------------------------
# Base
# -------------------------------------------------------------------------


class FormLogicError(Exception):
    """Base class for all formlogic errors."""


# -------------------------------------------------------------------------
# Expressions
# -------------------------------------------------------------------------


class ExpressionError(FormLogicError):
    """Base class for expression faults."""

    def __init__(self, message: str, expression: str = ""):
        super().__init__(message)
        self.expression = expression


class ExpressionSyntaxError(ExpressionError):
    """Raised when expression text does not match the grammar."""

    def __init__(self, message: str, expression: str = "", position: int = 0):
        super().__init__(message, expression)
        self.position = position

    def __str__(self) -> str:
        return f"{self.args[0]} (at position {self.position} in {self.expression!r})"


class ExpressionRuntimeError(ExpressionError):
    """Raised when a parsed expression faults during evaluation."""


# -------------------------------------------------------------------------
# Configuration defects
# -------------------------------------------------------------------------


class UnknownFunctionError(FormLogicError):
    """Raised when a named function is not registered."""

    def __init__(self, name: str, kind: str = "function", available: Sequence[str] = ()):
        names = ", ".join(sorted(available)) or "<none>"
        super().__init__(f"Unknown {kind} '{name}'. Registered: {names}")
        self.name = name
        self.kind = kind


class InvalidConditionShapeError(FormLogicError):
    """
    Raised when a condition description is structurally invalid.

    The canonical case: a remote/async condition nested inside and/or.
    Those need out-of-band resolution and cannot take part in a synchronous
    boolean fold.
    """


class UnknownSchemaError(FormLogicError):
    """Raised by SchemaRegistry.get() for an unregistered schema name."""

    def __init__(self, name: str, available: Sequence[str] = ()):
        names = ", ".join(sorted(available)) or "<none>"
        super().__init__(f"Schema not found: '{name}'. Available schemas: {names}")
        self.name = name
        self.available = tuple(available)


class DerivationCycleError(FormLogicError):
    """Raised when registered derivations depend on each other in a loop."""

    def __init__(self, cycle: Sequence[str]):
        super().__init__("Derivation cycle detected: " + " -> ".join(cycle))
        self.cycle = tuple(cycle)


# -------------------------------------------------------------------------
# Runtime resolution
# -------------------------------------------------------------------------


class ResolutionFailure(FormLogicError):
    """A remote request or async function rejected (or timed out)."""

    def __init__(self, key: str, cause: Optional[BaseException] = None, detail: Any = None):
        msg = f"Resolution failed for {key}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
        self.key = key
        self.cause = cause
        self.detail = detail
