"""
formlogic - declarative form logic: conditions, validation, derived values.

Public API:
- FormRuntime: one live form instance (values, rules, validation passes)
- LogicFactory: compile conditions into cached logic functions
- evaluate / evaluate_condition: restricted expressions and conditions
- FunctionRegistry / SchemaRegistry: named functions and schemas
- HttpxTransport: default transport for remote conditions and validators
"""

from .condition_evaluator import evaluate_condition
from .conditions import parse_condition
from .context import EvaluationContext
from .errors import (
    DerivationCycleError,
    ExpressionError,
    ExpressionRuntimeError,
    ExpressionSyntaxError,
    FormLogicError,
    InvalidConditionShapeError,
    ResolutionFailure,
    UnknownFunctionError,
    UnknownSchemaError,
)
from .expression_evaluator import evaluate
from .form import FieldHandle, FormRuntime
from .logic_factory import LogicFactory
from .registry import AsyncValidatorSpec, FunctionRegistry, RemoteValidatorSpec, SchemaRegistry
from .schemas import SchemaDefinition
from .transport import HttpxTransport
from .validators import ValidationError, ValidationResult
from .values import UNDEFINED

# Derive version from package metadata
try:
    from importlib.metadata import version
    __version__ = version("formlogic")
except Exception:
    __version__ = "0.1.0"

__all__ = [
    "FormRuntime",
    "FieldHandle",
    "LogicFactory",
    "EvaluationContext",
    "evaluate",
    "evaluate_condition",
    "parse_condition",
    "FunctionRegistry",
    "SchemaRegistry",
    "SchemaDefinition",
    "AsyncValidatorSpec",
    "RemoteValidatorSpec",
    "HttpxTransport",
    "ValidationError",
    "ValidationResult",
    "UNDEFINED",
    "FormLogicError",
    "ExpressionError",
    "ExpressionSyntaxError",
    "ExpressionRuntimeError",
    "UnknownFunctionError",
    "InvalidConditionShapeError",
    "ResolutionFailure",
    "UnknownSchemaError",
    "DerivationCycleError",
]
