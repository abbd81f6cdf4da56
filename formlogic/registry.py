"""
formlogic/registry.py

Name -> callable registries consumed by the factories, and the schema registry.

One FunctionRegistry / SchemaRegistry pair normally belongs to one form
runtime; nothing here is module-global.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from .diagnostics import get_logger
from .errors import UnknownFunctionError, UnknownSchemaError

if TYPE_CHECKING:
    from .context import EvaluationContext
    from .schemas import SchemaDefinition

logger = get_logger("registry")

FIELD_SCOPE = "field"
FORM_SCOPE = "form"


@dataclass
class RegisteredValidator:
    """
    Synchronous validator function ``fn(ctx, params)``.

    Returns None/True to pass; False, a kind string, a dict or a
    ValidationError to fail. ``scope="form"`` or a non-empty ``depends_on``
    marks it as reading other fields.
    """

    name: str
    fn: Callable[["EvaluationContext", Dict[str, Any]], Any]
    scope: str = FIELD_SCOPE
    depends_on: Sequence[str] = ()

    @property
    def cross_field(self) -> bool:
        return self.scope == FORM_SCOPE or bool(self.depends_on)


def _ignore_failure(error: BaseException, ctx: "EvaluationContext") -> None:
    # Network trouble must not block submission
    logger.warning("Async validation for %s failed, ignoring: %s", ctx.path or "<root>", error)
    return None


@dataclass
class AsyncValidatorSpec:
    """
    Function-backed async validator.

    ``params(ctx, config_params)`` builds the call arguments, ``run(params)``
    awaits the lookup. ``on_success(result, ctx)`` decides pass/fail: a
    successful call can still mean "invalid". ``on_error(exc, ctx)`` is the
    fallback, ignoring failures by default.
    """

    run: Callable[[Any], Awaitable[Any]]
    on_success: Callable[[Any, "EvaluationContext"], Any]
    params: Optional[Callable[["EvaluationContext", Dict[str, Any]], Any]] = None
    on_error: Callable[[BaseException, "EvaluationContext"], Any] = _ignore_failure


@dataclass
class RemoteValidatorSpec:
    """
    HTTP-backed async validator.

    ``request(ctx, config_params)`` returns a request mapping
    (``{url, method?, queryParams?, body?, headers?}``) or None to skip.
    """

    request: Callable[["EvaluationContext", Dict[str, Any]], Any]
    on_success: Callable[[Any, "EvaluationContext"], Any]
    on_error: Callable[[BaseException, "EvaluationContext"], Any] = _ignore_failure


@dataclass
class _Entry:
    fn: Any
    scope: str = FORM_SCOPE


class FunctionRegistry:
    """Custom functions, validators, async/remote validators, async condition functions, derivations."""

    def __init__(self):
        self._lock = threading.Lock()
        self._custom: Dict[str, _Entry] = {}
        self._validators: Dict[str, RegisteredValidator] = {}
        self._async_validators: Dict[str, AsyncValidatorSpec] = {}
        self._remote_validators: Dict[str, RemoteValidatorSpec] = {}
        self._async_functions: Dict[str, Callable[..., Awaitable[Any]]] = {}
        self._derivations: Dict[str, Callable[["EvaluationContext"], Any]] = {}
        self._async_derivations: Dict[str, Callable[["EvaluationContext"], Awaitable[Any]]] = {}

    # --- custom condition functions ---

    def register_custom_function(self, name: str, fn: Callable[["EvaluationContext"], Any], scope: str = FORM_SCOPE) -> None:
        """
        Register a predicate for ``custom`` conditions.

        ``scope="field"`` declares it only reads its own field; anything else
        is treated as cross-field.
        """
        with self._lock:
            self._custom[name] = _Entry(fn, scope)

    def get_custom_functions(self) -> Dict[str, Callable]:
        with self._lock:
            return {name: entry.fn for name, entry in self._custom.items()}

    def get_function_scope(self, name: str) -> Optional[str]:
        with self._lock:
            entry = self._custom.get(name)
            return entry.scope if entry else None

    # --- validators ---

    def register_validator(
        self,
        name: str,
        fn: Callable[["EvaluationContext", Dict[str, Any]], Any],
        scope: str = FIELD_SCOPE,
        depends_on: Sequence[str] = (),
    ) -> None:
        with self._lock:
            self._validators[name] = RegisteredValidator(name, fn, scope, tuple(depends_on))

    def get_validator(self, name: str) -> RegisteredValidator:
        with self._lock:
            if name not in self._validators:
                raise UnknownFunctionError(name, "validator", self._validators.keys())
            return self._validators[name]

    def register_async_validator(self, name: str, spec: AsyncValidatorSpec) -> None:
        with self._lock:
            self._async_validators[name] = spec

    def get_async_validator(self, name: str) -> AsyncValidatorSpec:
        with self._lock:
            if name not in self._async_validators:
                raise UnknownFunctionError(name, "async validator", self._async_validators.keys())
            return self._async_validators[name]

    def register_remote_validator(self, name: str, spec: RemoteValidatorSpec) -> None:
        with self._lock:
            self._remote_validators[name] = spec

    def get_remote_validator(self, name: str) -> RemoteValidatorSpec:
        with self._lock:
            if name not in self._remote_validators:
                raise UnknownFunctionError(name, "remote validator", self._remote_validators.keys())
            return self._remote_validators[name]

    # --- async condition functions ---

    def register_async_function(self, name: str, fn: Callable[..., Awaitable[Any]]) -> None:
        """``fn(params, ctx)`` is awaited by ``async`` conditions."""
        with self._lock:
            self._async_functions[name] = fn

    def get_async_function(self, name: str) -> Callable[..., Awaitable[Any]]:
        with self._lock:
            if name not in self._async_functions:
                raise UnknownFunctionError(name, "async function", self._async_functions.keys())
            return self._async_functions[name]

    # --- derivations ---

    def register_derivation(self, name: str, fn: Callable[["EvaluationContext"], Any]) -> None:
        with self._lock:
            self._derivations[name] = fn

    def get_derivation(self, name: str) -> Callable[["EvaluationContext"], Any]:
        with self._lock:
            if name not in self._derivations:
                raise UnknownFunctionError(name, "derivation function", self._derivations.keys())
            return self._derivations[name]

    def register_async_derivation(self, name: str, fn: Callable[["EvaluationContext"], Awaitable[Any]]) -> None:
        """``await fn(ctx)`` computes the target of an ``asyncFunctionName`` derivation."""
        with self._lock:
            self._async_derivations[name] = fn

    def get_async_derivation(self, name: str) -> Callable[["EvaluationContext"], Awaitable[Any]]:
        with self._lock:
            if name not in self._async_derivations:
                raise UnknownFunctionError(name, "async derivation function", self._async_derivations.keys())
            return self._async_derivations[name]


class SchemaRegistry:
    """Named SchemaDefinitions, registered in any order relative to use."""

    def __init__(self):
        self._lock = threading.Lock()
        self._schemas: Dict[str, "SchemaDefinition"] = {}

    def register(self, schema: "SchemaDefinition") -> None:
        with self._lock:
            self._schemas[schema.name] = schema

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._schemas)

    def get(self, name: str) -> "SchemaDefinition":
        """Strict lookup: raises UnknownSchemaError."""
        with self._lock:
            if name not in self._schemas:
                raise UnknownSchemaError(name, list(self._schemas))
            return self._schemas[name]

    def resolve(self, name: str) -> Optional["SchemaDefinition"]:
        """Lenient lookup used while applying schemas: logs and returns None when unknown."""
        try:
            return self.get(name)
        except UnknownSchemaError as e:
            logger.error("%s", e)
            return None

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._schemas
