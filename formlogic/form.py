"""
form.py

FormRuntime: one live form instance
-----------------------------------

Owns everything mutable about a form:

    value         : reactive Cell holding the whole form value
    scope         : CacheScope (compiled logic, remote results, timers)
    rules         : validators, logic and schema applications per path
    derivations   : computed values, applied after every write (HTTP and async
                    ones once their response arrives)

Public API:

    form = FormRuntime({"accountType": "personal", "qty": 3, "price": 4})

    form.add_logic("companyName", {"type": "hidden", "condition": {...}})
    form.add_validator("email", "required")
    form.apply_schema("address", {"type": "apply", "schema": "address"})
    form.add_derivation({"target": "total", "expression": "formValue.qty * formValue.price"})

    form.field("companyName").hidden()
    form.set("accountType", "business")
    result = form.validate()              # sync validators, field + tree level
    result = await form.validate_async()  # plus async/remote validators
    await form.settle()                   # wait for debounce timers and lookups

Field-level validators read their field through untracked contexts; validators
reading other fields run in the tree-level pass over a snapshot instead.
"""

from __future__ import annotations

import asyncio
import copy
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .cache_scope import CacheScope
from .conditions import ConditionLike
from .config import FormLogicConfig, get_config
from .cross_field import split_validators, validator_is_cross_field
from .derivations import DerivationConfig, DerivationEngine, DerivationResult
from .diagnostics import get_logger
from .errors import UnknownFunctionError
from .logic_factory import LogicFactory
from .reactive import Cell, Derived, untracked_scope
from .registry import FunctionRegistry, SchemaRegistry
from .schemas import (
    CollectedRules,
    LogicBinding,
    LogicLike,
    SchemaApplication,
    SchemaApplicator,
    ValidatorBinding,
    parse_application,
    parse_logic,
)
from .transport import Transport
from .ttl_cache import RemoteConditionCache
from .validators import ValidationError, ValidationResult, ValidatorConfig, ValidatorFactory, ValidatorLike, parse_validator
from .values import UNDEFINED, PathKey, format_path, get_nested_value, parse_path, set_nested_value, strict_equals

logger = get_logger("form")


def _deep_merge(base: Any, overlay: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base) if isinstance(base, Mapping) else {}
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), Mapping):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


class FieldHandle:
    """
    One field occurrence of a FormRuntime (the FieldState seen by logic functions).

    Handles are cached per path, so the same path always yields the same
    handle and the same per-occurrence state.
    """

    def __init__(self, form: "FormRuntime", keys: Tuple[PathKey, ...]):
        self.form = form
        self._keys = keys
        self.path = format_path(keys)
        self._watchers: Dict[str, Derived] = {}

    # --- FieldState ---

    def path_keys(self) -> Tuple[PathKey, ...]:
        return self._keys

    def root_value(self) -> Any:
        return self.form.value.read()

    def current_value(self) -> Any:
        return get_nested_value(self.root_value(), self._keys)

    def value_at(self, other_path: str) -> Any:
        return get_nested_value(self.root_value(), other_path)

    # --- convenience ---

    @property
    def value(self) -> Any:
        return get_nested_value(self.form.value.peek(), self._keys)

    def set(self, value: Any) -> DerivationResult:
        return self.form.set(self._keys, value)

    def evaluate(self, condition: ConditionLike, debounce_ms: Optional[int] = None) -> bool:
        """Evaluate an ad-hoc condition for this field (compiled and cached like any other)."""
        return self.form.logic.compile(condition, debounce_ms)(self)

    def logic(self, logic_type: str) -> bool:
        return self.form.logic_state(self, logic_type)

    def hidden(self) -> bool:
        return self.logic("hidden")

    def disabled(self) -> bool:
        return self.logic("disabled")

    def readonly(self) -> bool:
        return self.logic("readonly")

    def required(self) -> bool:
        return self.logic("required")

    def watch(self, logic_type: str) -> Derived:
        """Reactive view of one logic state; subscribe to be told when it flips."""
        watcher = self._watchers.get(logic_type)
        if watcher is None:
            watcher = Derived(lambda: self.logic(logic_type), name=f"{self.path}:{logic_type}")
            self._watchers[logic_type] = watcher
        return watcher

    def validators(self) -> List[ValidatorConfig]:
        """Validators applied at the field level for this path."""
        return [cfg for path, cfg in self.form.field_validators() if path == self.path]

    def __repr__(self) -> str:
        return f"FieldHandle({self.path!r})"


class FormRuntime:
    def __init__(
        self,
        value: Optional[Mapping[str, Any]] = None,
        *,
        functions: Optional[FunctionRegistry] = None,
        schemas: Optional[SchemaRegistry] = None,
        transport: Optional[Transport] = None,
        external_data: Any = UNDEFINED,
        config: Optional[FormLogicConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            value:         initial form value (deep copied).
            functions:     custom functions, validators, async/remote validators, derivations.
            schemas:       named schema definitions.
            transport:     network capability for remote conditions/validators.
            external_data: exposed to expressions as ``externalData``.
            config:        defaults to get_config().
            clock:         milliseconds clock for the remote result cache (tests).
        """
        self._lock = threading.RLock()
        self.config = config or get_config()
        self.functions = functions or FunctionRegistry()
        self.schemas = schemas or SchemaRegistry()
        self.transport = transport

        self.scope = CacheScope(condition_cache=RemoteConditionCache(clock=clock))
        self.value: Cell = Cell(copy.deepcopy(dict(value or {})), name="form")
        self.external_data: Cell = Cell(external_data, name="externalData")

        self.logic = LogicFactory(self.scope, self.functions, transport, self.external_data.read, self.config)
        self.validator_factory = ValidatorFactory(self.logic, transport)
        self.applicator = SchemaApplicator(self.schemas, self.logic)
        self.derivations = DerivationEngine(self.logic, self.config, transport, self._apply_derived)

        self._validators: List[ValidatorBinding] = []
        self._logic: List[LogicBinding] = []
        self._applications: List[Tuple[str, SchemaApplication]] = []
        self._fields: Dict[Tuple[PathKey, ...], FieldHandle] = {}

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def field(self, path: Union[str, Sequence[PathKey]]) -> FieldHandle:
        keys = parse_path(path)
        with self._lock:
            handle = self._fields.get(keys)
            if handle is None:
                handle = FieldHandle(self, keys)
                self._fields[keys] = handle
            return handle

    def get(self, path: Union[str, Sequence[PathKey], None] = None) -> Any:
        """Snapshot read (no dependency registered)."""
        root = self.value.peek()
        return copy.deepcopy(root if not path else get_nested_value(root, path))

    def set(self, path: Union[str, Sequence[PathKey]], value: Any) -> DerivationResult:
        with self._lock:
            return self._commit(set_nested_value(self.value.peek(), path, copy.deepcopy(value)))

    def patch(self, delta: Mapping[str, Any]) -> DerivationResult:
        """Deep-merge ``delta`` into the form value."""
        if not isinstance(delta, Mapping):
            raise TypeError("patch expects a mapping delta")
        with self._lock:
            return self._commit(_deep_merge(self.value.peek(), delta))

    def replace(self, value: Mapping[str, Any]) -> DerivationResult:
        if not isinstance(value, Mapping):
            raise TypeError("replace expects a mapping")
        with self._lock:
            return self._commit(copy.deepcopy(dict(value)))

    def set_external_data(self, data: Any) -> None:
        self.external_data.write(data)

    def _commit(self, new_value: Any) -> DerivationResult:
        previous = self.value.peek()
        result = self.derivations.run(new_value)
        self.value.write(result.value)
        self.derivations.notify(previous, result.value)
        return result

    def _apply_derived(self, target: str, value: Any) -> None:
        if strict_equals(get_nested_value(self.value.peek(), target), value):
            return
        self.set(target, value)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_validator(self, path: str, validator: ValidatorLike) -> ValidatorConfig:
        """
        Attach a validator to ``path``.

        Fails fast: malformed configs raise InvalidConditionShapeError and
        unregistered functions raise UnknownFunctionError.
        """
        config = parse_validator(validator)
        path = format_path(parse_path(path))
        self.validator_factory.build(config)
        validator_is_cross_field(config, path, self.functions)
        with self._lock:
            self._validators.append(ValidatorBinding(path, config))
        return config

    def add_logic(self, path: str, logic: LogicLike) -> None:
        config = parse_logic(logic)
        # Compile now so shape errors surface here
        self.logic.compile(config.condition, config.debounce_ms)
        with self._lock:
            self._logic.append(LogicBinding(format_path(parse_path(path)), config))

    def apply_schema(self, path: str, application: Union[SchemaApplication, Mapping[str, Any], str]) -> SchemaApplication:
        """
        Attach a schema application; a bare name means ``{"type": "apply", "schema": name}``.

        Validators of every schema reachable now are built at once, so an
        unregistered function raises UnknownFunctionError here. Schemas
        registered later are checked when validation collects them.
        """
        if isinstance(application, str):
            application = {"type": "apply", "schema": application}
        parsed = parse_application(application)
        for definition in self.applicator.reachable(parsed):
            for validator in definition.validators:
                self.validator_factory.build(validator)
        with self._lock:
            self._applications.append((format_path(parse_path(path)), parsed))
        return parsed

    def add_derivation(self, derivation: Union[DerivationConfig, Mapping[str, Any]]) -> DerivationResult:
        """Register a derivation and bring the current value up to date with it."""
        with self._lock:
            config = self.derivations.add(derivation)
            result = self._commit(self.value.peek())
            if config.is_async:
                self.derivations.prime(config, self.value.peek())
            return result

    def rules(self, root_value: Any = None) -> CollectedRules:
        """
        Every (path, rule) binding for ``root_value`` (default: current snapshot).

        Direct rules come first, then schema rules; ``required`` logic adds a
        guarded required validator.
        """
        root = self.value.peek() if root_value is None else root_value
        collected = self.applicator.collect(self._applications, root)
        out = CollectedRules(
            validators=list(self._validators) + collected.validators,
            logic=list(self._logic) + collected.logic,
        )
        for binding in out.logic:
            if binding.config.type == "required":
                config = parse_validator("required")
                for guard in (binding.config.condition,) + binding.config.guards:
                    config = config.with_guard(guard)
                out.validators.append(ValidatorBinding(binding.path, config, binding.schema))
        return out

    def _validator_pairs(self, root_value: Any = None) -> List[Tuple[str, ValidatorConfig]]:
        pairs = []
        for binding in self.rules(root_value).validators:
            try:
                self.validator_factory.build(binding.config)
            except UnknownFunctionError as e:
                # Only schemas registered after apply_schema() get here
                logger.error("Skipping validator on '%s' from schema '%s': %s", binding.path, binding.schema, e)
                continue
            pairs.append((binding.path, binding.config))
        return pairs

    def _split(self, root_value: Any = None):
        return split_validators(self._validator_pairs(root_value), self.functions)

    def field_validators(self) -> List[Tuple[str, ValidatorConfig]]:
        return self._split()[0]

    def tree_validators(self) -> List[Tuple[str, ValidatorConfig]]:
        """Validators hoisted to the tree-level pass (they read other fields)."""
        return self._split()[1]

    # ------------------------------------------------------------------
    # Logic
    # ------------------------------------------------------------------

    def logic_state(self, handle: FieldHandle, logic_type: str) -> bool:
        """True if any logic rule of ``logic_type`` on the handle's path holds."""
        # Tracked read: rules from applyEach/applyWhenValue follow the value
        root = self.value.read()
        for binding in self.rules(root).logic:
            if binding.path != handle.path or binding.config.type != logic_type:
                continue
            config = binding.config
            guards_hold = all(self.logic.compile(guard)(handle) for guard in config.guards)
            if guards_hold and self.logic.compile(config.condition, config.debounce_ms)(handle):
                return True
        return False

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _run_sync(self, snapshot: Any) -> ValidationResult:
        field_level, tree_level = self._split(snapshot)
        errors: List[ValidationError] = []

        for path, config in field_level:
            validator = self.validator_factory.build(config)
            handle = self.field(path)
            ctx = self.logic.context_for(handle, tracked=False)
            error = validator.validate(ctx, handle)
            if error is not None:
                errors.append(error)

        for path, config in tree_level:
            validator = self.validator_factory.build(config)
            ctx = self.logic.snapshot_context(snapshot, path)
            error = validator.validate(ctx, self.field(path))
            if error is not None:
                errors.append(error)

        return ValidationResult(errors)

    def validate(self) -> ValidationResult:
        """Synchronous pass: field-level validators, then the tree-level pass."""
        with untracked_scope():
            snapshot = self.value.peek()
            result = self._run_sync(snapshot)
        logger.debug("Validation: %d error(s)", len(result.errors))
        return result

    async def validate_async(self) -> ValidationResult:
        """Synchronous pass plus every async/remote validator, awaited together."""
        with untracked_scope():
            snapshot = self.value.peek()
            result = self._run_sync(snapshot)
            pending = []
            for path, config in self._validator_pairs(snapshot):
                validator = self.validator_factory.build(config)
                if validator.is_async:
                    ctx = self.logic.snapshot_context(snapshot, path)
                    pending.append(validator.validate_async(ctx, self.field(path)))

        outcomes = await asyncio.gather(*pending)
        result.errors.extend(error for error in outcomes if error is not None)
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def settle(self, timeout_s: float = 5.0) -> None:
        """Wait until debounce timers have fired and lookups have finished."""
        await self.scope.scheduler.wait_idle(timeout_s)

    def dispose(self) -> None:
        with self._lock:
            for handle in self._fields.values():
                for watcher in handle._watchers.values():
                    watcher.dispose()
            self._fields.clear()
            self.scope.dispose()
