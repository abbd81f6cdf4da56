"""
formlogic/schemas.py

Reusable rule bundles.

    LogicConfig        - hidden / disabled / readonly / required + condition
    SchemaDefinition   - named bundle: validators, logic, sub-schemas
    SchemaApplication  - how a schema attaches to a path:
                           apply           unconditional
                           applyWhen       gated by a condition
                           applyWhenValue  gated by a type predicate on the target value
                           applyEach       once per element of an array value
    SchemaApplicator   - expands applications into concrete (path, rule) bindings

Schemas are referenced by name or inlined. A name nobody registered is
logged (with the available names) and skipped; registration order relative
to use is not guaranteed, so it never raises.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .conditions import Condition, ConditionLike, parse_condition, to_dict
from .diagnostics import get_logger
from .errors import InvalidConditionShapeError
from .logic_factory import LogicFactory
from .operator_lexicon import LOGIC_TYPES
from .registry import SchemaRegistry
from .validators import ValidatorConfig, parse_validator
from .values import PathKey, format_path, get_nested_value, parse_path

logger = get_logger("schemas")

APPLICATION_TYPES = ("apply", "applyWhen", "applyWhenValue", "applyEach")


@dataclass(frozen=True)
class LogicConfig:
    """``type`` holds while ``condition`` and every guard hold."""

    type: str
    condition: Condition
    debounce_ms: Optional[int] = None
    guards: Tuple[Condition, ...] = ()

    def __post_init__(self):
        if self.type not in LOGIC_TYPES:
            raise InvalidConditionShapeError(
                f"Unknown logic type {self.type!r}. Expected one of: {', '.join(sorted(LOGIC_TYPES))}"
            )

    def with_guard(self, condition: ConditionLike) -> "LogicConfig":
        return replace(self, guards=(parse_condition(condition),) + self.guards)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "condition": to_dict(self.condition)}
        if self.debounce_ms is not None:
            out["debounceMs"] = self.debounce_ms
        if self.guards:
            out["guards"] = [to_dict(g) for g in self.guards]
        return out


LogicLike = Union[LogicConfig, Mapping[str, Any]]


def parse_logic(data: LogicLike) -> LogicConfig:
    """
        {"type": "hidden", "condition": {"type": "fieldValue", "fieldPath": "accountType",
                                         "operator": "notEquals", "value": "business"}}
    """
    if isinstance(data, LogicConfig):
        return data
    if not isinstance(data, Mapping):
        raise InvalidConditionShapeError(f"Logic must be a mapping, got {type(data).__name__}")
    debounce_ms = data.get("debounceMs")
    return LogicConfig(
        type=data.get("type"),
        condition=parse_condition(data.get("condition", True)),
        debounce_ms=int(debounce_ms) if debounce_ms is not None else None,
    )


@dataclass(frozen=True)
class SchemaApplication:
    type: str
    schema: Union[str, "SchemaDefinition"]
    condition: Optional[Condition] = None
    type_predicate: Optional[str] = None
    # Relative to the path the application is attached to
    path: str = ""

    def __post_init__(self):
        if self.type not in APPLICATION_TYPES:
            raise InvalidConditionShapeError(f"Unknown schema application type: {self.type!r}")
        if self.type == "applyWhen" and self.condition is None:
            raise InvalidConditionShapeError("'applyWhen' requires a condition")
        if self.type == "applyWhenValue" and not self.type_predicate:
            raise InvalidConditionShapeError("'applyWhenValue' requires a typePredicate")


@dataclass
class SchemaDefinition:
    name: str
    validators: Sequence[ValidatorConfig] = field(default_factory=tuple)
    logic: Sequence[LogicConfig] = field(default_factory=tuple)
    sub_schemas: Sequence[SchemaApplication] = field(default_factory=tuple)
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SchemaDefinition":
        if not data.get("name"):
            raise InvalidConditionShapeError("Schema definition requires a 'name'")
        return cls(
            name=data["name"],
            validators=tuple(parse_validator(v) for v in data.get("validators") or ()),
            logic=tuple(parse_logic(item) for item in data.get("logic") or ()),
            sub_schemas=tuple(parse_application(s) for s in data.get("subSchemas") or ()),
            description=data.get("description"),
        )


def parse_application(data: Union[SchemaApplication, Mapping[str, Any]]) -> SchemaApplication:
    if isinstance(data, SchemaApplication):
        return data
    if not isinstance(data, Mapping):
        raise InvalidConditionShapeError(f"Schema application must be a mapping, got {type(data).__name__}")
    schema = data.get("schema")
    if isinstance(schema, Mapping):
        schema = SchemaDefinition.from_dict(schema)
    elif not isinstance(schema, (str, SchemaDefinition)):
        raise InvalidConditionShapeError("Schema application requires 'schema' (a name or a definition)")
    condition = data.get("condition")
    return SchemaApplication(
        type=data.get("type", "apply"),
        schema=schema,
        condition=parse_condition(condition) if condition is not None else None,
        type_predicate=data.get("typePredicate"),
        path=data.get("path", ""),
    )


# ==========================================
# BINDINGS
# ==========================================


@dataclass(frozen=True)
class ValidatorBinding:
    path: str
    config: ValidatorConfig
    schema: Optional[str] = None


@dataclass(frozen=True)
class LogicBinding:
    path: str
    config: LogicConfig
    schema: Optional[str] = None


@dataclass
class CollectedRules:
    validators: List[ValidatorBinding] = field(default_factory=list)
    logic: List[LogicBinding] = field(default_factory=list)


class SchemaApplicator:
    """
    Expands schema applications over a snapshot of the form value.

    applyEach and applyWhenValue depend on the current value, so callers
    collect again for each pass; applyWhen becomes a guard on every rule it
    brings in, which keeps it visible to the cross-field detector.
    """

    def __init__(self, registry: SchemaRegistry, logic: LogicFactory):
        self.registry = registry
        self.logic = logic

    def resolve(self, schema: Union[str, SchemaDefinition]) -> Optional[SchemaDefinition]:
        if isinstance(schema, SchemaDefinition):
            return schema
        return self.registry.resolve(schema)

    def reachable(self, application: SchemaApplication) -> List[SchemaDefinition]:
        """
        Definitions ``application`` reaches with the schemas registered now.

        Names not registered yet are skipped without a diagnostic: they may
        still be registered before the first validation pass.
        """
        found: List[SchemaDefinition] = []
        pending = [parse_application(application).schema]
        while pending:
            schema = pending.pop()
            if isinstance(schema, str):
                if schema not in self.registry:
                    continue
                schema = self.registry.get(schema)
            if any(schema is seen for seen in found):
                continue
            found.append(schema)
            pending.extend(parse_application(sub).schema for sub in schema.sub_schemas)
        return found

    def collect(
        self,
        applications: Sequence[Tuple[str, SchemaApplication]],
        root_value: Any,
    ) -> CollectedRules:
        """``applications`` are ``(base path, application)`` pairs, in declaration order."""
        out = CollectedRules()
        for base_path, application in applications:
            self._collect(parse_application(application), root_value, parse_path(base_path), (), (), out)
        return out

    def _collect(
        self,
        application: SchemaApplication,
        root_value: Any,
        base_keys: Tuple[PathKey, ...],
        guards: Tuple[Condition, ...],
        stack: Tuple[str, ...],
        out: CollectedRules,
    ) -> None:
        schema = self.resolve(application.schema)
        if schema is None:
            return
        if schema.name in stack:
            logger.error("Schema '%s' applies itself recursively (%s); skipping", schema.name, " -> ".join(stack))
            return

        target = base_keys + parse_path(application.path)

        if application.type == "applyWhen":
            guards = guards + (application.condition,)
        elif application.type == "applyWhenValue":
            predicate = self.logic.compile_type_predicate(application.type_predicate)
            if not predicate(get_nested_value(root_value, target)):
                return

        if application.type == "applyEach":
            items = get_nested_value(root_value, target)
            if not isinstance(items, (list, tuple)):
                logger.debug("applyEach target %s is not an array; nothing to apply", format_path(target) or "<root>")
                return
            targets = [target + (index,) for index in range(len(items))]
        else:
            targets = [target]

        for keys in targets:
            self._apply_definition(schema, root_value, keys, guards, stack + (schema.name,), out)

    def _apply_definition(
        self,
        schema: SchemaDefinition,
        root_value: Any,
        keys: Tuple[PathKey, ...],
        guards: Tuple[Condition, ...],
        stack: Tuple[str, ...],
        out: CollectedRules,
    ) -> None:
        path = format_path(keys)
        for validator in schema.validators:
            config = parse_validator(validator)
            for guard in reversed(guards):
                config = config.with_guard(guard)
            out.validators.append(ValidatorBinding(path, config, schema.name))
        for item in schema.logic:
            config = parse_logic(item)
            for guard in reversed(guards):
                config = config.with_guard(guard)
            out.logic.append(LogicBinding(path, config, schema.name))
        for sub in schema.sub_schemas:
            self._collect(parse_application(sub), root_value, keys, guards, stack, out)
