"""
formlogic/derivations.py

Computed field values.

A derivation writes ``target`` from an expression, a registered function or a
static value, optionally gated by a condition:

    {"target": "total", "expression": "(formValue.qty || 0) * (formValue.price || 0)"}

HTTP and async derivations resolve out of band. A change to one of their
dependencies pushes the form value into a trigger cell:

    trigger -> debounce -> switch-to-latest job -> apply when the value differs

A superseded job's result is dropped; a failed one is logged and the target
keeps its current value.

    {"target": "rate", "http": {"url": "/api/rate", "queryParams": {"c": "formValue.currency"}},
     "responseExpression": "response.rate"}

Dependencies come from ``formValue.*`` references in the expression (or a
declared ``dependsOn``); function derivations without declarations depend on
the whole form ("*"). Registration rejects dependency cycles of three or more
fields. Self-references and two-field pairs are allowed: they settle because a
derivation only writes when its value actually changes.

run() applies derivations in dependency order, pass after pass, until nothing
changes or ``max_derivation_passes`` is reached.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from .conditions import Condition, RequestSpec, parse_condition, parse_request
from .config import FormLogicConfig, get_config
from .cross_field import ALL_FIELDS, condition_dependencies
from .diagnostics import get_logger
from .errors import DerivationCycleError, ExpressionError, InvalidConditionShapeError, ResolutionFailure
from .expression_evaluator import evaluate
from .logic_factory import LogicFactory
from .reactive import Cell, debounce, switch_latest
from .tokenize import extract_form_value_paths
from .transport import Transport, resolve_request
from .values import UNDEFINED, get_nested_value, set_nested_value, strict_equals

logger = get_logger("derivations")

_SKIP = object()


@dataclass(frozen=True)
class DerivationConfig:
    target: str
    expression: Optional[str] = None
    function_name: Optional[str] = None
    value: Any = UNDEFINED
    condition: Optional[Condition] = None
    depends_on: Tuple[str, ...] = ()
    request: Optional[RequestSpec] = None
    response_expression: Optional[str] = None
    async_function_name: Optional[str] = None
    debounce_ms: Optional[int] = None

    def __post_init__(self):
        sources = [
            self.expression is not None,
            self.function_name is not None,
            self.value is not UNDEFINED,
            self.request is not None,
            self.async_function_name is not None,
        ]
        if sum(sources) != 1:
            raise InvalidConditionShapeError(
                f"Derivation for '{self.target}' needs exactly one of "
                "'expression', 'functionName', 'value', 'http', 'asyncFunctionName'"
            )
        if self.request is not None and not self.response_expression:
            raise InvalidConditionShapeError(f"HTTP derivation for '{self.target}' requires 'responseExpression'")

    @property
    def is_async(self) -> bool:
        return self.request is not None or self.async_function_name is not None

    def _request_dependencies(self) -> Set[str]:
        texts = [v for v in self.request.query_params.values() if isinstance(v, str)]
        if self.request.evaluate_body_expressions and isinstance(self.request.body, Mapping):
            texts += [v for v in self.request.body.values() if isinstance(v, str)]
        deps: Set[str] = set()
        for text in texts:
            deps.update(extract_form_value_paths(text))
        return deps or {ALL_FIELDS}

    def dependencies(self) -> Set[str]:
        if self.depends_on:
            deps = set(self.depends_on)
        elif self.expression is not None:
            deps = set(extract_form_value_paths(self.expression))
        elif self.request is not None:
            deps = self._request_dependencies()
        elif self.function_name is not None or self.async_function_name is not None:
            deps = {ALL_FIELDS}
        else:
            deps = set()
        return deps | condition_dependencies(self.condition)


def parse_derivation(data: Union[DerivationConfig, Mapping[str, Any]]) -> DerivationConfig:
    if isinstance(data, DerivationConfig):
        return data
    if not isinstance(data, Mapping) or not data.get("target"):
        raise InvalidConditionShapeError("Derivation requires a 'target'")
    condition = data.get("condition")
    depends_on = data.get("dependsOn") or ()
    if isinstance(depends_on, str):
        depends_on = (depends_on,)
    request = data.get("http")
    debounce_ms = data.get("debounceMs")
    try:
        debounce_ms = int(debounce_ms) if debounce_ms is not None else None
    except (TypeError, ValueError) as e:
        raise InvalidConditionShapeError(f"'debounceMs' must be an integer, got {debounce_ms!r}") from e
    return DerivationConfig(
        target=str(data["target"]),
        expression=data.get("expression"),
        function_name=data.get("functionName"),
        value=data.get("value", UNDEFINED),
        condition=parse_condition(condition) if condition is not None else None,
        depends_on=tuple(depends_on),
        request=parse_request(request) if request is not None else None,
        response_expression=data.get("responseExpression"),
        async_function_name=data.get("asyncFunctionName"),
        debounce_ms=debounce_ms,
    )


def _reads(dep: str, target: str) -> bool:
    # "address" reads "address.city" and the other way round
    return dep == target or target.startswith(dep + ".") or dep.startswith(target + ".")


def dependency_graph(derivations: Sequence[DerivationConfig]) -> Dict[str, Set[str]]:
    """target -> targets it reads (self-edges dropped, "*" ignored)."""
    targets = [d.target for d in derivations]
    graph: Dict[str, Set[str]] = {t: set() for t in targets}
    for d in derivations:
        for dep in d.dependencies():
            if dep == ALL_FIELDS:
                continue
            for other in targets:
                if other != d.target and _reads(dep, other):
                    graph[d.target].add(other)
    return graph


def find_cycle(derivations: Sequence[DerivationConfig]) -> Optional[List[str]]:
    """
    A dependency cycle through three or more targets, as a closed path, or None.

    Tarjan's strongly connected components; two-target components are the
    allowed bidirectional pattern.
    """
    graph = dependency_graph(derivations)
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    counter = [0]
    found: List[List[str]] = []

    def strongconnect(node: str) -> None:
        index[node] = low[node] = counter[0]
        counter[0] += 1
        stack.append(node)
        on_stack.add(node)
        for succ in sorted(graph[node]):
            if succ not in index:
                strongconnect(succ)
                low[node] = min(low[node], low[succ])
            elif succ in on_stack:
                low[node] = min(low[node], index[succ])
        if low[node] == index[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 2:
                found.append(component)

    for node in graph:
        if node not in index:
            strongconnect(node)
    if not found:
        return None
    component = set(found[0])
    # Shortest closed walk from the smallest member, for the error message
    start = min(component)
    parents: Dict[str, str] = {}
    queue = deque([start])
    seen = {start}
    while queue:
        node = queue.popleft()
        for succ in sorted(graph[node]):
            if succ not in component:
                continue
            if succ == start:
                chain = [node]
                while chain[-1] != start:
                    chain.append(parents[chain[-1]])
                return list(reversed(chain)) + [start]
            if succ not in seen:
                seen.add(succ)
                parents[succ] = node
                queue.append(succ)
    return sorted(component) + [start]


def evaluation_order(derivations: Sequence[DerivationConfig]) -> List[DerivationConfig]:
    """Dependencies first; ties keep declaration order."""
    graph = dependency_graph(derivations)
    by_target: Dict[str, List[DerivationConfig]] = {}
    for d in derivations:
        by_target.setdefault(d.target, []).append(d)

    ordered: List[DerivationConfig] = []
    state: Dict[str, str] = {}

    def visit(target: str) -> None:
        if state.get(target) is not None:
            # done, or a permitted two-field loop already on the path
            return
        state[target] = "visiting"
        for dep in sorted(graph[target]):
            visit(dep)
        state[target] = "done"
        ordered.extend(by_target[target])

    for d in derivations:
        visit(d.target)
    return ordered


class _Trigger:
    """One dispatch. Compares by identity, so every change starts a new job."""

    __slots__ = ("serial", "root_value")

    def __init__(self, serial: int, root_value: Any):
        self.serial = serial
        self.root_value = root_value

    def __repr__(self):
        return f"_Trigger({self.serial})"


class AsyncDerivationStream:
    """
    Out-of-band pipeline for one ``http`` or ``asyncFunctionName`` derivation.

    ``apply(target, value)`` receives each delivered value; the caller decides
    whether it differs from what the form holds.
    """

    def __init__(
        self,
        derivation: DerivationConfig,
        logic: LogicFactory,
        transport: Optional[Transport],
        apply: Callable[[str, Any], None],
        config: FormLogicConfig,
    ):
        self.derivation = derivation
        self.logic = logic
        self.transport = transport
        self._apply = apply
        self._deps = derivation.dependencies()
        self._serial = 0
        self.trigger: Cell = Cell(None, name=f"derive:{derivation.target}")
        debounce_ms = derivation.debounce_ms if derivation.debounce_ms is not None else config.default_debounce_ms
        settled = debounce(self.trigger, debounce_ms, logic.scope.scheduler)
        self.generation = switch_latest(settled, self._job, self._on_result, self._on_error, logic.scope.scheduler)

    def affected(self, previous: Any, current: Any) -> bool:
        target = self.derivation.target
        if ALL_FIELDS in self._deps:
            # Everything but the target itself
            return not strict_equals(
                set_nested_value(previous, target, UNDEFINED),
                set_nested_value(current, target, UNDEFINED),
            )
        return any(
            not strict_equals(get_nested_value(previous, dep), get_nested_value(current, dep))
            for dep in self._deps
        )

    def fire(self, root_value: Any) -> None:
        self._serial += 1
        self.trigger.write(_Trigger(self._serial, root_value))

    async def _job(self, trigger: _Trigger) -> Any:
        derivation = self.derivation
        ctx = self.logic.snapshot_context(trigger.root_value, derivation.target)
        if derivation.condition is not None and not self.logic.evaluator.evaluate(derivation.condition, ctx):
            return _SKIP
        if derivation.request is not None:
            if self.transport is None:
                raise ResolutionFailure(derivation.target, detail="no transport configured")
            response = await self.transport.perform_request(resolve_request(derivation.request, ctx))
            return evaluate(derivation.response_expression, ctx.to_scope(response=response))
        fn = self.logic.registry.get_async_derivation(derivation.async_function_name)
        return await fn(ctx)

    def _on_result(self, trigger: _Trigger, value: Any) -> None:
        if value is _SKIP:
            return
        self._apply(self.derivation.target, value)

    def _on_error(self, trigger: _Trigger, error: BaseException) -> None:
        logger.warning("Async derivation for '%s' failed; keeping current value: %s", self.derivation.target, error)


@dataclass
class DerivationResult:
    value: Any
    applied: List[str] = field(default_factory=list)
    errors: int = 0
    iterations: int = 0
    max_iterations_reached: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.applied)


class DerivationEngine:
    """
    Synchronous derivations run inside run(); HTTP and async ones get an
    AsyncDerivationStream when ``apply`` is given and are fired by notify().
    """

    def __init__(
        self,
        logic: LogicFactory,
        config: Optional[FormLogicConfig] = None,
        transport: Optional[Transport] = None,
        apply: Optional[Callable[[str, Any], None]] = None,
    ):
        self.logic = logic
        self.config = config or get_config()
        self.transport = transport
        self._apply = apply
        self._derivations: List[DerivationConfig] = []
        self._order: List[DerivationConfig] = []
        self._streams: List[AsyncDerivationStream] = []

    @property
    def derivations(self) -> Tuple[DerivationConfig, ...]:
        return tuple(self._derivations)

    def add(self, derivation: Union[DerivationConfig, Mapping[str, Any]]) -> DerivationConfig:
        """
        Register one derivation.

        Raises DerivationCycleError (leaving the engine unchanged) or
        UnknownFunctionError for an unregistered derivation function.
        """
        config = parse_derivation(derivation)
        if config.function_name is not None:
            self.logic.registry.get_derivation(config.function_name)
        if config.async_function_name is not None:
            self.logic.registry.get_async_derivation(config.async_function_name)
        candidate = self._derivations + [config]
        cycle = find_cycle(candidate)
        if cycle:
            raise DerivationCycleError(cycle)
        self._derivations = candidate
        self._order = evaluation_order([d for d in candidate if not d.is_async])
        if config.is_async and self._apply is not None:
            self._streams.append(AsyncDerivationStream(config, self.logic, self.transport, self._apply, self.config))
        return config

    def notify(self, previous: Any, current: Any) -> None:
        """Fire every out-of-band derivation whose dependencies changed."""
        for stream in self._streams:
            if stream.affected(previous, current):
                stream.fire(current)

    def prime(self, config: DerivationConfig, root_value: Any) -> None:
        """Initial dispatch for a freshly added out-of-band derivation."""
        for stream in self._streams:
            if stream.derivation is config:
                stream.fire(root_value)

    def _compute(self, derivation: DerivationConfig, root_value: Any) -> Any:
        ctx = self.logic.snapshot_context(root_value, derivation.target)
        if derivation.condition is not None and not self.logic.evaluator.evaluate(derivation.condition, ctx):
            return _SKIP
        if derivation.value is not UNDEFINED:
            return derivation.value
        if derivation.expression is not None:
            return evaluate(derivation.expression, ctx.to_scope())
        fn = self.logic.registry.get_derivation(derivation.function_name)
        return fn(ctx)

    def run(self, root_value: Any) -> DerivationResult:
        """Apply every derivation to ``root_value`` (never mutated) until stable."""
        result = DerivationResult(value=root_value)
        if not self._order:
            return result

        max_passes = max(1, int(self.config.max_derivation_passes))
        value = root_value
        for _ in range(max_passes):
            result.iterations += 1
            changed = False
            for derivation in self._order:
                try:
                    computed = self._compute(derivation, value)
                except ExpressionError as e:
                    result.errors += 1
                    logger.error("Error evaluating derivation for '%s': %s", derivation.target, e)
                    continue
                except Exception:
                    result.errors += 1
                    logger.exception("Derivation function for '%s' failed", derivation.target)
                    continue
                if computed is _SKIP:
                    continue
                if strict_equals(get_nested_value(value, derivation.target), computed):
                    continue
                value = set_nested_value(value, derivation.target, computed)
                result.applied.append(derivation.target)
                changed = True
            if not changed:
                break
        else:
            result.max_iterations_reached = True
            logger.error(
                "Derivations still changing after %d passes; stopping (possible loop between %s)",
                max_passes, ", ".join(sorted(set(result.applied))),
            )

        result.value = value
        return result
