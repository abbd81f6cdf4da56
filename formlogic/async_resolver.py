"""
formlogic/async_resolver.py

ConditionResolver: compiles remote/async conditions into logic functions with
the same contract as synchronous ones (field state -> bool) without ever
blocking.

Per field occurrence:

    evaluation call
      -> resolve request / params (tracked context)
      -> TTL cache hit?                      -> return it now
      -> changed since last dispatch?        -> push into trigger cell
    trigger -> debounce -> distinct -> switch-to-latest job
      -> map response (responseExpression or truthiness)
      -> TTL cache set + publish             (failure: log, publish pendingValue)

The logic function returns whatever is published, starting at pendingValue.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Union

from .cache_scope import CacheScope, SignalPair
from .canonical import stable_stringify
from .condition_evaluator import coerce_result
from .conditions import AsyncCondition, RemoteCondition, condition_key
from .config import FormLogicConfig, get_config
from .context import EvaluationContext, FieldState, build_tracked_context
from .diagnostics import get_logger
from .errors import ResolutionFailure
from .expression_evaluator import evaluate
from .reactive import Cell, debounce, switch_latest
from .registry import FunctionRegistry
from .transport import Transport, resolve_request
from .values import UNDEFINED, js_truthy

logger = get_logger("remote")

OutOfBandCondition = Union[RemoteCondition, AsyncCondition]


class _Dispatch:
    """What the trigger cell carries. Equal when the serialized snapshot is equal."""

    __slots__ = ("key", "snapshot", "ctx")

    def __init__(self, key: str, snapshot: Any, ctx: EvaluationContext):
        self.key = key
        self.snapshot = snapshot
        self.ctx = ctx

    def __eq__(self, other):
        return isinstance(other, _Dispatch) and other.key == self.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return f"_Dispatch({self.key})"


class ConditionResolver:
    def __init__(
        self,
        scope: CacheScope,
        registry: FunctionRegistry,
        transport: Optional[Transport] = None,
        external_data: Optional[Callable[[], Any]] = None,
        config: Optional[FormLogicConfig] = None,
    ):
        self.scope = scope
        self.registry = registry
        self.transport = transport
        self._external_data = external_data or (lambda: UNDEFINED)
        self.config = config or get_config()

    def compile(self, condition: OutOfBandCondition) -> Callable[[FieldState], bool]:
        """Logic function for ``condition``; identical conditions share one function."""
        key = condition_key(condition)
        return self.scope.memoize(self.scope.async_functions, key, lambda: self._build(condition, key))

    # --- settings ---

    def _debounce_ms(self, cond: OutOfBandCondition) -> int:
        return cond.debounce_ms if cond.debounce_ms is not None else self.config.default_debounce_ms

    def _ttl_ms(self, cond: OutOfBandCondition) -> int:
        if cond.cache_duration_ms is not None:
            return cond.cache_duration_ms
        return self.config.default_cache_duration_ms

    # --- per-occurrence pipeline ---

    def _slot(self, cond: OutOfBandCondition, key: str, state: FieldState) -> SignalPair:
        slot_key = (key, tuple(state.path_keys()))
        slot = self.scope.signal_pairs.get(slot_key)
        if slot is not None:
            return slot

        slot = SignalPair(trigger=Cell(None, name="trigger"), result=Cell(bool(cond.pending_value), name="result"))
        settled = debounce(slot.trigger, self._debounce_ms(cond), self.scope.scheduler)
        ttl = self._ttl_ms(cond)

        async def _job(dispatch: _Dispatch):
            return await self._resolve(cond, dispatch)

        def _on_result(dispatch: _Dispatch, value: bool):
            self.scope.condition_cache.set(dispatch.key, value, ttl)
            slot.result.write(value)

        def _on_error(dispatch: _Dispatch, error: BaseException):
            logger.warning(
                "%s condition failed for %s, falling back to pendingValue=%s: %s",
                cond.kind, dispatch.key, cond.pending_value, error,
            )
            slot.result.write(bool(cond.pending_value))

        switch_latest(settled, _job, _on_result, _on_error, self.scope.scheduler)
        self.scope.signal_pairs[slot_key] = slot
        return slot

    def _snapshot(self, cond: OutOfBandCondition, ctx: EvaluationContext) -> Any:
        if isinstance(cond, RemoteCondition):
            return resolve_request(cond.request, ctx)
        scope = ctx.to_scope()
        params = {name: evaluate(expr, scope) if isinstance(expr, str) else expr for name, expr in cond.params.items()}
        return {"functionName": cond.function_name, "params": params}

    async def _resolve(self, cond: OutOfBandCondition, dispatch: _Dispatch) -> bool:
        if isinstance(cond, RemoteCondition):
            if self.transport is None:
                raise ResolutionFailure(dispatch.key, detail="no transport configured")
            response = await self.transport.perform_request(dispatch.snapshot)
            if cond.response_expression:
                scope = dispatch.ctx.to_scope(response=response)
                raw = evaluate(cond.response_expression, scope)
                return coerce_result(raw, cond.response_expression, self.scope.warnings, "Response expression")
            return js_truthy(response)

        fn = self.registry.get_async_function(cond.function_name)
        raw = await fn(dispatch.snapshot["params"], dispatch.ctx)
        return coerce_result(raw, f"async:{cond.function_name}", self.scope.warnings, "Async function")

    def _build(self, cond: OutOfBandCondition, key: str) -> Callable[[FieldState], bool]:
        def logic_fn(state: FieldState) -> bool:
            slot = self._slot(cond, key, state)
            try:
                ctx = build_tracked_context(state, self.registry.get_custom_functions(), self._external_data())
                snapshot = self._snapshot(cond, ctx)
            except Exception as e:
                logger.warning("Could not resolve %s condition at %s: %s", cond.kind, tuple(state.path_keys()), e)
                return slot.result.read()

            snapshot_key = stable_stringify(snapshot)
            cached = self.scope.condition_cache.get(snapshot_key)
            if cached is not None:
                # Cache sits above the debounce: answer synchronously
                return bool(cached)

            if snapshot_key != slot.last_dispatched:
                slot.last_dispatched = snapshot_key
                slot.trigger.write(_Dispatch(snapshot_key, snapshot, ctx))
            return slot.result.read()

        logic_fn.condition = cond  # type: ignore[attr-defined]
        return logic_fn
