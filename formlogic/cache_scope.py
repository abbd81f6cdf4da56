"""
formlogic/cache_scope.py

CacheScope: every piece of mutable cache state belonging to ONE form instance.

Created with the form, dropped with it. Two concurrent form instances (e.g.
two requests rendered by one server process) never share a scope, so no
result, pending timer or warning leaks across them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .diagnostics import WarningTracker, get_logger
from .reactive import AsyncioScheduler, Cell
from .ttl_cache import RemoteConditionCache

logger = get_logger("cache")


@dataclass
class SignalPair:
    """Per field occurrence state of one remote/async condition."""

    trigger: Cell
    result: Cell
    last_dispatched: Optional[str] = None


@dataclass
class DebouncedSlot:
    """Per field occurrence state of one debounced logic function."""

    immediate: Cell
    debounced: Cell


@dataclass
class CacheScope:
    scheduler: AsyncioScheduler = field(default_factory=AsyncioScheduler)
    condition_cache: RemoteConditionCache = field(default_factory=RemoteConditionCache)
    warnings: WarningTracker = field(default_factory=WarningTracker)

    # condition key -> compiled synchronous / debounced logic function
    logic_functions: Dict[str, Callable] = field(default_factory=dict)
    # condition key -> compiled remote/async logic function
    async_functions: Dict[str, Callable] = field(default_factory=dict)
    # (condition key, path keys) -> debounced cells
    debounced_slots: Dict[Tuple[str, Tuple], DebouncedSlot] = field(default_factory=dict)
    # (condition key, path keys) -> trigger/result cells
    signal_pairs: Dict[Tuple[str, Tuple], SignalPair] = field(default_factory=dict)
    # dynamic value expression -> compiled value function
    value_functions: Dict[str, Callable] = field(default_factory=dict)
    # validator config key -> compiled validator
    validators: Dict[str, Any] = field(default_factory=dict)

    def memoize(self, table: Dict[str, Any], key: str, factory: Callable[[], Any]) -> Any:
        """Return ``table[key]``, building it with ``factory()`` on first use."""
        existing = table.get(key)
        if existing is not None:
            return existing
        created = factory()
        table[key] = created
        return created

    def stats(self) -> Dict[str, int]:
        return {
            "logic_functions": len(self.logic_functions),
            "async_functions": len(self.async_functions),
            "debounced_slots": len(self.debounced_slots),
            "signal_pairs": len(self.signal_pairs),
            "value_functions": len(self.value_functions),
            "validators": len(self.validators),
            "condition_cache": len(self.condition_cache),
        }

    def dispose(self) -> None:
        """Cancel pending timers/jobs and drop every cached entry."""
        self.scheduler.cancel_all()
        self.logic_functions.clear()
        self.async_functions.clear()
        self.debounced_slots.clear()
        self.signal_pairs.clear()
        self.value_functions.clear()
        self.validators.clear()
        self.condition_cache.clear()
        self.warnings.reset()
        logger.debug("Cache scope disposed")
