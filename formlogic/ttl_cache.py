"""
formlogic/ttl_cache.py

TTL cache of resolved remote/async condition results.

Keys are serialized resolved requests (see canonical.stable_stringify), so two
fields issuing an identical request share one entry. Expired entries are
evicted lazily, on read.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .diagnostics import get_logger

logger = get_logger("remote")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class RemoteConditionCache:
    """
    ``get(key)`` returns None for a missing or expired entry (and evicts it);
    ``set(key, value, ttl_ms)`` stores ``{value, expires_at: now + ttl_ms}``.

    A ttl of 0 stores an entry that is already stale, which disables caching.
    ``clock`` returns milliseconds and exists so tests can move time.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, max_entries: int = 1000):
        self._clock = clock or _monotonic_ms
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._max_entries = max_entries

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                logger.debug("Evicted expired condition cache entry %s", key)
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_ms: float) -> None:
        with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self._max_entries:
                # Oldest insertion goes first
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(value, self._clock() + max(ttl_ms, 0))

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
