"""
formlogic/reactive.py

Minimal reactive substrate the logic layer composes:

    Cell       - mutable value; read() registers a dependency, peek() does not
    Derived    - lazily recomputed value of other cells (dirty-flag push, pull on read)
    untracked  - run a function (or a block) without registering dependencies
    debounce   - cell that follows a source only after a quiet period
    switch_latest - run an async job per source change; only the newest job may publish

Timing goes through a scheduler (AsyncioScheduler by default). Everything here
is single-threaded and cooperative: callbacks run on the event loop thread.
"""

from __future__ import annotations

import asyncio
import contextvars
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Generic, List, Optional, Set, TypeVar

from .diagnostics import get_logger

logger = get_logger("reactive")

T = TypeVar("T")

# The Derived currently recomputing (None = reads are not tracked)
_CURRENT_OBSERVER: contextvars.ContextVar = contextvars.ContextVar("formlogic_observer", default=None)


def _default_equals(a, b) -> bool:
    if a is b:
        return True
    try:
        return type(a) is type(b) and bool(a == b)
    except Exception:
        return False


class _Source:
    """Shared plumbing: downstream Derived observers and plain subscribers."""

    def __init__(self, equals: Optional[Callable[[Any, Any], bool]] = None):
        self._observers: Set["Derived"] = set()
        self._subscribers: List[Callable[[Any], None]] = []
        self._equals = equals or _default_equals
        self.version = 0

    def _track(self) -> None:
        observer = _CURRENT_OBSERVER.get()
        if observer is not None and observer is not self:
            observer._add_dependency(self)

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Call ``callback(new_value)`` after each change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, value) -> None:
        for observer in list(self._observers):
            observer._mark_dirty()
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                # A broken subscriber must not stop the others
                logger.exception("Reactive subscriber raised")


class Cell(_Source, Generic[T]):
    """A writable reactive value."""

    def __init__(self, value: T = None, equals: Optional[Callable[[Any, Any], bool]] = None, name: str = ""):
        super().__init__(equals)
        self._value = value
        self.name = name

    def read(self) -> T:
        self._track()
        return self._value

    def peek(self) -> T:
        return self._value

    def write(self, value: T) -> bool:
        """Set the value. Returns False (and notifies nobody) when it is unchanged."""
        if self._equals(self._value, value):
            return False
        self._value = value
        self.version += 1
        self._notify(value)
        return True

    def update(self, fn: Callable[[T], T]) -> bool:
        return self.write(fn(self._value))

    def __repr__(self) -> str:
        return f"Cell({self.name or ''}{'=' if self.name else ''}{self._value!r})"


class Derived(_Source, Generic[T]):
    """
    A value computed from other cells.

    Recomputes lazily on read when a dependency changed. When it has
    subscribers it recomputes eagerly on change so they can be told.
    """

    def __init__(self, fn: Callable[[], T], equals: Optional[Callable[[Any, Any], bool]] = None, name: str = ""):
        super().__init__(equals)
        self._fn = fn
        self._value: Any = None
        self._dirty = True
        self._dependencies: Set[_Source] = set()
        self._next_dependencies: Optional[Set[_Source]] = None
        self.name = name

    def _add_dependency(self, source: _Source) -> None:
        if self._next_dependencies is not None:
            self._next_dependencies.add(source)

    def _mark_dirty(self) -> None:
        if self._dirty:
            return
        self._dirty = True
        for observer in list(self._observers):
            observer._mark_dirty()
        if self._subscribers:
            old = self._value
            new = self._recompute()
            if not self._equals(old, new):
                for callback in list(self._subscribers):
                    try:
                        callback(new)
                    except Exception:
                        logger.exception("Reactive subscriber raised")

    def _recompute(self) -> T:
        self._next_dependencies = set()
        token = _CURRENT_OBSERVER.set(self)
        try:
            value = self._fn()
        finally:
            _CURRENT_OBSERVER.reset(token)
            new_deps, self._next_dependencies = self._next_dependencies, None
            for dep in self._dependencies - new_deps:
                dep._observers.discard(self)
            for dep in new_deps - self._dependencies:
                dep._observers.add(self)
            self._dependencies = new_deps
        if not self._equals(self._value, value):
            self.version += 1
        self._value = value
        self._dirty = False
        return value

    def read(self) -> T:
        self._track()
        if self._dirty:
            return self._recompute()
        return self._value

    def peek(self) -> T:
        token = _CURRENT_OBSERVER.set(None)
        try:
            return self.read()
        finally:
            _CURRENT_OBSERVER.reset(token)

    def dispose(self) -> None:
        for dep in self._dependencies:
            dep._observers.discard(self)
        self._dependencies = set()
        self._dirty = True


@contextmanager
def untracked_scope():
    """Block form of untracked(): reads inside do not register dependencies."""
    token = _CURRENT_OBSERVER.set(None)
    try:
        yield
    finally:
        _CURRENT_OBSERVER.reset(token)


def untracked(fn: Callable[[], T]) -> T:
    """Run ``fn`` without registering any dependency on the calling computation."""
    with untracked_scope():
        return fn()


# ==========================================
# SCHEDULING
# ==========================================


class _ImmediateHandle:
    def cancel(self) -> None:
        pass


class AsyncioScheduler:
    """
    Timers and background jobs on an asyncio loop.

    Without a running loop, ``call_later`` runs the callback at once (there is
    no time to wait in) and ``spawn`` refuses the job.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._explicit_loop = loop
        self._timers: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        if self._explicit_loop is not None:
            return self._explicit_loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def now(self) -> float:
        loop = self._get_loop()
        return loop.time() if loop is not None else 0.0

    def call_later(self, delay_s: float, callback: Callable[[], None]):
        loop = self._get_loop()
        if loop is None:
            callback()
            return _ImmediateHandle()

        handle: Optional[asyncio.TimerHandle] = None

        def _fire():
            self._timers.discard(handle)
            callback()

        handle = loop.call_later(max(delay_s, 0.0), _fire)
        self._timers.add(handle)
        return _TimerRef(handle, self._timers)

    def spawn(self, coro_factory: Callable[[], Awaitable[Any]]) -> Optional[asyncio.Task]:
        loop = self._get_loop()
        if loop is None:
            return None
        task = loop.create_task(coro_factory())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def busy(self) -> bool:
        return bool(self._timers or self._tasks)

    async def wait_idle(self, timeout_s: float = 5.0, poll_s: float = 0.005) -> None:
        """Wait until no timer is pending and no spawned job is running."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while self.busy:
            if loop.time() > deadline:
                raise asyncio.TimeoutError("scheduler did not become idle")
            if self._tasks:
                await asyncio.wait(set(self._tasks), timeout=poll_s)
            else:
                await asyncio.sleep(poll_s)

    def cancel_all(self) -> None:
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()


class _TimerRef:
    def __init__(self, handle: asyncio.TimerHandle, registry: Set[asyncio.TimerHandle]):
        self._handle = handle
        self._registry = registry

    def cancel(self) -> None:
        self._handle.cancel()
        self._registry.discard(self._handle)


# ==========================================
# OPERATORS
# ==========================================


def debounce(source: _Source, ms: float, scheduler: AsyncioScheduler, initial: Any = None) -> Cell:
    """
    Cell following ``source`` once it has been quiet for ``ms`` milliseconds.

    Every change restarts the timer; only the value present when the timer
    fires is published. Equal values are not re-published.
    """
    out = Cell(initial, name="debounced")
    pending = {"handle": None}

    def _fire():
        pending["handle"] = None
        out.write(source.peek())

    def _on_change(_value):
        if pending["handle"] is not None:
            pending["handle"].cancel()
        pending["handle"] = scheduler.call_later(ms / 1000.0, _fire)

    source.subscribe(_on_change)
    return out


def switch_latest(
    source: _Source,
    job: Callable[[Any], Awaitable[Any]],
    on_result: Callable[[Any, Any], None],
    on_error: Callable[[Any, BaseException], None],
    scheduler: AsyncioScheduler,
) -> Callable[[], int]:
    """
    For each change of ``source``, run ``job(value)`` in the background.

    Only the most recently started job may deliver: a job superseded while in
    flight is left to finish, and its outcome is dropped. Returns a function
    giving the current generation (handy for inspection).
    """
    state = {"generation": 0}

    def _start(value):
        state["generation"] += 1
        generation = state["generation"]

        async def _run():
            try:
                result = await job(value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if generation == state["generation"]:
                    on_error(value, e)
                else:
                    logger.debug("Dropping failure of superseded job for %r", value)
                return
            if generation == state["generation"]:
                on_result(value, result)
            else:
                logger.debug("Dropping result of superseded job for %r", value)

        if scheduler.spawn(_run) is None:
            on_error(value, RuntimeError("no running event loop to resolve asynchronously"))

    source.subscribe(_start)
    return lambda: state["generation"]
