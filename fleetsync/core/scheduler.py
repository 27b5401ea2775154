"""
One cancellable timer owner per component.

Every timer a component starts (batch flush, retry promotion, heartbeat,
reconnect, throttled notification, health checks) goes through its
TaskScheduler, so teardown is a single synchronous cancel_all().
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class TaskScheduler:
    """
    Keyed timers and tracked tasks on the running event loop.

    - call_later(delay, fn, key=...) replaces any pending timer with the same key.
    - call_every(interval, fn, key=...) repeats until cancelled.
    - spawn(coro) tracks a task so cancel_all() can reach it.
    - If fn returns a coroutine it is wrapped in a tracked task.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._ids = itertools.count(1)
        self._closed = False

    # --- Scheduling ---

    def call_later(self, delay_s: float, fn: Callback, *, key: Optional[str] = None) -> str:
        self._check_open()
        key = key or f"timer-{next(self._ids)}"
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(max(0.0, delay_s), self._fire, key, fn)
        return key

    def call_every(self, interval_s: float, fn: Callback, *, key: Optional[str] = None) -> str:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        key = key or f"every-{next(self._ids)}"

        def tick() -> Any:
            # re-arm before running so a slow callback cannot stop the series
            self.call_later(interval_s, tick, key=key)
            return fn()

        return self.call_later(interval_s, tick, key=key)

    def spawn(self, coro: Any, *, name: Optional[str] = None) -> asyncio.Task[Any]:
        self._check_open()
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    # --- Cancellation ---

    def cancel(self, key: str) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every pending timer and tracked task. Synchronous."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            # a task tearing its own component down finishes on its own
            if not task.done() and task is not current:
                task.cancel()
        self._tasks.clear()

    def close(self) -> None:
        self.cancel_all()
        self._closed = True

    # --- Introspection ---

    def is_scheduled(self, key: str) -> bool:
        return key in self._timers

    @property
    def pending(self) -> int:
        return len(self._timers) + sum(1 for t in self._tasks if not t.done())

    # --- Internals ---

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"[{self._name}] scheduler is closed")

    def _fire(self, key: str, fn: Callback) -> None:
        self._timers.pop(key, None)
        try:
            result = fn()
        except Exception as e:
            logger.error(f"[{self._name}] Timer {key!r} failed: {e}", exc_info=True)
            return
        if inspect.iscoroutine(result):
            if self._closed:
                result.close()
                return
            self.spawn(result, name=f"{self._name}:{key}")

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self._name}] Task {task.get_name()} failed: {exc}", exc_info=exc)
