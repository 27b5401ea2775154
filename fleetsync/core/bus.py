from __future__ import annotations

import asyncio
import fnmatch
import inspect
import itertools
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional

from fleetsync.config.configs import BusConfig
from fleetsync.core.clock import Millis, now_ms
from fleetsync.core.scheduler import TaskScheduler
from fleetsync.errors.errors import ComponentDestroyedError, SubscriberError
from fleetsync.types.topics import T_LOG
from fleetsync.types.types import LogEvent, Priority

logger = logging.getLogger(__name__)

Handler = Callable[["Event"], Optional[Awaitable[None]]]
EventFilter = Callable[["Event"], bool]
ErrorHook = Callable[[SubscriberError], None]

# --- Data structures ---


@dataclass(frozen=True)
class Event:
    """Immutable message delivered to subscribers."""

    topic: str
    payload: Any
    source: str
    priority: Priority
    timestamp: Millis
    seq: int  # bus-wide, strictly increasing
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")


class _BusState(str, Enum):
    """
    Internal enum for lifecycle: Running -> Closed
    """

    RUNNING = "RUNNING"  # all APIs are available
    CLOSED = "CLOSED"  # destroyed; every call raises ComponentDestroyedError


@dataclass
class Subscription:
    """A handler registered against a topic pattern."""

    id: str
    pattern: str
    handler: Handler
    priority: Priority
    reg_seq: int
    once: bool = False
    min_priority: Optional[Priority] = None
    filter: Optional[EventFilter] = None
    throttle_s: float = 0.0
    max_triggers: Optional[int] = None

    trigger_count: int = 0
    last_triggered: Optional[float] = None  # monotonic
    active: bool = True

    def matches(self, topic: str) -> bool:
        return self.pattern == "*" or fnmatch.fnmatchcase(topic, self.pattern)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (-int(self.priority), self.reg_seq)


# --- Metrics ---


@dataclass
class TopicStats:
    """Snapshot of a topic's activity."""

    name: str
    emitted: int = 0
    delivered: int = 0
    errors: int = 0
    last_emitted: Optional[Millis] = None
    history: int = 0


@dataclass
class BusStats:
    state: str
    subscriptions: int
    topics: int
    total_emitted: int
    total_delivered: int
    total_errors: int
    pending: int
    per_topic: list[TopicStats]


# --- Bus object ---


class EventBus:
    """
    Process-wide publish/subscribe hub.

    - emit() stamps an Event, records it in the topic's history ring and
      delivers it to every matching subscription in priority order, then
      registration order.
    - Handlers may be plain functions or coroutines. A raising handler is
      logged, counted and reported to on_error hooks; delivery continues.
    - Events emitted from inside a handler are queued behind the event being
      delivered, so each subscriber observes a topic in emission order.
      The inner emit() returns before its event is delivered.
    - The recipients of an event are fixed when it is emitted.
    """

    def __init__(self, cfg: Optional[BusConfig] = None, name: str = "bus") -> None:
        self._cfg = cfg or BusConfig()
        self._name = name
        self._state: _BusState = _BusState.RUNNING

        self._subscriptions: dict[str, Subscription] = {}
        self._reg_seq = itertools.count(1)
        self._event_seq = itertools.count(1)

        # Dispatch queue; drained by whichever emit() is not nested
        self._pending: Deque[tuple[Event, list[Subscription]]] = deque()
        self._dispatching = False
        self._scheduler = TaskScheduler(name)

        self._history: dict[str, Deque[Event]] = {}
        self._topics: dict[str, TopicStats] = {}
        self._on_error: list[ErrorHook] = []

    # --- helpers ---

    def _check_alive(self, operation: str) -> None:
        if self._state is _BusState.CLOSED:
            raise ComponentDestroyedError("EventBus", operation)

    def _topic(self, topic: str) -> TopicStats:
        ts = self._topics.get(topic)
        if ts is None:
            ts = self._topics[topic] = TopicStats(name=topic)
        return ts

    def _record_history(self, event: Event) -> None:
        if self._cfg.history_size == 0:
            return
        ring = self._history.get(event.topic)
        if ring is None:
            if len(self._history) >= self._cfg.max_history_topics:
                # evict the topic created first
                self._history.pop(next(iter(self._history)))
            ring = self._history[event.topic] = deque(maxlen=self._cfg.history_size)
        ring.append(event)

    def _report_error(self, sub: Subscription, event: Event, exc: BaseException) -> None:
        self._topic(event.topic).errors += 1
        logger.error(
            f"[{self._name}] Handler {sub.id} ({sub.pattern!r}) failed on {event.topic}: {exc}",
            exc_info=exc,
        )
        err = SubscriberError(
            f"Subscriber failed: {exc}",
            subscription_id=sub.id,
            topic=event.topic,
            component=self._name,
            details={"event_id": event.id},
        )
        err.__cause__ = exc
        for cb in list(self._on_error):
            try:
                cb(err)
            except Exception as hook_exc:
                logger.error(f"[{self._name}] on_error hook failed: {hook_exc}")

    def _remove(self, sub: Subscription) -> None:
        sub.active = False
        self._subscriptions.pop(sub.id, None)

    # --- Public hook registration ---

    def on_error(self, callback: ErrorHook) -> None:
        """
        Register an error hook: callback(SubscriberError).
        """
        self._check_alive("on_error")
        self._on_error.append(callback)

    # --- Subscription management ---

    def subscribe(
        self,
        pattern: str,
        handler: Handler,
        *,
        priority: Priority | int | str = Priority.NORMAL,
        once: bool = False,
        min_priority: Optional[Priority | int | str] = None,
        filter: Optional[EventFilter] = None,
        throttle_s: float = 0.0,
        max_triggers: Optional[int] = None,
    ) -> str:
        """
        Register handler for topics matching pattern ("vehicles.updated",
        "vehicles.*", "*.updated", "*"). Returns the subscription id.

        min_priority skips events emitted below that priority. throttle_s skips
        events arriving within that many seconds of the last delivery.
        """
        self._check_alive("subscribe")
        if not pattern:
            raise ValueError("pattern must not be empty")
        if max_triggers is not None and max_triggers <= 0:
            raise ValueError("max_triggers must be positive")
        sub = Subscription(
            id=f"sub_{uuid.uuid4().hex[:12]}",
            pattern=pattern,
            handler=handler,
            priority=Priority.coerce(priority),
            reg_seq=next(self._reg_seq),
            once=once,
            min_priority=Priority.coerce(min_priority) if min_priority is not None else None,
            filter=filter,
            throttle_s=max(0.0, throttle_s),
            max_triggers=max_triggers,
        )
        self._subscriptions[sub.id] = sub
        logger.debug(
            f"[{self._name}] Subscribed {sub.id} to {pattern!r} (priority={sub.priority.name})"
        )
        return sub.id

    def once(self, pattern: str, handler: Handler, **kwargs: Any) -> str:
        return self.subscribe(pattern, handler, once=True, **kwargs)

    def unsubscribe(self, subscription_id: str) -> bool:
        """Idempotent. Returns True if a subscription was removed."""
        self._check_alive("unsubscribe")
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            return False
        self._remove(sub)
        return True

    def unsubscribe_all(self, pattern: Optional[str] = None) -> int:
        """Remove every subscription registered with exactly this pattern (or all)."""
        self._check_alive("unsubscribe_all")
        victims = [
            s for s in self._subscriptions.values() if pattern is None or s.pattern == pattern
        ]
        for sub in victims:
            self._remove(sub)
        return len(victims)

    def subscription_count(self, topic: Optional[str] = None) -> int:
        self._check_alive("subscription_count")
        if topic is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions.values() if s.matches(topic))

    # --- Publishing ---

    async def emit(
        self,
        topic: str,
        payload: Any = None,
        *,
        source: str = "unknown",
        priority: Priority | int | str = Priority.NORMAL,
    ) -> Event:
        self._check_alive("emit")
        if not topic:
            raise ValueError("topic must not be empty")
        event = Event(
            topic=topic,
            payload=payload,
            source=source,
            priority=Priority.coerce(priority),
            timestamp=now_ms(),
            seq=next(self._event_seq),
        )
        stats = self._topic(topic)
        stats.emitted += 1
        stats.last_emitted = event.timestamp
        self._record_history(event)

        recipients = sorted(
            (s for s in self._subscriptions.values() if s.matches(topic)),
            key=lambda s: s.sort_key,
        )
        self._pending.append((event, recipients))
        if not self._dispatching:
            await self._drain()
        return event

    async def emit_log(
        self,
        level: str,
        msg: str,
        payload: Optional[dict[str, Any]] = None,
        component: str = "bus",
    ) -> None:
        """Payload must be JSON serializable"""
        log_event = LogEvent(level=level, component=component, msg=msg, payload=payload or {})
        await self.emit(T_LOG, log_event, source=component)

    async def _drain(self) -> None:
        self._dispatching = True
        try:
            while self._pending:
                event, recipients = self._pending.popleft()
                for i, sub in enumerate(recipients):
                    try:
                        await self._deliver(sub, event)
                    except asyncio.CancelledError:
                        # the interrupted handler has had the event; the rest still need it
                        rest = recipients[i + 1 :]
                        if rest:
                            self._pending.appendleft((event, rest))
                        self._hand_off_drain()
                        raise
        finally:
            self._dispatching = False

    def _hand_off_drain(self) -> None:
        if self._pending and self._state is _BusState.RUNNING:
            logger.debug(
                f"[{self._name}] Dispatching task cancelled, "
                f"handing {len(self._pending)} events to a new task"
            )
            self._scheduler.spawn(self._resume_drain(), name=f"{self._name}_drain")

    async def _resume_drain(self) -> None:
        if not self._dispatching and self._pending:
            await self._drain()

    async def _deliver(self, sub: Subscription, event: Event) -> None:
        if not sub.active:
            return
        if sub.min_priority is not None and event.priority < sub.min_priority:
            return
        if sub.filter is not None:
            try:
                if not sub.filter(event):
                    return
            except Exception as e:
                self._report_error(sub, event, e)
                return
        now = time.monotonic()
        if sub.throttle_s and sub.last_triggered is not None:
            if now - sub.last_triggered < sub.throttle_s:
                return

        sub.trigger_count += 1
        sub.last_triggered = now
        if sub.once or (sub.max_triggers is not None and sub.trigger_count >= sub.max_triggers):
            # removed before the handler runs so a re-entrant emit cannot hit it again
            self._remove(sub)

        try:
            result = sub.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._report_error(sub, event, e)
            return
        self._topic(event.topic).delivered += 1

    # --- History ---

    def get_history(self, pattern: str = "*", limit: int = 50) -> list[Event]:
        """Most recent events (oldest first) on topics matching pattern."""
        self._check_alive("get_history")
        events: list[Event] = []
        for topic, ring in self._history.items():
            if pattern == "*" or fnmatch.fnmatchcase(topic, pattern):
                events.extend(ring)
        events.sort(key=lambda e: e.seq)
        return events[-limit:] if limit > 0 else []

    def clear_history(self, topic: Optional[str] = None) -> None:
        self._check_alive("clear_history")
        if topic is None:
            self._history.clear()
        else:
            self._history.pop(topic, None)

    # --- Stats ---

    def topic_stats(self, topic: str) -> TopicStats:
        self._check_alive("topic_stats")
        ts = self._topic(topic)
        ts.history = len(self._history.get(topic, ()))
        return ts

    def get_stats(self) -> BusStats:
        """
        Get a global snapshot: state, counts and per-topic stats.
        """
        self._check_alive("get_stats")
        per_topic = [self.topic_stats(t) for t in sorted(self._topics)]
        return BusStats(
            state=self._state.value,
            subscriptions=len(self._subscriptions),
            topics=len(per_topic),
            total_emitted=sum(t.emitted for t in per_topic),
            total_delivered=sum(t.delivered for t in per_topic),
            total_errors=sum(t.errors for t in per_topic),
            pending=len(self._pending),
            per_topic=per_topic,
        )

    # --- Lifecycle ---

    @property
    def is_destroyed(self) -> bool:
        return self._state is _BusState.CLOSED

    def destroy(self) -> None:
        """Release every subscriber and drop history. Idempotent."""
        if self._state is _BusState.CLOSED:
            return
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()
        self._pending.clear()
        self._history.clear()
        self._on_error.clear()
        self._scheduler.close()
        self._state = _BusState.CLOSED
        logger.info(f"[{self._name}] Destroyed")
