"""
Versioned state store.

The current StateSnapshot is the single authoritative view of the fleet. Each
update method builds a new frozen snapshot that reuses every slice it did not
touch, bumps metadata.version by exactly one and appends it to a bounded
history. Selector subscribers are notified asynchronously and in update
order; a failing subscriber never blocks the others.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Deque, Iterable, Mapping, Optional

from pydantic import ValidationError

from fleetsync.config.configs import StateConfig
from fleetsync.core.bus import Event, EventBus
from fleetsync.core.clock import Millis, now_ms
from fleetsync.core.scheduler import TaskScheduler
from fleetsync.errors.errors import ComponentDestroyedError, StateUpdateError
from fleetsync.types.topics import (
    T_CONNECTION_APPLIED,
    T_POLLING_APPLIED,
    T_POSITIONS_BATCH,
    T_STATE_UPDATED,
    T_VEHICLES_BATCH,
)
from fleetsync.types.types import (
    ConnectionQuality,
    ConnectionStatus,
    PollingStatus,
    Position,
    Vehicle,
)

logger = logging.getLogger(__name__)

Selector = Callable[["StateSnapshot"], Any]
StateCallback = Callable[[Any, Any, "StateSnapshot"], Any]

_EMPTY_POSITIONS: Mapping[str, tuple[Position, ...]] = MappingProxyType({})


class StateUpdateKind(str, Enum):
    VEHICLES = "vehicles"
    POSITIONS = "positions"
    CONNECTION_STATUS = "connection_status"
    POLLING_STATUS = "polling_status"
    ROLLBACK = "rollback"
    RESET = "reset"


@dataclass(frozen=True)
class StateMetadata:
    version: int
    last_updated: Millis
    source: str


@dataclass(frozen=True)
class StateSnapshot:
    vehicles: tuple[Vehicle, ...]
    positions: Mapping[str, tuple[Position, ...]]  # newest first, per device
    connection_status: ConnectionStatus
    polling_status: PollingStatus
    metadata: StateMetadata

    @property
    def version(self) -> int:
        return self.metadata.version


def initial_snapshot() -> StateSnapshot:
    return StateSnapshot(
        vehicles=(),
        positions=_EMPTY_POSITIONS,
        connection_status=ConnectionStatus(),
        polling_status=PollingStatus(),
        metadata=StateMetadata(version=1, last_updated=now_ms(), source="init"),
    )


# --- Change detection ---

_SCALARS = (str, int, float, bool, bytes, Enum, type(None))


def _same(a: Any, b: Any) -> bool:
    return a is b or (isinstance(a, _SCALARS) and isinstance(b, _SCALARS) and a == b)


def shallow_equal(a: Any, b: Any) -> bool:
    """
    One level deep: sequences and mappings are equal when their items are the
    same objects (or equal scalars). Anything else compares with ==.
    """
    if a is b:
        return True
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return type(a) is type(b) and len(a) == len(b) and all(map(_same, a, b))
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        return a.keys() == b.keys() and all(_same(a[k], b[k]) for k in a)
    return a == b


def deep_equal(a: Any, b: Any) -> bool:
    return a is b or a == b


@dataclass
class _StateSubscription:
    id: str
    selector: Selector
    callback: StateCallback
    deep: bool
    throttle_s: float
    has_value: bool = False
    last_value: Any = None
    last_called: Optional[float] = None  # monotonic
    calls: int = 0
    errors: int = 0
    active: bool = True


class StateManager:
    """
    Usage:
        state = StateManager(StateConfig(), bus)
        sub_id = state.subscribe(lambda s: s.connection_status, on_status, immediate=True)
        state.update_connection_status({"is_connected": True})
        await state.wait_idle()
    """

    def __init__(
        self,
        config: Optional[StateConfig] = None,
        bus: Optional[EventBus] = None,
        *,
        name: str = "state",
    ) -> None:
        self._config = config or StateConfig()
        self._bus = bus
        self._name = name
        self._destroyed = False

        self._state = initial_snapshot()
        self._history: Deque[StateSnapshot] = deque([self._state], maxlen=self._config.history_size)
        self._subs: dict[str, _StateSubscription] = {}

        self._scheduler = TaskScheduler(name)
        self._pending: Deque[tuple[StateUpdateKind, StateSnapshot]] = deque()
        self._notifier: Optional[asyncio.Task[None]] = None

        self._updates_applied = 0
        self._notification_errors = 0

        self._bus_subs: list[str] = []
        if bus is not None:
            self._bus_subs = [
                bus.subscribe(T_VEHICLES_BATCH, self._on_vehicles_batch),
                bus.subscribe(T_POSITIONS_BATCH, self._on_positions_batch),
                bus.subscribe(T_CONNECTION_APPLIED, self._on_connection_applied),
                bus.subscribe(T_POLLING_APPLIED, self._on_polling_applied),
            ]

    # --- helpers ---

    def _check_alive(self, operation: str) -> None:
        if self._destroyed:
            raise ComponentDestroyedError("StateManager", operation)

    def _commit(self, kind: StateUpdateKind, source: str, **changes: Any) -> StateSnapshot:
        prev = self._state
        snapshot = dataclasses.replace(
            prev,
            metadata=StateMetadata(
                version=prev.metadata.version + 1, last_updated=now_ms(), source=source
            ),
            **changes,
        )
        self._state = snapshot
        self._history.append(snapshot)
        self._updates_applied += 1
        logger.debug(f"[{self._name}] v{snapshot.version} {kind.value} from {source}")
        self._pending.append((kind, snapshot))
        self._start_notifier()
        return snapshot

    def _start_notifier(self) -> None:
        if self._notifier is not None and not self._notifier.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # no loop: notifications run on the next update made inside one
            return
        self._notifier = self._scheduler.spawn(
            self._drain_notifications(), name=f"{self._name}_notify"
        )

    # --- Update methods ---

    def update_vehicles(
        self, vehicles: Iterable[Vehicle | Mapping[str, Any]], *, source: str = "unknown"
    ) -> StateSnapshot:
        """Replace the fleet list."""
        self._check_alive("update_vehicles")
        try:
            parsed = tuple(
                v if isinstance(v, Vehicle) else Vehicle.model_validate(v) for v in vehicles
            )
        except (ValidationError, TypeError) as e:
            raise StateUpdateError(
                f"Invalid vehicle data: {e}", update_kind="vehicles", component=self._name
            ) from e
        return self._commit(StateUpdateKind.VEHICLES, source, vehicles=parsed)

    def update_positions(
        self, positions: Iterable[Position | Mapping[str, Any]], *, source: str = "unknown"
    ) -> StateSnapshot:
        """
        Merge position fixes per device: de-duplicated on update_time (the newer
        report wins), newest first, at most max_positions_per_device kept.
        Devices not in the input keep their existing tuples.
        """
        self._check_alive("update_positions")
        try:
            parsed = [
                p if isinstance(p, Position) else Position.model_validate(p) for p in positions
            ]
        except (ValidationError, TypeError) as e:
            raise StateUpdateError(
                f"Invalid position data: {e}", update_kind="positions", component=self._name
            ) from e

        incoming: dict[str, list[Position]] = {}
        for p in parsed:
            incoming.setdefault(p.device_id, []).append(p)

        limit = self._config.max_positions_per_device
        merged = dict(self._state.positions)
        for device_id, fresh in incoming.items():
            by_time: dict[int, Position] = {p.update_time: p for p in merged.get(device_id, ())}
            for p in fresh:
                by_time[p.update_time] = p
            newest_first = sorted(by_time.values(), key=lambda p: p.update_time, reverse=True)
            merged[device_id] = tuple(newest_first[:limit])

        return self._commit(
            StateUpdateKind.POSITIONS, source, positions=MappingProxyType(merged)
        )

    def update_connection_status(
        self, status: ConnectionStatus | Mapping[str, Any], *, source: str = "unknown"
    ) -> StateSnapshot:
        """Replace the slice, or merge a partial mapping into it."""
        self._check_alive("update_connection_status")
        if not isinstance(status, ConnectionStatus):
            changes = dict(status)
            if "quality" in changes:
                try:
                    changes["quality"] = ConnectionQuality(changes["quality"])
                except ValueError as e:
                    raise StateUpdateError(
                        str(e), update_kind="connection_status", component=self._name
                    ) from e
            status = self._merge(self._state.connection_status, changes, "connection_status")
        return self._commit(StateUpdateKind.CONNECTION_STATUS, source, connection_status=status)

    def update_polling_status(
        self, status: PollingStatus | Mapping[str, Any], *, source: str = "unknown"
    ) -> StateSnapshot:
        """Replace the slice, or merge a partial mapping into it."""
        self._check_alive("update_polling_status")
        if not isinstance(status, PollingStatus):
            status = self._merge(self._state.polling_status, dict(status), "polling_status")
        return self._commit(StateUpdateKind.POLLING_STATUS, source, polling_status=status)

    def _merge(self, current: Any, changes: dict[str, Any], kind: str) -> Any:
        known = {f.name for f in dataclasses.fields(current)}
        unknown = set(changes) - known
        if unknown:
            raise StateUpdateError(
                f"Unknown {kind} fields: {sorted(unknown)}", update_kind=kind, component=self._name
            )
        return dataclasses.replace(current, **changes)

    def rollback(self, version: int, *, source: str = "rollback") -> StateSnapshot:
        """Re-apply a retained snapshot's slices as a new version."""
        self._check_alive("rollback")
        target = next((s for s in self._history if s.metadata.version == version), None)
        if target is None:
            raise StateUpdateError(
                f"Version {version} is not in history", update_kind="rollback", component=self._name
            )
        return self._commit(
            StateUpdateKind.ROLLBACK,
            source,
            vehicles=target.vehicles,
            positions=target.positions,
            connection_status=target.connection_status,
            polling_status=target.polling_status,
        )

    def reset(self, *, source: str = "reset") -> StateSnapshot:
        """Back to empty slices. The version keeps counting up."""
        self._check_alive("reset")
        blank = initial_snapshot()
        return self._commit(
            StateUpdateKind.RESET,
            source,
            vehicles=blank.vehicles,
            positions=blank.positions,
            connection_status=blank.connection_status,
            polling_status=blank.polling_status,
        )

    # --- Bus handlers ---

    def _on_vehicles_batch(self, event: Event) -> None:
        self.update_vehicles(event.payload["vehicles"], source=event.source)

    def _on_positions_batch(self, event: Event) -> None:
        self.update_positions(event.payload["positions"], source=event.source)

    def _on_connection_applied(self, event: Event) -> None:
        self.update_connection_status(event.payload["status"], source=event.source)

    def _on_polling_applied(self, event: Event) -> None:
        self.update_polling_status(event.payload["status"], source=event.source)

    # --- Subscriptions ---

    def subscribe(
        self,
        selector: Selector,
        callback: StateCallback,
        *,
        immediate: bool = False,
        deep: bool = False,
        throttle_s: float = 0.0,
    ) -> str:
        """
        callback(value, previous, snapshot) runs when selector(snapshot) changes.
        With immediate=True it runs once right away with previous=None.
        """
        self._check_alive("subscribe")
        sub = _StateSubscription(
            id=f"ssub_{uuid.uuid4().hex[:12]}",
            selector=selector,
            callback=callback,
            deep=deep,
            throttle_s=max(0.0, throttle_s),
        )
        state = self._state
        try:
            sub.last_value = selector(state)
            sub.has_value = True
        except Exception as e:
            logger.warning(f"[{self._name}] Selector for {sub.id} failed on subscribe: {e}")
        self._subs[sub.id] = sub

        if immediate and sub.has_value:
            sub.last_called = time.monotonic()
            sub.calls += 1
            try:
                result = callback(sub.last_value, None, state)
                if inspect.iscoroutine(result):
                    self._scheduler.spawn(result, name=f"{self._name}:{sub.id}")
            except Exception as e:
                self._subscriber_failed(sub, e)
        return sub.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Idempotent. Returns True if a subscription was removed."""
        self._check_alive("unsubscribe")
        sub = self._subs.pop(subscription_id, None)
        if sub is None:
            return False
        sub.active = False
        self._scheduler.cancel(f"throttle:{sub.id}")
        return True

    def _subscriber_failed(self, sub: _StateSubscription, exc: Exception) -> None:
        sub.errors += 1
        self._notification_errors += 1
        logger.error(f"[{self._name}] Subscriber {sub.id} failed: {exc}", exc_info=exc)

    async def _drain_notifications(self) -> None:
        while self._pending:
            kind, snapshot = self._pending.popleft()
            for sub in list(self._subs.values()):
                await self._evaluate(sub, snapshot)
            if self._bus is not None and not self._bus.is_destroyed:
                await self._bus.emit(
                    T_STATE_UPDATED,
                    {"update_kind": kind.value, "snapshot": snapshot, "version": snapshot.version},
                    source=self._name,
                )

    async def _evaluate(self, sub: _StateSubscription, snapshot: StateSnapshot) -> None:
        if not sub.active:
            return
        try:
            value = sub.selector(snapshot)
        except Exception as e:
            self._subscriber_failed(sub, e)
            return

        equal = deep_equal if sub.deep else shallow_equal
        if sub.has_value and equal(sub.last_value, value):
            return

        now = time.monotonic()
        if sub.throttle_s and sub.last_called is not None:
            wait_s = sub.throttle_s - (now - sub.last_called)
            if wait_s > 0:
                # trailing edge re-reads whatever state is current then
                key = f"throttle:{sub.id}"
                if not self._scheduler.is_scheduled(key):
                    self._scheduler.call_later(
                        wait_s, lambda s=sub: self._evaluate(s, self._state), key=key
                    )
                return

        previous = sub.last_value if sub.has_value else None
        sub.last_value = value
        sub.has_value = True
        sub.last_called = now
        sub.calls += 1
        try:
            result = sub.callback(value, previous, snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._subscriber_failed(sub, e)

    async def wait_idle(self, timeout_s: float = 5.0) -> None:
        """Wait until every committed update has been delivered to subscribers."""
        self._check_alive("wait_idle")

        async def _wait() -> None:
            while self._pending or (self._notifier is not None and not self._notifier.done()):
                if self._notifier is None or self._notifier.done():
                    self._start_notifier()
                if self._notifier is not None:
                    await asyncio.wait({self._notifier})

        await asyncio.wait_for(_wait(), timeout=timeout_s)

    # --- Read API ---

    def get_state(self) -> StateSnapshot:
        self._check_alive("get_state")
        return self._state

    @property
    def version(self) -> int:
        self._check_alive("version")
        return self._state.metadata.version

    def get_vehicles(self) -> tuple[Vehicle, ...]:
        self._check_alive("get_vehicles")
        return self._state.vehicles

    def get_vehicle(self, device_id: str) -> Optional[Vehicle]:
        self._check_alive("get_vehicle")
        return next((v for v in self._state.vehicles if v.device_id == device_id), None)

    def get_positions(self, device_id: str) -> tuple[Position, ...]:
        self._check_alive("get_positions")
        return self._state.positions.get(device_id, ())

    def get_latest_position(self, device_id: str) -> Optional[Position]:
        self._check_alive("get_latest_position")
        positions = self._state.positions.get(device_id)
        return positions[0] if positions else None

    def get_latest_positions(self) -> dict[str, Position]:
        self._check_alive("get_latest_positions")
        return {device: ps[0] for device, ps in self._state.positions.items() if ps}

    def get_connection_status(self) -> ConnectionStatus:
        self._check_alive("get_connection_status")
        return self._state.connection_status

    def get_polling_status(self) -> PollingStatus:
        self._check_alive("get_polling_status")
        return self._state.polling_status

    def get_history(self, limit: Optional[int] = None) -> list[StateSnapshot]:
        """Retained snapshots, oldest first."""
        self._check_alive("get_history")
        history = list(self._history)
        if limit is None:
            return history
        return history[-limit:] if limit > 0 else []

    def clear_history(self) -> None:
        """Keep only the current snapshot."""
        self._check_alive("clear_history")
        self._history.clear()
        self._history.append(self._state)

    def get_stats(self) -> dict[str, Any]:
        self._check_alive("get_stats")
        state = self._state
        return {
            "version": state.metadata.version,
            "last_updated": state.metadata.last_updated,
            "source": state.metadata.source,
            "vehicles": len(state.vehicles),
            "devices_with_positions": len(state.positions),
            "total_positions": sum(len(ps) for ps in state.positions.values()),
            "subscribers": len(self._subs),
            "history_size": len(self._history),
            "updates_applied": self._updates_applied,
            "pending_notifications": len(self._pending),
            "notification_errors": self._notification_errors,
        }

    # --- Lifecycle ---

    def destroy(self) -> None:
        """Cancel pending notifications and release subscribers. Idempotent."""
        if self._destroyed:
            return
        if self._bus is not None and not self._bus.is_destroyed:
            for sub_id in self._bus_subs:
                self._bus.unsubscribe(sub_id)
        self._bus_subs.clear()
        self._scheduler.close()
        self._pending.clear()
        for sub in self._subs.values():
            sub.active = False
        self._subs.clear()
        self._destroyed = True
        logger.info(f"[{self._name}] Destroyed")
