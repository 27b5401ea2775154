"""
Real-time Manager - Top-level orchestration.

Coordinates all real-time components:
- ConnectionManager for the push channel lifecycle
- EventBus for raw, consolidated and outbound events
- UpdateQueue for batching, prioritisation and retries
- StateManager for the versioned fleet snapshot
- HealthMonitor and AlertMonitor for diagnostics
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from fleetsync.config.configs import RealtimeConfig
from fleetsync.core.bus import Event, EventBus, Handler
from fleetsync.core.clock import now_ms
from fleetsync.errors.errors import ComponentDestroyedError, ConfigurationError, RealtimeError
from fleetsync.realtime.alerts import AlertMonitor
from fleetsync.realtime.connection import ConnectionManager
from fleetsync.realtime.health import HealthMonitor
from fleetsync.realtime.state import Selector, StateCallback, StateManager
from fleetsync.realtime.transport import Transport
from fleetsync.realtime.types import ChannelMessage, ConnectionState, ManagerState, MessageKind
from fleetsync.realtime.update_queue import UpdateKind, UpdateQueue
from fleetsync.types.topics import (
    INBOUND_TOPICS,
    T_CONNECTION_STATUS,
    T_CUSTOM,
    T_POLLING_STATUS,
    T_POSITIONS_UPDATED,
    T_REALTIME_STARTED,
    T_REALTIME_STOPPED,
    T_VEHICLES_UPDATED,
)
from fleetsync.types.types import ConnectionQuality, Priority

logger = logging.getLogger(__name__)

# `type` values of data envelopes the channel may push
_MESSAGE_TOPICS: dict[str, str] = {
    "vehicles_update": T_VEHICLES_UPDATED,
    "vehicle_update": T_VEHICLES_UPDATED,
    "positions_update": T_POSITIONS_UPDATED,
    "position_update": T_POSITIONS_UPDATED,
    "connection_status": T_CONNECTION_STATUS,
    "polling_status": T_POLLING_STATUS,
}
_STOP_DRAIN_TIMEOUT_S = 1.0


def connection_quality(state: ConnectionState, latency_ms: Optional[float]) -> ConnectionQuality:
    """Quality shown in the connection slice for a channel state and last round trip."""
    if state != ConnectionState.CONNECTED:
        return ConnectionQuality.POOR
    if latency_ms is None:
        return ConnectionQuality.GOOD
    if latency_ms < 100:
        return ConnectionQuality.EXCELLENT
    if latency_ms < 300:
        return ConnectionQuality.GOOD
    if latency_ms < 1000:
        return ConnectionQuality.FAIR
    return ConnectionQuality.POOR


def _items(payload: Any, key: str) -> list[Any]:
    # accept either a bare list or {key: [...]}
    if isinstance(payload, Mapping):
        payload = payload.get(key, ())
    if payload is None:
        return []
    return list(payload)


class RealtimeManager:
    """
    Composition root for the real-time engine.

    Data flow:
        channel `data` -> bus (vehicles.updated, positions.updated, ...)
        -> UpdateQueue (batch / prioritise / retry)
        -> bus (vehicles.batch_updated, positions.batch_updated, ...)
        -> StateManager (version, notify selectors, state.updated)

    State Machine:
        [STOPPED] --start()--> [STARTING] --success--> [RUNNING]
                                    |                       |
                                [FAILED]              [STOPPING] --> [STOPPED]
        destroy() from any state --> [DESTROYED]

    Usage:
        manager = RealtimeManager(RealtimeConfig(connection=ConnectionConfig(url=url)))
        manager.subscribe_to_state_changes(lambda s: s.vehicles, on_vehicles)
        await manager.start()
        # ... system running ...
        await manager.destroy()
    """

    def __init__(
        self,
        config: Optional[RealtimeConfig] = None,
        *,
        transport: Optional[Transport] = None,
        bus: Optional[EventBus] = None,
        name: str = "realtime",
    ) -> None:
        """
        Args:
            config: Engine configuration
            transport: Channel implementation; a WebSocket on connection.url if omitted
            bus: Shared bus; one is created (and owned) if omitted
            name: Name for logging purposes
        """
        self._config = config or RealtimeConfig()
        self._name = name
        if transport is None and not self._config.connection.url:
            raise ConfigurationError(
                "connection.url is required when no transport is given",
                field="connection.url",
                component=name,
            )

        # State
        self._state = ManagerState.STOPPED
        self._started_at: Optional[datetime] = None

        # Components
        self._owns_bus = bus is None
        self._bus = bus or EventBus(self._config.bus, name=f"{name}_bus")
        self._store = StateManager(self._config.state, self._bus, name=f"{name}_state")
        self._queue = UpdateQueue(self._config.queue, self._bus, name=f"{name}_queue")
        self._connection = ConnectionManager(
            self._config.connection,
            transport=transport,
            on_message=self._on_message,
            on_state_change=self._on_connection_state_change,
            on_error=self._on_connection_error,
            on_lifecycle=self._on_lifecycle,
            name=f"{name}_connection",
        )
        self._health = HealthMonitor(
            self._config.health,
            self._bus,
            connection_health=self._connection.get_health,
            queue_stats=self._queue.get_stats,
            manager_state=lambda: self._state,
            on_stale=self._on_stale_feed,
            name=f"{name}_health",
        )
        self._alerts = AlertMonitor(self._config.alerts, self._bus, name=f"{name}_alerts")

        self._bus_subs = [
            self._bus.subscribe(T_VEHICLES_UPDATED, self._on_vehicles_updated),
            self._bus.subscribe(T_POSITIONS_UPDATED, self._on_positions_updated),
            self._bus.subscribe(T_CONNECTION_STATUS, self._on_connection_status),
            self._bus.subscribe(T_POLLING_STATUS, self._on_polling_status),
            self._bus.subscribe(T_CUSTOM, self._on_custom),
        ]

        # Statistics
        self._messages_routed = 0
        self._errors_count = 0

    # --- Bus-based logging for critical events ---

    async def _emit_log(
        self,
        level: str,
        msg: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Bridge a lifecycle event onto log.event.

        Use for start/stop, connection state changes, exhausted reconnects and
        stale feeds. Do NOT use for high-frequency operational logs.
        """
        if self._bus.is_destroyed:
            return
        await self._bus.emit_log(level, msg, payload, component=self._name)

    # --- Properties ---

    @property
    def state(self) -> ManagerState:
        """Current manager state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ManagerState.RUNNING

    @property
    def config(self) -> RealtimeConfig:
        return self._config

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def queue(self) -> UpdateQueue:
        return self._queue

    @property
    def state_manager(self) -> StateManager:
        return self._store

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def alerts(self) -> AlertMonitor:
        return self._alerts

    def _check_alive(self, operation: str) -> None:
        if self._state == ManagerState.DESTROYED:
            raise ComponentDestroyedError("RealtimeManager", operation)

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Connect the channel, resume the queue and start health checks.

        A failed connection attempt does not fail start(): the channel keeps
        reconnecting in the background and the failure shows up on
        connection.status.

        Raises:
            RealtimeError: If a component could not be started
        """
        self._check_alive("start")
        if self._state not in (ManagerState.STOPPED, ManagerState.FAILED):
            logger.warning(f"[{self._name}] Cannot start from state: {self._state.value}")
            return

        logger.info(f"[{self._name}] Starting real-time engine...")
        self._state = ManagerState.STARTING
        try:
            self._queue.resume()
            self._health.start()
            snapshot = await self._connection.connect()
        except Exception as e:
            self._state = ManagerState.FAILED
            logger.error(f"[{self._name}] Failed to start: {e}")
            await self._emit_log(
                "ERROR",
                "Real-time engine failed to start",
                {"event": "REALTIME_START_FAILED", "error": str(e), "error_type": type(e).__name__},
            )
            self._health.stop()
            raise RealtimeError(
                f"Failed to start real-time engine: {e}", component="RealtimeManager"
            ) from e

        self._state = ManagerState.RUNNING
        self._started_at = datetime.now(timezone.utc)
        logger.info(f"[{self._name}] Real-time engine started")

        await self._bus.emit(
            T_REALTIME_STARTED,
            {
                "connection_state": snapshot.state.value,
                "connection_id": snapshot.connection_id,
                "timestamp": now_ms(),
            },
            source=self._name,
            priority=Priority.HIGH,
        )
        await self._emit_log(
            "INFO",
            "Real-time engine started",
            {"event": "REALTIME_STARTED", "connection_state": snapshot.state.value},
        )

    async def stop(self) -> None:
        """Disconnect, drain what is already queued (bounded), then pause the queue."""
        self._check_alive("stop")
        if self._state in (ManagerState.STOPPED, ManagerState.STOPPING):
            return

        logger.info(f"[{self._name}] Stopping real-time engine...")
        self._state = ManagerState.STOPPING
        await self._emit_log(
            "INFO",
            "Real-time engine stopping",
            {
                "event": "REALTIME_STOPPING",
                "messages_routed": self._messages_routed,
                "errors_count": self._errors_count,
            },
        )

        self._health.stop()
        await self._connection.disconnect()

        # let the final connection status reach the state store
        self._queue.flush_all()
        try:
            await self._queue.wait_idle(timeout_s=_STOP_DRAIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.warning(f"[{self._name}] Update queue not drained before pause")
        self._queue.pause()

        self._state = ManagerState.STOPPED
        logger.info(f"[{self._name}] Real-time engine stopped")
        await self._bus.emit(
            T_REALTIME_STOPPED, {"timestamp": now_ms()}, source=self._name, priority=Priority.HIGH
        )

    async def destroy(self) -> None:
        """Tear down every owned component. Idempotent; other calls then raise."""
        if self._state == ManagerState.DESTROYED:
            return
        if self._state in (ManagerState.RUNNING, ManagerState.STARTING):
            await self.stop()

        self._health.destroy()
        self._alerts.destroy()
        await self._connection.destroy()
        self._queue.destroy()
        self._store.destroy()
        if not self._bus.is_destroyed:
            for sub_id in self._bus_subs:
                self._bus.unsubscribe(sub_id)
            if self._owns_bus:
                self._bus.destroy()
        self._bus_subs.clear()

        self._state = ManagerState.DESTROYED
        logger.info(f"[{self._name}] Destroyed")

    # --- Channel callbacks ---

    async def _on_message(self, message: ChannelMessage) -> None:
        """Route a `data` envelope onto the matching inbound topic."""
        data = message.data
        source = message.source or "channel"
        topic, payload = T_CUSTOM, None

        if isinstance(data, Mapping):
            if data.get("topic") in INBOUND_TOPICS:
                topic, payload = data["topic"], data.get("payload")
            elif data.get("type") in _MESSAGE_TOPICS:
                topic = _MESSAGE_TOPICS[data["type"]]
                payload = data.get("data", data.get("payload"))
            elif data.get("event_type") and data["event_type"] not in INBOUND_TOPICS:
                payload = {"event_type": data["event_type"], "event_data": data.get("event_data")}

        if topic == T_CUSTOM and payload is None:
            payload = {"event_type": "channel.message", "event_data": data}

        self._messages_routed += 1
        await self._bus.emit(topic, payload, source=source)

    async def _on_connection_state_change(self, state: ConnectionState) -> None:
        """Publish the channel state on connection.status and bridge it to log.event."""
        logger.info(f"[{self._name}] Connection state: {state.value}")
        latency = self._connection.metrics.last_latency_ms
        await self._bus.emit(
            T_CONNECTION_STATUS,
            {
                "is_connected": state == ConnectionState.CONNECTED,
                "quality": connection_quality(state, latency).value,
                "latency_ms": latency or 0.0,
                "last_update": now_ms(),
            },
            source=self._connection.name,
        )

        if state == ConnectionState.CONNECTED:
            await self._emit_log(
                "INFO",
                "Channel connected",
                {"event": "CONNECTION_ESTABLISHED", "state": state.value},
            )
        elif state == ConnectionState.RECONNECTING:
            logger.warning(f"[{self._name}] Connection lost, reconnecting...")
            await self._emit_log(
                "WARN",
                "Channel lost, reconnecting",
                {
                    "event": "CONNECTION_RECONNECTING",
                    "state": state.value,
                    "attempt": self._connection.reconnect_attempts,
                },
            )
        elif state == ConnectionState.DISCONNECTED:
            await self._emit_log(
                "WARN",
                "Channel disconnected",
                {"event": "CONNECTION_DISCONNECTED", "state": state.value},
            )

    async def _on_connection_error(self, error: Exception) -> None:
        logger.error(f"[{self._name}] Connection error: {error}")
        self._errors_count += 1
        await self._emit_log(
            "ERROR",
            "Connection error",
            {"event": "CONNECTION_ERROR", "error": str(error), "error_type": type(error).__name__},
        )

    async def _on_lifecycle(self, message: ChannelMessage) -> None:
        if message.kind == MessageKind.ERROR:
            await self._emit_log(
                "ERROR",
                "Reconnect attempts exhausted",
                {"event": "CONNECTION_GAVE_UP", **(message.data or {})},
            )
        else:
            logger.debug(f"[{self._name}] Lifecycle {message.kind.value}: {message.data}")

    async def _on_stale_feed(self, silence_s: float) -> None:
        await self._emit_log(
            "WARN",
            "Position feed became stale",
            {"event": "FEED_STALE", "seconds_since_positions": round(silence_s, 3)},
        )

    # --- Inbound topics -> update queue ---

    def _on_vehicles_updated(self, event: Event) -> None:
        self._queue.enqueue(
            UpdateKind.VEHICLE,
            _items(event.payload, "vehicles"),
            priority=max(event.priority, Priority.NORMAL),
            source=event.source,
            batch_key="vehicle_updates",
        )

    def _on_positions_updated(self, event: Event) -> None:
        self._queue.enqueue(
            UpdateKind.POSITION,
            _items(event.payload, "positions"),
            priority=max(event.priority, Priority.HIGH),
            source=event.source,
            batch_key="position_updates",
        )

    def _on_connection_status(self, event: Event) -> None:
        self._queue.enqueue(
            UpdateKind.CONNECTION,
            event.payload,
            priority=max(event.priority, Priority.HIGH),
            source=event.source,
            batch_key="connection_status",
        )

    def _on_polling_status(self, event: Event) -> None:
        self._queue.enqueue(
            UpdateKind.POLLING, event.payload, priority=event.priority, source=event.source
        )

    def _on_custom(self, event: Event) -> None:
        self._queue.enqueue(
            UpdateKind.CUSTOM, event.payload, priority=event.priority, source=event.source
        )

    # --- Convenience API ---

    async def broadcast_vehicle_update(
        self, vehicles: Iterable[Any], *, source: str = "broadcast"
    ) -> Event:
        """Publish a fleet list on vehicles.updated."""
        self._check_alive("broadcast_vehicle_update")
        return await self._bus.emit(T_VEHICLES_UPDATED, list(vehicles), source=source)

    async def broadcast_position_update(
        self, positions: Iterable[Any], *, source: str = "broadcast"
    ) -> Event:
        """Publish position fixes on positions.updated."""
        self._check_alive("broadcast_position_update")
        return await self._bus.emit(
            T_POSITIONS_UPDATED, list(positions), source=source, priority=Priority.HIGH
        )

    async def broadcast_custom(
        self,
        event_type: str,
        event_data: Any = None,
        *,
        source: str = "broadcast",
        priority: Priority | int | str = Priority.NORMAL,
    ) -> Event:
        """Publish a custom envelope; it is re-emitted on event_type once processed."""
        self._check_alive("broadcast_custom")
        if not event_type:
            raise ValueError("event_type must not be empty")
        if event_type in INBOUND_TOPICS:
            raise ValueError(f"event_type must not be an inbound topic: {event_type!r}")
        return await self._bus.emit(
            T_CUSTOM,
            {"event_type": event_type, "event_data": event_data},
            source=source,
            priority=priority,
        )

    async def send(self, data: Any) -> bool:
        """Send data upstream on the channel (queued while disconnected)."""
        self._check_alive("send")
        return await self._connection.send(data)

    def subscribe_to_state_changes(
        self,
        selector: Selector,
        callback: StateCallback,
        *,
        immediate: bool = False,
        deep: bool = False,
        throttle_s: float = 0.0,
    ) -> str:
        self._check_alive("subscribe_to_state_changes")
        return self._store.subscribe(
            selector, callback, immediate=immediate, deep=deep, throttle_s=throttle_s
        )

    def unsubscribe_from_state_changes(self, subscription_id: str) -> bool:
        self._check_alive("unsubscribe_from_state_changes")
        return self._store.unsubscribe(subscription_id)

    def on(self, pattern: str, handler: Handler, **kwargs: Any) -> str:
        """Subscribe to bus topics; kwargs as for EventBus.subscribe."""
        self._check_alive("on")
        return self._bus.subscribe(pattern, handler, **kwargs)

    def off(self, subscription_id: str) -> bool:
        self._check_alive("off")
        return self._bus.unsubscribe(subscription_id)

    # --- Diagnostics ---

    def get_system_status(self) -> dict[str, Any]:
        """Aggregated diagnostics of every component."""
        self._check_alive("get_system_status")
        uptime_s: Optional[float] = None
        if self._started_at is not None and self._state == ManagerState.RUNNING:
            uptime_s = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return {
            "state": self._state.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "uptime_s": uptime_s,
            "messages_routed": self._messages_routed,
            "errors_count": self._errors_count,
            "connection": self._connection.get_stats(),
            "bus": dataclasses.asdict(self._bus.get_stats()),
            "queue": dataclasses.asdict(self._queue.get_stats()),
            "store": self._store.get_stats(),
            "health": self._health.get_stats(),
            "alerts": self._alerts.get_stats(),
        }
