"""
Push channel Connection Manager.

Handles the channel lifecycle including:
- Connection establishment with timeout
- Envelope-level heartbeat (ping/pong) with staleness detection
- Exponential backoff reconnection, delay(n) = min(base * 2^(n-1), cap)
- Bounded outbound queue while disconnected, flushed on connect
- Connection-level metrics and health tracking
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Optional

from fleetsync.config.configs import ConnectionConfig
from fleetsync.core.clock import Millis, now_ms
from fleetsync.core.scheduler import TaskScheduler
from fleetsync.errors.errors import ComponentDestroyedError, ConnectionError
from fleetsync.realtime.transport import Transport, WebSocketTransport
from fleetsync.realtime.types import (
    ChannelMessage,
    ConnectionHealth,
    ConnectionMetrics,
    ConnectionSnapshot,
    ConnectionState,
    MessageKind,
)

logger = logging.getLogger(__name__)

# Callbacks may be plain functions or coroutine functions
MessageCallback = Callable[[ChannelMessage], Any]
StateCallback = Callable[[ConnectionState], Any]
ErrorCallback = Callable[[Exception], Any]


def reconnect_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """delay(n) = min(base * 2^(n-1), cap) for attempt n >= 1."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base_s * (2 ** (attempt - 1)), cap_s)


class ConnectionManager:
    """
    Manages one logical push channel with automatic reconnection.

    Responsibilities:
    - Channel lifecycle (connect, degrade, reconnect, disconnect)
    - Heartbeat: a ping every heartbeat_interval_s; no pong for
      heartbeat_interval_s * heartbeat_timeout_factor marks the channel DEGRADED
    - Exponential backoff between reconnect attempts; the counter resets on connect
    - Queueing outbound messages while not connected

    connect() never raises on a failed attempt: the error is recorded, passed
    to on_error, and a reconnect is scheduled.

    Usage:
        async def on_message(msg: ChannelMessage) -> None:
            print(f"Received: {msg.data}")

        manager = ConnectionManager(
            ConnectionConfig(url="wss://telemetry.example/ws"),
            on_message=on_message,
        )
        await manager.connect()
        # ... later ...
        await manager.destroy()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        transport: Optional[Transport] = None,
        on_message: Optional[MessageCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_lifecycle: Optional[MessageCallback] = None,
        name: str = "connection",
    ) -> None:
        """
        Args:
            config: Connection configuration
            transport: Channel implementation; defaults to a WebSocketTransport on config.url
            on_message: Callback for `data` envelopes
            on_state_change: Callback for state transitions
            on_error: Callback for connection/remote errors
            on_lifecycle: Callback for connected/disconnected/error lifecycle envelopes
            name: Name for logging purposes
        """
        self._config = config
        self._transport: Transport = transport or WebSocketTransport(config.url, name=name)
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._on_lifecycle = on_lifecycle
        self._name = name

        # State
        self._state = ConnectionState.DISCONNECTED
        self._connection_id: Optional[str] = None
        self._session_open = False
        self._should_reconnect = True
        self._destroyed = False

        # Timers and tasks
        self._scheduler = TaskScheduler(name)
        self._receive_task: Optional[asyncio.Task[None]] = None

        # Reconnection state
        self._reconnect_attempts = 0

        # Heartbeat
        self._last_pong_mono: float = 0.0
        self._last_heartbeat: Optional[Millis] = None

        # Buffers
        self._outbound: Deque[ChannelMessage] = deque()
        self._recent: Deque[ChannelMessage] = deque(maxlen=config.recent_messages_size)

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None

    # --- Properties ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def metrics(self) -> ConnectionMetrics:
        return self._metrics

    # --- Callback plumbing ---

    async def _invoke(self, label: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"[{self._name}] {label} callback error: {e}")

    async def _set_state(self, new_state: ConnectionState) -> None:
        """Update state and notify listener."""
        old_state = self._state
        self._state = new_state

        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")
            await self._invoke("State change", self._on_state_change, new_state)

    async def _lifecycle(self, kind: MessageKind, data: Optional[dict[str, Any]] = None) -> None:
        await self._invoke(
            "Lifecycle", self._on_lifecycle, ChannelMessage(kind=kind, data=data, source=self._name)
        )

    def _check_alive(self, operation: str) -> None:
        if self._destroyed:
            raise ComponentDestroyedError("ConnectionManager", operation)

    def _record_error(self, message: str) -> None:
        self._metrics.errors += 1
        self._last_error = message
        self._last_error_at = datetime.now(timezone.utc)

    # --- Connect / reconnect ---

    async def connect(self) -> ConnectionSnapshot:
        """
        Open the channel. A no-op returning the current snapshot when already
        connecting or connected.
        """
        self._check_alive("connect")
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            logger.warning(f"[{self._name}] Already connected or connecting")
            return self._snapshot()

        self._should_reconnect = True
        return await self._attempt_connect()

    async def _attempt_connect(self) -> ConnectionSnapshot:
        self._scheduler.cancel("reconnect")
        await self._set_state(ConnectionState.CONNECTING)

        try:
            await asyncio.wait_for(self._transport.open(), timeout=self._config.connect_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_connect_failure(e)
            return self._snapshot()

        if self._destroyed or not self._should_reconnect:
            # disconnect()/destroy() ran while the transport was opening
            await self._close_transport()
            return self._snapshot()

        self._connection_id = f"conn_{uuid.uuid4().hex[:12]}"
        self._reconnect_attempts = 0
        self._session_open = True
        self._last_pong_mono = time.monotonic()
        self._last_heartbeat = now_ms()
        self._connected_at = datetime.now(timezone.utc)
        self._metrics.connected_at = time.monotonic()
        logger.info(f"[{self._name}] Connected ({self._connection_id})")

        await self._set_state(ConnectionState.CONNECTED)
        self._receive_task = self._scheduler.spawn(
            self._receive_loop(), name=f"{self._name}_receive"
        )
        self._scheduler.call_every(
            self._config.heartbeat_interval_s, self._heartbeat, key="heartbeat"
        )
        await self._lifecycle(MessageKind.CONNECTED, {"connection_id": self._connection_id})
        await self._flush_outbound()
        return self._snapshot()

    async def _handle_connect_failure(self, exc: Exception) -> None:
        reason = str(exc) or type(exc).__name__
        self._record_error(reason)
        err = ConnectionError(
            f"Connection failed: {reason}",
            url=self._config.url or None,
            reconnect_attempt=self._reconnect_attempts,
            component=self._name,
        )
        logger.warning(f"[{self._name}] {err}")
        await self._invoke("Error", self._on_error, err)
        await self._schedule_reconnect(reason)

    def backoff_delay(self, attempt: int) -> float:
        """Reconnect delay for attempt n, with optional jitter."""
        delay = reconnect_delay(
            attempt, self._config.base_reconnect_delay_s, self._config.max_reconnect_delay_s
        )
        jitter = self._config.reconnect_jitter
        if jitter:
            delay += random.uniform(-delay * jitter, delay * jitter)
        return max(0.0, delay)

    async def _schedule_reconnect(self, reason: str) -> None:
        if self._destroyed or not self._should_reconnect or not self._config.auto_reconnect:
            await self._set_state(ConnectionState.DISCONNECTED)
            return

        if self._reconnect_attempts >= self._config.max_reconnect_attempts:
            logger.error(
                f"[{self._name}] Giving up after {self._reconnect_attempts} reconnect attempts"
            )
            await self._set_state(ConnectionState.DISCONNECTED)
            await self._lifecycle(
                MessageKind.ERROR,
                {"reason": "max_reconnect_attempts", "attempts": self._reconnect_attempts},
            )
            return

        self._reconnect_attempts += 1
        self._metrics.reconnections += 1
        delay = self.backoff_delay(self._reconnect_attempts)
        logger.info(
            f"[{self._name}] Reconnect attempt {self._reconnect_attempts} "
            f"in {delay:.2f}s ({reason})"
        )
        await self._set_state(ConnectionState.RECONNECTING)
        self._scheduler.call_later(delay, self._attempt_connect, key="reconnect")

    async def _mark_degraded(self, reason: str) -> None:
        """Tear the session down and hand over to the reconnect path."""
        if self._state != ConnectionState.CONNECTED:
            return
        logger.warning(f"[{self._name}] Degraded: {reason}")
        self._record_error(reason)
        await self._set_state(ConnectionState.DEGRADED)
        self._scheduler.cancel("heartbeat")
        task = self._receive_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._receive_task = None
        await self._close_transport()
        await self._end_session(reason)
        await self._schedule_reconnect(reason)

    async def _end_session(self, reason: str) -> None:
        # exactly one `disconnected` per established session
        if not self._session_open:
            return
        self._session_open = False
        self._connected_at = None
        await self._lifecycle(
            MessageKind.DISCONNECTED, {"connection_id": self._connection_id, "reason": reason}
        )

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception as e:
            logger.warning(f"[{self._name}] Transport close failed: {e}")

    # --- Heartbeat ---

    async def _heartbeat(self) -> None:
        if self._state != ConnectionState.CONNECTED:
            return
        timeout_s = self._config.heartbeat_interval_s * self._config.heartbeat_timeout_factor
        silent_for = time.monotonic() - self._last_pong_mono
        if silent_for > timeout_s:
            await self._mark_degraded(f"no heartbeat acknowledgement for {silent_for:.2f}s")
            return
        try:
            await self._transport.send(ChannelMessage(kind=MessageKind.PING, source=self._name))
        except Exception as e:
            await self._mark_degraded(f"ping failed: {e}")
            return
        self._metrics.pings_sent += 1
        self._metrics.last_ping_at = time.monotonic()

    # --- Receiving ---

    async def _receive_loop(self) -> None:
        try:
            async for message in self._transport.messages():
                await self._handle_incoming(message)
        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Receive loop error: {e}")
            await self._mark_degraded(f"receive failed: {e}")
            return

        if self._state == ConnectionState.CONNECTED:
            await self._mark_degraded("transport closed")

    async def _handle_incoming(self, message: ChannelMessage) -> None:
        self._metrics.messages_received += 1
        self._metrics.last_message_at = time.monotonic()
        self._last_message_at = datetime.now(timezone.utc)
        self._recent.append(message)

        match message.kind:
            case MessageKind.PING:
                pong = ChannelMessage(kind=MessageKind.PONG, id=message.id, source=self._name)
                await self._send_now(pong)
            case MessageKind.PONG:
                self._metrics.pongs_received += 1
                self._last_pong_mono = time.monotonic()
                self._last_heartbeat = now_ms()
                if self._metrics.last_ping_at is not None:
                    rtt_s = self._last_pong_mono - self._metrics.last_ping_at
                    self._metrics.record_latency(rtt_s * 1000)
            case MessageKind.DATA:
                await self._invoke("Message", self._on_message, message)
            case MessageKind.ERROR:
                self._record_error(str(message.data))
                err = ConnectionError(
                    f"Remote error: {message.data}",
                    url=self._config.url or None,
                    component=self._name,
                )
                await self._invoke("Error", self._on_error, err)
            case MessageKind.CONNECTED | MessageKind.DISCONNECTED:
                await self._invoke("Lifecycle", self._on_lifecycle, message)

    # --- Sending ---

    async def _send_now(self, message: ChannelMessage) -> bool:
        try:
            await self._transport.send(message)
        except Exception as e:
            logger.warning(f"[{self._name}] Send failed: {e}")
            self._enqueue_outbound(message)
            await self._mark_degraded(f"send failed: {e}")
            return False
        self._metrics.messages_sent += 1
        return True

    def _enqueue_outbound(self, message: ChannelMessage) -> bool:
        if len(self._outbound) >= self._config.message_queue_size:
            self._metrics.dropped_outbound += 1
            logger.warning(f"[{self._name}] Outbound queue full, dropping message")
            return False
        self._outbound.append(message)
        return True

    async def send(self, data: Any) -> bool:
        """
        Send a ChannelMessage, or wrap data in a `data` envelope. Returns True if
        it went out now, False if it was queued (or dropped, queue full).
        """
        self._check_alive("send")
        if isinstance(data, ChannelMessage):
            message = data
        else:
            message = ChannelMessage(kind=MessageKind.DATA, data=data, source=self._name)
        if self._state != ConnectionState.CONNECTED:
            self._enqueue_outbound(message)
            return False
        return await self._send_now(message)

    async def _flush_outbound(self) -> None:
        if self._outbound:
            logger.info(f"[{self._name}] Flushing {len(self._outbound)} queued messages")
        while self._outbound and self._state == ConnectionState.CONNECTED:
            message = self._outbound.popleft()
            try:
                await self._transport.send(message)
            except Exception as e:
                self._outbound.appendleft(message)
                await self._mark_degraded(f"flush failed: {e}")
                return
            self._metrics.messages_sent += 1

    # --- Teardown ---

    async def disconnect(self) -> None:
        """Close the channel and stop reconnecting."""
        self._check_alive("disconnect")
        logger.info(f"[{self._name}] Disconnecting")
        await self._teardown("client disconnect")

    async def _teardown(self, reason: str) -> None:
        self._should_reconnect = False
        self._scheduler.cancel_all()
        self._receive_task = None
        await self._close_transport()
        await self._end_session(reason)
        await self._set_state(ConnectionState.DISCONNECTED)

    async def destroy(self) -> None:
        """Disconnect, cancel every timer and drop buffers. Further calls raise."""
        if self._destroyed:
            return
        await self._teardown("destroyed")
        self._scheduler.close()
        self._outbound.clear()
        self._destroyed = True
        logger.info(f"[{self._name}] Destroyed")

    # --- Diagnostics ---

    def get_state(self) -> ConnectionSnapshot:
        self._check_alive("get_state")
        return self._snapshot()

    def _snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            state=self._state,
            connection_id=self._connection_id if self._session_open else None,
            last_heartbeat=self._last_heartbeat,
            sent_count=self._metrics.messages_sent,
            received_count=self._metrics.messages_received,
            reconnect_attempts=self._reconnect_attempts,
            error=self._last_error,
            queued_messages=len(self._outbound),
            dropped_messages=self._metrics.dropped_outbound,
        )

    def get_recent_messages(self, limit: int = 10) -> list[ChannelMessage]:
        self._check_alive("get_recent_messages")
        if limit <= 0:
            return []
        return list(self._recent)[-limit:]

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        self._check_alive("get_health")
        return ConnectionHealth(
            state=self._state,
            url=self._config.url,
            connected_since=self._connected_at,
            last_message_at=self._last_message_at,
            reconnect_count=self._metrics.reconnections,
            message_count=self._metrics.messages_received,
            error_count=self._metrics.errors,
            last_error=self._last_error,
            last_error_at=self._last_error_at,
            latency_ms=self._metrics.last_latency_ms,
        )

    def get_stats(self) -> dict[str, Any]:
        self._check_alive("get_stats")
        return {
            "state": self._state.value,
            "connection_id": self._connection_id if self._session_open else None,
            "reconnect_attempts": self._reconnect_attempts,
            "messages_received": self._metrics.messages_received,
            "messages_sent": self._metrics.messages_sent,
            "pings_sent": self._metrics.pings_sent,
            "pongs_received": self._metrics.pongs_received,
            "reconnections": self._metrics.reconnections,
            "errors": self._metrics.errors,
            "queued_messages": len(self._outbound),
            "dropped_outbound": self._metrics.dropped_outbound,
            "avg_latency_ms": self._metrics.avg_latency_ms,
        }
