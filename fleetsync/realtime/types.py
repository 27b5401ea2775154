"""
Shared types, enums, and data structures for the realtime module.

This module contains types that are used across multiple components
of the realtime system.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fleetsync.core.clock import Millis, now_ms
from fleetsync.errors.errors import MessageParseError


class ManagerState(str, Enum):
    """State machine for RealtimeManager."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"
    DESTROYED = "destroyed"


class ConnectionState(str, Enum):
    """
    State machine for the push channel:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DEGRADED -> RECONNECTING -> DISCONNECTED
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


class MessageKind(str, Enum):
    """Envelope types carried on the push channel."""

    PING = "ping"
    PONG = "pong"
    DATA = "data"
    ERROR = "error"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class ChannelMessage:
    """Envelope: {type, timestamp, data?, source?, id?}."""

    kind: MessageKind
    timestamp: Millis = field(default_factory=now_ms)
    data: Any = None
    source: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.kind.value, "timestamp": self.timestamp}
        if self.data is not None:
            out["data"] = self.data
        if self.source is not None:
            out["source"] = self.source
        if self.id is not None:
            out["id"] = self.id
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> ChannelMessage:
        if not isinstance(raw, dict):
            raise MessageParseError(
                f"Channel frame must be an object, got {type(raw).__name__}",
                component="channel",
            )
        try:
            kind = MessageKind(raw.get("type"))
        except ValueError:
            raise MessageParseError(
                f"Unknown message type: {raw.get('type')!r}",
                component="channel",
                details={"type": raw.get("type")},
            ) from None
        timestamp = raw.get("timestamp")
        return cls(
            kind=kind,
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else now_ms(),
            data=raw.get("data"),
            source=raw.get("source"),
            id=raw.get("id"),
        )


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Point-in-time view of the channel, returned by connect() and get_state()."""

    state: ConnectionState
    connection_id: Optional[str] = None
    last_heartbeat: Optional[Millis] = None
    sent_count: int = 0
    received_count: int = 0
    reconnect_attempts: int = 0
    error: Optional[str] = None
    queued_messages: int = 0
    dropped_messages: int = 0

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING)


@dataclass
class ConnectionHealth:
    """Health snapshot for the push channel."""

    state: ConnectionState
    url: str
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnect_count: int = 0
    message_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    latency_ms: Optional[float] = None  # Last heartbeat round trip

    @property
    def uptime_s(self) -> Optional[float]:
        """Connection uptime in seconds, or None if not connected."""
        if self.connected_since is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.connected_since).total_seconds()

    @property
    def is_healthy(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def seconds_since_message(self) -> Optional[float]:
        if self.last_message_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_message_at).total_seconds()


@dataclass
class ConnectionMetrics:
    """Detailed counters for the push channel."""

    # Counters
    messages_received: int = 0
    messages_sent: int = 0
    pings_sent: int = 0
    pongs_received: int = 0
    reconnections: int = 0
    errors: int = 0
    dropped_outbound: int = 0

    # Latency tracking (rolling window)
    latency_samples: list[float] = field(default_factory=list)
    max_latency_samples: int = 100

    # Timing
    connected_at: Optional[float] = None  # monotonic time
    last_message_at: Optional[float] = None  # monotonic time
    last_ping_at: Optional[float] = None  # monotonic time

    def record_latency(self, latency_ms: float) -> None:
        self.latency_samples.append(latency_ms)
        if len(self.latency_samples) > self.max_latency_samples:
            self.latency_samples.pop(0)

    @property
    def avg_latency_ms(self) -> Optional[float]:
        if not self.latency_samples:
            return None
        return sum(self.latency_samples) / len(self.latency_samples)

    @property
    def last_latency_ms(self) -> Optional[float]:
        return self.latency_samples[-1] if self.latency_samples else None


@dataclass
class NetworkHealth:
    """Aggregate health published on network.health."""

    state: ManagerState
    connection: ConnectionHealth
    queue_size: int = 0
    retry_queue_size: int = 0
    total_failed: int = 0
    seconds_since_positions: Optional[float] = None
    positions_stale: bool = False
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_healthy(self) -> bool:
        return (
            self.state == ManagerState.RUNNING
            and self.connection.is_healthy
            and not self.positions_stale
        )

    @property
    def issues(self) -> list[str]:
        found: list[str] = []
        if self.state != ManagerState.RUNNING:
            found.append(f"manager {self.state.value}")
        if not self.connection.is_healthy:
            found.append(f"connection {self.connection.state.value}")
        if self.positions_stale:
            found.append("positions stale")
        return found
