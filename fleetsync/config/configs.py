"""
Configuration types for the real-time engine.

Provides immutable, validated configuration dataclasses for every component.
Durations are seconds (float) throughout; ConfigLoader converts strings such
as "500ms" or "30s".
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fleetsync.errors.errors import ConfigurationError


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive", field=name, value=value)


def _require_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise ConfigurationError(f"{name} must be non-negative", field=name, value=value)


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for the push channel."""

    # Endpoint (ignored when a transport is injected)
    url: str = ""

    # Connection behavior
    connect_timeout_s: float = 10.0
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 10
    base_reconnect_delay_s: float = 5.0
    max_reconnect_delay_s: float = 30.0
    reconnect_jitter: float = 0.0  # 0 keeps delay(n) exact

    # Heartbeat; stale after heartbeat_interval_s * heartbeat_timeout_factor without a pong
    heartbeat_interval_s: float = 30.0
    heartbeat_timeout_factor: float = 2.0

    # Buffers
    message_queue_size: int = 100  # outbound while disconnected
    recent_messages_size: int = 100

    def __post_init__(self) -> None:
        _require_positive("connect_timeout_s", self.connect_timeout_s)
        _require_positive("heartbeat_interval_s", self.heartbeat_interval_s)
        _require_positive("base_reconnect_delay_s", self.base_reconnect_delay_s)
        _require_non_negative("message_queue_size", self.message_queue_size)
        _require_positive("recent_messages_size", self.recent_messages_size)
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )
        if self.max_reconnect_delay_s < self.base_reconnect_delay_s:
            raise ConfigurationError(
                "max_reconnect_delay_s must be >= base_reconnect_delay_s",
                field="max_reconnect_delay_s",
                value=self.max_reconnect_delay_s,
            )
        if self.heartbeat_timeout_factor < 1:
            raise ConfigurationError(
                "heartbeat_timeout_factor must be at least 1",
                field="heartbeat_timeout_factor",
                value=self.heartbeat_timeout_factor,
            )
        if not (0 <= self.reconnect_jitter <= 1):
            raise ConfigurationError(
                "reconnect_jitter must be between 0 and 1",
                field="reconnect_jitter",
                value=self.reconnect_jitter,
            )


@dataclass(frozen=True)
class BusConfig:
    """Configuration for the event bus."""

    history_size: int = 100  # per topic
    max_history_topics: int = 256

    def __post_init__(self) -> None:
        _require_non_negative("history_size", self.history_size)
        _require_positive("max_history_topics", self.max_history_topics)


@dataclass(frozen=True)
class BatchSettings:
    """Size/age flush triggers for one batch key."""

    batch_key: str
    max_batch_size: int
    max_wait_s: float

    def __post_init__(self) -> None:
        if not self.batch_key:
            raise ConfigurationError("batch_key must not be empty", field="batch_key")
        _require_positive("max_batch_size", self.max_batch_size)
        _require_positive("max_wait_s", self.max_wait_s)


DEFAULT_BATCHES: tuple[BatchSettings, ...] = (
    BatchSettings("vehicle_updates", max_batch_size=10, max_wait_s=1.0),
    BatchSettings("position_updates", max_batch_size=20, max_wait_s=0.5),
    BatchSettings("connection_status", max_batch_size=1, max_wait_s=2.0),
)


@dataclass(frozen=True)
class UpdateQueueConfig:
    """Configuration for the priority/batching update queue."""

    max_retries: int = 3
    concurrency: int = 5
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    batches: tuple[BatchSettings, ...] = DEFAULT_BATCHES
    start_paused: bool = False

    def __post_init__(self) -> None:
        _require_non_negative("max_retries", self.max_retries)
        _require_positive("concurrency", self.concurrency)
        _require_positive("retry_base_delay_s", self.retry_base_delay_s)
        if self.retry_max_delay_s < self.retry_base_delay_s:
            raise ConfigurationError(
                "retry_max_delay_s must be >= retry_base_delay_s",
                field="retry_max_delay_s",
                value=self.retry_max_delay_s,
            )
        keys = [b.batch_key for b in self.batches]
        if len(keys) != len(set(keys)):
            raise ConfigurationError("duplicate batch_key in batches", field="batches")


@dataclass(frozen=True)
class StateConfig:
    """Configuration for the state store."""

    history_size: int = 50
    max_positions_per_device: int = 10

    def __post_init__(self) -> None:
        _require_positive("history_size", self.history_size)
        _require_positive("max_positions_per_device", self.max_positions_per_device)


@dataclass(frozen=True)
class HealthConfig:
    """Configuration for health monitoring."""

    enabled: bool = True
    check_interval_s: float = 5.0
    staleness_threshold_s: float = 60.0  # no position batch for this long

    def __post_init__(self) -> None:
        _require_positive("check_interval_s", self.check_interval_s)
        _require_positive("staleness_threshold_s", self.staleness_threshold_s)


@dataclass(frozen=True)
class AlertConfig:
    """Per-vehicle alert rules."""

    enabled: bool = True
    overspeed_kmh: float = 120.0
    low_battery_percent: float = 20.0
    alarm_enabled: bool = True
    throttle_s: float = 60.0  # same rule, same vehicle

    def __post_init__(self) -> None:
        _require_positive("overspeed_kmh", self.overspeed_kmh)
        if not (0 <= self.low_battery_percent <= 100):
            raise ConfigurationError(
                "low_battery_percent must be between 0 and 100",
                field="low_battery_percent",
                value=self.low_battery_percent,
            )
        _require_non_negative("throttle_s", self.throttle_s)


@dataclass(frozen=True)
class RealtimeConfig:
    """
    Immutable top-level configuration for the real-time engine.

    Example:
        config = RealtimeConfig(
            connection=ConnectionConfig(url="wss://telemetry.example/ws"),
            queue=UpdateQueueConfig(max_retries=5),
        )
    """

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    queue: UpdateQueueConfig = field(default_factory=UpdateQueueConfig)
    state: StateConfig = field(default_factory=StateConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
