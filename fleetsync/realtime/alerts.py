"""
Per-vehicle alert rules evaluated on consolidated position batches.

Rules:
- overspeed: speed above overspeed_kmh
- low_battery: voltage_percent below low_battery_percent
- alarm: device reports a non-zero alarm code

Each (device, rule) pair fires at most once per throttle_s. Loss and recovery
of the push channel are published on alerts.connection.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from fleetsync.config.configs import AlertConfig
from fleetsync.core.bus import Event, EventBus
from fleetsync.core.clock import Millis, now_ms
from fleetsync.errors.errors import ComponentDestroyedError
from fleetsync.types.topics import (
    T_ALERTS_CONNECTION,
    T_ALERTS_VEHICLE,
    T_CONNECTION_APPLIED,
    T_POSITIONS_BATCH,
)
from fleetsync.types.types import ConnectionStatus, Position, Priority

logger = logging.getLogger(__name__)


class AlertRule(str, Enum):
    OVERSPEED = "overspeed"
    LOW_BATTERY = "low_battery"
    ALARM = "alarm"


@dataclass(frozen=True)
class VehicleAlert:
    """Payload of alerts.vehicle.<rule>."""

    rule: AlertRule
    device_id: str
    value: Any
    threshold: Any
    position: Position
    message: str
    timestamp: Millis = field(default_factory=now_ms)


def alert_topic(rule: AlertRule) -> str:
    return f"{T_ALERTS_VEHICLE}.{rule.value}"


class AlertMonitor:
    """
    Usage:
        alerts = AlertMonitor(AlertConfig(overspeed_kmh=100), bus)
        bus.subscribe("alerts.vehicle.*", on_alert)
    """

    def __init__(self, config: AlertConfig, bus: EventBus, *, name: str = "alerts") -> None:
        self._config = config
        self._bus = bus
        self._name = name
        self._destroyed = False

        self._last_fired: dict[tuple[str, AlertRule], float] = {}
        self._connected: Optional[bool] = None
        self._emitted: dict[str, int] = {}
        self._suppressed = 0
        self._invalid_positions = 0

        self._bus_subs: list[str] = []
        if config.enabled:
            self._bus_subs = [
                bus.subscribe(T_POSITIONS_BATCH, self._on_positions),
                bus.subscribe(T_CONNECTION_APPLIED, self._on_connection),
            ]

    def _check_alive(self, operation: str) -> None:
        if self._destroyed:
            raise ComponentDestroyedError("AlertMonitor", operation)

    # --- Rule evaluation ---

    def evaluate(self, position: Position) -> list[VehicleAlert]:
        """Alerts the position triggers, before throttling."""
        self._check_alive("evaluate")
        cfg = self._config
        found: list[VehicleAlert] = []
        if position.speed > cfg.overspeed_kmh:
            found.append(
                VehicleAlert(
                    rule=AlertRule.OVERSPEED,
                    device_id=position.device_id,
                    value=position.speed,
                    threshold=cfg.overspeed_kmh,
                    position=position,
                    message=f"{position.device_id} at {position.speed:.0f} km/h",
                )
            )
        battery = position.voltage_percent
        if battery is not None and battery < cfg.low_battery_percent:
            found.append(
                VehicleAlert(
                    rule=AlertRule.LOW_BATTERY,
                    device_id=position.device_id,
                    value=battery,
                    threshold=cfg.low_battery_percent,
                    position=position,
                    message=f"{position.device_id} battery at {battery:.0f}%",
                )
            )
        if cfg.alarm_enabled and position.alarm:
            found.append(
                VehicleAlert(
                    rule=AlertRule.ALARM,
                    device_id=position.device_id,
                    value=position.alarm,
                    threshold=0,
                    position=position,
                    message=position.str_alarm or f"{position.device_id} alarm {position.alarm}",
                )
            )
        return found

    def _allow(self, alert: VehicleAlert) -> bool:
        key = (alert.device_id, alert.rule)
        now = time.monotonic()
        last = self._last_fired.get(key)
        if last is not None and now - last < self._config.throttle_s:
            self._suppressed += 1
            return False
        self._last_fired[key] = now
        return True

    # --- Bus handlers ---

    async def _on_positions(self, event: Event) -> None:
        for raw in event.payload["positions"]:
            try:
                position = raw if isinstance(raw, Position) else Position.model_validate(raw)
            except (ValidationError, TypeError) as e:
                self._invalid_positions += 1
                logger.debug(f"[{self._name}] Skipping invalid position: {e}")
                continue
            for alert in self.evaluate(position):
                if not self._allow(alert):
                    continue
                topic = alert_topic(alert.rule)
                self._emitted[topic] = self._emitted.get(topic, 0) + 1
                logger.info(f"[{self._name}] {alert.rule.value}: {alert.message}")
                priority = Priority.CRITICAL if alert.rule is AlertRule.ALARM else Priority.HIGH
                await self._bus.emit(topic, alert, source=self._name, priority=priority)

    async def _on_connection(self, event: Event) -> None:
        status = event.payload["status"]
        if isinstance(status, ConnectionStatus):
            connected = status.is_connected
        elif isinstance(status, Mapping) and "is_connected" in status:
            connected = bool(status["is_connected"])
        else:
            return

        # nothing to report until the channel has been up once
        if self._connected is None and not connected:
            return
        previous, self._connected = self._connected, connected
        if previous is None or previous == connected:
            return
        kind = "restored" if connected else "lost"
        self._emitted[T_ALERTS_CONNECTION] = self._emitted.get(T_ALERTS_CONNECTION, 0) + 1
        log = logger.info if connected else logger.warning
        log(f"[{self._name}] Connection {kind}")
        await self._bus.emit(
            T_ALERTS_CONNECTION,
            {"event": kind, "is_connected": connected, "timestamp": now_ms()},
            source=self._name,
            priority=Priority.NORMAL if connected else Priority.HIGH,
        )

    # --- Diagnostics / lifecycle ---

    def get_stats(self) -> dict[str, Any]:
        self._check_alive("get_stats")
        return {
            "enabled": self._config.enabled,
            "emitted": dict(self._emitted),
            "suppressed": self._suppressed,
            "invalid_positions": self._invalid_positions,
        }

    def reset_throttle(self) -> None:
        self._check_alive("reset_throttle")
        self._last_fired.clear()

    def destroy(self) -> None:
        if self._destroyed:
            return
        if not self._bus.is_destroyed:
            for sub_id in self._bus_subs:
                self._bus.unsubscribe(sub_id)
        self._bus_subs.clear()
        self._last_fired.clear()
        self._destroyed = True
        logger.debug(f"[{self._name}] Destroyed")
