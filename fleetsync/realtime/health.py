"""
Health Monitor for the real-time engine.

Periodically aggregates:
- Connection health (state, errors, heartbeat latency)
- Queue pressure (main and retry queue sizes, permanent failures)
- Position feed staleness (no consolidated position batch for N seconds)

into a NetworkHealth published on network.health.
"""

from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Callable, Optional

from fleetsync.config.configs import HealthConfig
from fleetsync.core.bus import Event, EventBus
from fleetsync.core.scheduler import TaskScheduler
from fleetsync.errors.errors import ComponentDestroyedError
from fleetsync.realtime.types import ConnectionHealth, ManagerState, NetworkHealth
from fleetsync.realtime.update_queue import QueueStats
from fleetsync.types.topics import T_NETWORK_HEALTH, T_POSITIONS_BATCH

logger = logging.getLogger(__name__)

StaleCallback = Callable[[float], Any]


class HealthMonitor:
    """
    Monitors health of the real-time engine.

    Responsibilities:
    - Track when the last position batch was applied
    - Detect a stale position feed
    - Aggregate health from the connection and the update queue
    - Emit network.health on every check
    """

    def __init__(
        self,
        config: HealthConfig,
        bus: EventBus,
        *,
        connection_health: Callable[[], ConnectionHealth],
        queue_stats: Optional[Callable[[], QueueStats]] = None,
        manager_state: Optional[Callable[[], ManagerState]] = None,
        on_stale: Optional[StaleCallback] = None,
        name: str = "health",
    ) -> None:
        """
        Args:
            config: Health monitoring configuration
            bus: Bus to publish network.health on
            connection_health: Provider for the channel's ConnectionHealth
            queue_stats: Provider for update queue statistics
            manager_state: Provider for the orchestrator's state
            on_stale: Called with the silence in seconds when the feed turns stale
            name: Name for logging purposes
        """
        self._config = config
        self._bus = bus
        self._connection_health = connection_health
        self._queue_stats = queue_stats
        self._manager_state = manager_state
        self._on_stale = on_stale
        self._name = name

        self._scheduler = TaskScheduler(name)
        self._running = False
        self._destroyed = False

        self._last_positions_mono: Optional[float] = None
        self._was_stale = False
        self._was_healthy: Optional[bool] = None
        self._last_health: Optional[NetworkHealth] = None
        self._checks = 0

        self._bus_sub = bus.subscribe(T_POSITIONS_BATCH, self._on_positions)

    def _check_alive(self, operation: str) -> None:
        if self._destroyed:
            raise ComponentDestroyedError("HealthMonitor", operation)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_health(self) -> Optional[NetworkHealth]:
        return self._last_health

    def _on_positions(self, event: Event) -> None:
        self._last_positions_mono = time.monotonic()

    def record_positions(self) -> None:
        """Mark the position feed as fresh."""
        self._check_alive("record_positions")
        self._last_positions_mono = time.monotonic()

    def start(self) -> None:
        """Start periodic checks."""
        self._check_alive("start")
        if self._running:
            logger.warning(f"[{self._name}] Health monitor already running")
            return
        if not self._config.enabled:
            logger.info(f"[{self._name}] Health monitoring disabled")
            return
        self._running = True
        self._scheduler.call_every(self._config.check_interval_s, self.check_now, key="check")
        logger.info(f"[{self._name}] Health monitor started")

    def stop(self) -> None:
        """Stop periodic checks. Synchronous."""
        if not self._running:
            return
        self._scheduler.cancel_all()
        self._running = False
        logger.info(f"[{self._name}] Health monitor stopped")

    def build_health(self) -> NetworkHealth:
        self._check_alive("build_health")
        since: Optional[float] = None
        if self._last_positions_mono is not None:
            since = time.monotonic() - self._last_positions_mono
        stale = since is not None and since > self._config.staleness_threshold_s

        queue_size = retry_size = failed = 0
        if self._queue_stats is not None:
            stats = self._queue_stats()
            queue_size = stats.current_queue_size
            retry_size = stats.retry_queue_size
            failed = stats.total_failed

        return NetworkHealth(
            state=self._manager_state() if self._manager_state else ManagerState.RUNNING,
            connection=self._connection_health(),
            queue_size=queue_size,
            retry_queue_size=retry_size,
            total_failed=failed,
            seconds_since_positions=since,
            positions_stale=stale,
        )

    async def check_now(self) -> NetworkHealth:
        """Run one check and publish the result."""
        self._check_alive("check_now")
        health = self.build_health()
        self._last_health = health
        self._checks += 1

        if health.positions_stale and not self._was_stale:
            silence = health.seconds_since_positions or 0.0
            logger.warning(f"[{self._name}] Position feed stale for {silence:.1f}s")
            if self._on_stale is not None:
                try:
                    result = self._on_stale(silence)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(f"[{self._name}] Stale callback error: {e}")
        self._was_stale = health.positions_stale

        if self._was_healthy is not None and health.is_healthy != self._was_healthy:
            if health.is_healthy:
                logger.info(f"[{self._name}] System healthy")
            else:
                logger.warning(f"[{self._name}] System unhealthy: {', '.join(health.issues)}")
        self._was_healthy = health.is_healthy

        if not self._bus.is_destroyed:
            await self._bus.emit(T_NETWORK_HEALTH, health, source=self._name)
        return health

    def get_stats(self) -> dict[str, Any]:
        self._check_alive("get_stats")
        health = self._last_health
        return {
            "running": self._running,
            "checks": self._checks,
            "healthy": health.is_healthy if health else None,
            "issues": health.issues if health else [],
            "positions_stale": self._was_stale,
        }

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._scheduler.close()
        self._running = False
        if not self._bus.is_destroyed:
            self._bus.unsubscribe(self._bus_sub)
        self._destroyed = True
        logger.debug(f"[{self._name}] Destroyed")
