"""
Real-time Fleet Telemetry Module.

Keeps a client-side view of vehicles and their positions consistent with a
remote push channel, integrated with the EventBus.

Components:
- RealtimeManager: Top-level orchestration and lifecycle management
- ConnectionManager: Push channel lifecycle, heartbeat, reconnection
- UpdateQueue: Priority queue, per-key batching, retries with backoff
- StateManager: Versioned immutable snapshots and selector subscriptions
- HealthMonitor: Staleness detection, health aggregation
- AlertMonitor: Per-vehicle overspeed / low battery / alarm rules

Usage:
    from fleetsync.realtime import RealtimeManager
    from fleetsync.config.configs import ConnectionConfig, RealtimeConfig

    config = RealtimeConfig(connection=ConnectionConfig(url="wss://telemetry.example/ws"))
    manager = RealtimeManager(config)
    await manager.start()
"""

from fleetsync.realtime.manager import RealtimeManager
from fleetsync.realtime.state import StateManager, StateSnapshot
from fleetsync.realtime.types import (
    ChannelMessage,
    ConnectionHealth,
    ConnectionSnapshot,
    ConnectionState,
    ManagerState,
    MessageKind,
    NetworkHealth,
)
from fleetsync.realtime.update_queue import UpdateKind, UpdateQueue

__all__ = [
    # Main entry point
    "RealtimeManager",
    # Components
    "StateManager",
    "UpdateQueue",
    # Types
    "ChannelMessage",
    "ConnectionHealth",
    "ConnectionSnapshot",
    "ConnectionState",
    "ManagerState",
    "MessageKind",
    "NetworkHealth",
    "StateSnapshot",
    "UpdateKind",
]
