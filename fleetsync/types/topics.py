"""
Centralized topic constants for the event bus.

Kept in one module so the connection layer, the queue and the state store can
reference topics without importing each other.
"""

# Inbound (raw) topics
T_VEHICLES_UPDATED = "vehicles.updated"
T_POSITIONS_UPDATED = "positions.updated"
T_CONNECTION_STATUS = "connection.status"
T_POLLING_STATUS = "polling.status"
T_CUSTOM = "custom"

INBOUND_TOPICS = frozenset(
    {T_VEHICLES_UPDATED, T_POSITIONS_UPDATED, T_CONNECTION_STATUS, T_POLLING_STATUS, T_CUSTOM}
)

# Consolidated topics published by the update queue
T_VEHICLES_BATCH = "vehicles.batch_updated"
T_POSITIONS_BATCH = "positions.batch_updated"
T_CONNECTION_APPLIED = "connection.status.applied"
T_POLLING_APPLIED = "polling.status.applied"

# Outbound topics
T_STATE_UPDATED = "state.updated"
T_REALTIME_STARTED = "realtime.started"
T_REALTIME_STOPPED = "realtime.stopped"
T_NETWORK_HEALTH = "network.health"
T_ALERTS_VEHICLE = "alerts.vehicle"  # suffixed with the rule name
T_ALERTS_CONNECTION = "alerts.connection"

# Control topics
T_LOG = "log.event"
