"""fleetsync: real-time update and state synchronisation for fleet telemetry."""

__version__ = "0.1.0"
