from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

LOG_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

# -------- Enums --------


class Priority(IntEnum):
    """Shared by events, subscriptions and queued updates."""

    CRITICAL = 100
    HIGH = 90
    NORMAL = 50
    LOW = 10

    @classmethod
    def coerce(cls, value: Priority | int | str) -> Priority:
        """Accept an enum member, its int value or its (case-insensitive) name."""
        if isinstance(value, Priority):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value!r}") from None
        return cls(value)


class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


# -------- Telemetry models --------


class Vehicle(BaseModel):
    """
    A tracked device as reported by the telemetry provider.
    Provider field names (deviceid, devicename, ...) are accepted as aliases.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    device_id: str = Field(alias="deviceid", min_length=1)
    name: str = Field(default="", alias="devicename")
    device_type: Optional[str | int] = Field(default=None, alias="devicetype")
    sim_number: Optional[str] = Field(default=None, alias="simnum")
    group_name: Optional[str] = Field(default=None, alias="groupname")
    last_active_time: int = Field(default=0, alias="lastactivetime")
    status: Optional[str | int] = None


class Position(BaseModel):
    """One position fix for one device. Times are unix millis."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    device_id: str = Field(alias="deviceid", min_length=1)
    device_time: int = Field(default=0, alias="devicetime")
    update_time: int = Field(alias="updatetime")
    latitude: float = Field(alias="callat")
    longitude: float = Field(alias="callon")
    altitude: float = 0.0
    radius: float = 0.0
    speed: float = 0.0  # km/h
    course: float = 0.0
    total_distance: float = Field(default=0.0, alias="totaldistance")
    status: int = 0
    moving: int = 0
    str_status: str = Field(default="", alias="strstatus")
    alarm: int = 0
    str_alarm: str = Field(default="", alias="stralarm")
    total_oil: Optional[float] = Field(default=None, alias="totaloil")
    temp1: Optional[float] = None
    temp2: Optional[float] = None
    voltage_percent: Optional[float] = Field(default=None, alias="voltagepercent")


# -------- State slices --------


@dataclass(frozen=True)
class ConnectionStatus:
    is_connected: bool = False
    quality: ConnectionQuality = ConnectionQuality.POOR
    latency_ms: float = 0.0
    last_update: int = 0  # unix millis


@dataclass(frozen=True)
class PollingStatus:
    is_active: bool = False
    interval_s: float = 30.0
    efficiency: float = 0.0
    last_poll: int = 0  # unix millis


# -------- Logging --------


@dataclass
class LogEvent:
    """
    Generic structure for infrastructure log lines published on the bus.
    """

    level: str  # DEBUG, INFO, WARN, ERROR
    component: str
    msg: str
    payload: dict[str, Any] = field(default_factory=dict)
    wall_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
