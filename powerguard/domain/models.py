from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ZoneMembership(str, Enum):
    UNKNOWN = "UNKNOWN"
    INSIDE = "INSIDE"
    OUTSIDE = "OUTSIDE"


class ZoneEvent(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"
    UNKNOWN = "UNKNOWN"  # forced by disable or missing location


class CommandStatus(str, Enum):
    PENDING = "PENDING"
    ACKED = "ACKED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ABANDONED = "ABANDONED"  # superseded by a later toggle


class TimerSource(str, Enum):
    GEOFENCE = "GEOFENCE"
    MANUAL = "MANUAL"


class NotificationCategory(str, Enum):
    # Values are the preference keys
    LEFT_ZONE_WITH_OUTLETS_ON = "leftZoneWithOutletsOn"
    TURNED_ON_OUTLET_OUTSIDE_ZONE = "turnedOnOutletOutsideZone"
    MANUAL_TIMER_COMPLETED = "manualTimerCompleted"
    GEOFENCE_TIMER_COMPLETED = "geofenceTimerCompleted"


class TickStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass(frozen=True)
class GeofenceRegion:
    center_lat: float
    center_lng: float
    radius_m: float
    enabled: bool = True


@dataclass(frozen=True)
class LocationSample:
    lat: float
    lng: float
    accuracy: Optional[float]  # meters, None if the provider does not say
    ts_utc: datetime


@dataclass(frozen=True)
class ZoneTransition:
    event: ZoneEvent
    membership: ZoneMembership
    ts_utc: datetime
    distance_m: Optional[float]
    cycle: int


@dataclass
class Outlet:
    id: str
    name: str
    displayed_state: bool = False
    canonical_state: bool = False
    pending_command_id: Optional[str] = None
    last_ack_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class Command:
    id: str
    outlet_id: str
    desired_state: bool
    issued_at: datetime
    retry_count: int = 0
    status: CommandStatus = CommandStatus.PENDING
    error: Optional[str] = None


@dataclass(frozen=True)
class CommandAck:
    command_id: str
    outlet_id: str
    achieved_state: bool
    ts_utc: datetime


@dataclass
class ShutdownTimer:
    outlet_id: str
    deadline: datetime
    source: TimerSource = TimerSource.GEOFENCE
    duration_s: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class NotificationEvent:
    category: NotificationCategory
    identifier: str
    title: str
    message: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TickResult:
    status: TickStatus
    ts_utc: datetime
    membership: ZoneMembership
    commands_issued: int = 0
    notifications_shown: int = 0
    errors: tuple[str, ...] = ()
