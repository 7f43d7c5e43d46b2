"""Test doubles and builders shared by the test modules."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from powerguard.domain.geofence import EARTH_RADIUS_M
from powerguard.domain.models import GeofenceRegion, LocationSample
from powerguard.drivers.location_reported import ReportedLocationProvider
from powerguard.drivers.notifier_log import LoggingNotifier
from powerguard.drivers.transport_sim import SimulatedTransport
from powerguard.services.runner import BackgroundTaskRunner, build_runner

CENTER_LAT = -6.2
CENTER_LNG = 106.8
T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


class MemoryStore:
    """Dict-backed KeyValueStore; survives a simulated restart when reused."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    async def init(self) -> None:
        return None

    async def get(self, key: str) -> Any:
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    async def close(self) -> None:
        return None


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def at(self, seconds: float) -> datetime:
        self.now = T0 + timedelta(seconds=seconds)
        return self.now


def sample_at(distance_m: float, ts: datetime, accuracy: Optional[float] = 10.0) -> LocationSample:
    """A fix `distance_m` due north of the zone center."""
    lat = CENTER_LAT + math.degrees(distance_m / EARTH_RADIUS_M)
    return LocationSample(lat=lat, lng=CENTER_LNG, accuracy=accuracy, ts_utc=ts)


def region(radius_m: float = 100.0, enabled: bool = True) -> GeofenceRegion:
    return GeofenceRegion(center_lat=CENTER_LAT, center_lng=CENTER_LNG, radius_m=radius_m, enabled=enabled)


async def make_runner(
    store: MemoryStore,
    clock: FakeClock,
    transport: Optional[SimulatedTransport] = None,
    location: Optional[ReportedLocationProvider] = None,
    notifier: Optional[LoggingNotifier] = None,
    outlets_on: tuple[str, ...] = ("2",),
    load: bool = True,
    **overrides: Any,
) -> BackgroundTaskRunner:
    overrides.setdefault("debounce_samples", 3)
    overrides.setdefault("debounce_seconds", 120.0)
    overrides.setdefault("timeout_s", 0.2)
    overrides.setdefault("backoff_s", 0.0)
    runner = build_runner(
        location or ReportedLocationProvider(),
        transport or SimulatedTransport(["1", "2", "3"]),
        store,
        notifier or LoggingNotifier(),
        clock=clock,
        **overrides,
    )
    if load:
        await runner.load()
        for oid in ("1", "2", "3"):
            if oid not in {o.id for o in runner.outlets.all()}:
                runner.outlets.upsert(oid, name=f"Outlet {oid}", canonical_state=oid in outlets_on)
    return runner
