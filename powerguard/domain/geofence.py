from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .models import GeofenceRegion, LocationSample, ZoneEvent, ZoneMembership, ZoneTransition
from ..core.config import settings
from ..core.timeutil import from_iso, to_iso

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class LocationMonitor:
    """Filters incoming samples and measures them against the region."""

    def __init__(
        self,
        max_accuracy_m: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
    ) -> None:
        self.max_accuracy_m = settings.max_location_accuracy_m if max_accuracy_m is None else max_accuracy_m
        self.max_age_seconds = settings.max_location_age_seconds if max_age_seconds is None else max_age_seconds
        self.last_sample: Optional[LocationSample] = None
        self.last_distance_m: Optional[float] = None

    def problem(self, sample: Optional[LocationSample], now_utc: datetime) -> Optional[str]:
        """Why `sample` cannot be used ("missing", "inaccurate", "stale"), or None."""
        if sample is None:
            return "missing"
        if sample.accuracy is not None and sample.accuracy > self.max_accuracy_m:
            return "inaccurate"
        if now_utc - sample.ts_utc > timedelta(seconds=self.max_age_seconds):
            return "stale"
        return None

    def usable(self, sample: Optional[LocationSample], now_utc: datetime) -> bool:
        return self.problem(sample, now_utc) is None

    def measure(self, region: GeofenceRegion, sample: LocationSample) -> float:
        d = haversine_m(sample.lat, sample.lng, region.center_lat, region.center_lng)
        self.last_sample = sample
        self.last_distance_m = d
        return d


@dataclass
class GeofenceState:
    membership: ZoneMembership = ZoneMembership.UNKNOWN
    outside_count: int = 0
    outside_since: Optional[datetime] = None
    last_sample_ts: Optional[datetime] = None
    cycle: int = 0
    changed_at: Optional[datetime] = None


class GeofenceStateMachine:
    """
    Debounced zone membership.

    Exit needs `debounce_samples` consecutive outside fixes, or two or more
    outside fixes spanning `debounce_seconds`. Enter is immediate.

    Missing or unusable fixes hold the last confirmed membership. UNKNOWN
    means nothing was confirmed yet, or the region was disabled or redefined.
    """

    def __init__(
        self,
        monitor: LocationMonitor,
        debounce_samples: Optional[int] = None,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        self.monitor = monitor
        self.debounce_samples = max(2, debounce_samples or settings.exit_debounce_samples)
        self.debounce_seconds = settings.exit_debounce_seconds if debounce_seconds is None else debounce_seconds
        self.state = GeofenceState()

    @property
    def membership(self) -> ZoneMembership:
        return self.state.membership

    def _reset_debounce(self) -> None:
        self.state.outside_count = 0
        self.state.outside_since = None

    def _transition(self, event: ZoneEvent, membership: ZoneMembership, ts: datetime) -> ZoneTransition:
        prev = self.state.membership
        self.state.membership = membership
        self.state.changed_at = ts
        if membership is ZoneMembership.INSIDE:
            self.state.cycle += 1
        logger.info(
            "zone: %s -> %s (%s, distance=%s, cycle=%d)",
            prev.value, membership.value, event.value,
            f"{self.monitor.last_distance_m:.0f}m" if self.monitor.last_distance_m is not None else "n/a",
            self.state.cycle,
        )
        return ZoneTransition(event, membership, ts, self.monitor.last_distance_m, self.state.cycle)

    def force_unknown(self, now_utc: datetime) -> Optional[ZoneTransition]:
        self._reset_debounce()
        if self.state.membership is ZoneMembership.UNKNOWN:
            return None
        return self._transition(ZoneEvent.UNKNOWN, ZoneMembership.UNKNOWN, now_utc)

    def feed(
        self,
        region: Optional[GeofenceRegion],
        sample: Optional[LocationSample],
        now_utc: datetime,
    ) -> Optional[ZoneTransition]:
        if region is None or not region.enabled:
            return self.force_unknown(now_utc)

        last_ts = self.state.last_sample_ts
        if sample is not None and last_ts is not None and sample.ts_utc <= last_ts:
            # Same cached fix handed out again; must not count twice
            logger.debug("Ignoring already-seen fix from %s", sample.ts_utc.isoformat())
            return None

        problem = self.monitor.problem(sample, now_utc)
        if sample is None or problem is not None:
            # Degraded data neither confirms nor revokes a membership
            logger.info("No usable fix (%s); holding %s", problem, self.state.membership.value)
            self._reset_debounce()
            return None
        self.state.last_sample_ts = sample.ts_utc

        distance = self.monitor.measure(region, sample)

        if distance <= region.radius_m:
            self._reset_debounce()
            if self.state.membership is not ZoneMembership.INSIDE:
                return self._transition(ZoneEvent.ENTER, ZoneMembership.INSIDE, sample.ts_utc)
            return None

        if self.state.membership is ZoneMembership.OUTSIDE:
            return None

        self.state.outside_count += 1
        if self.state.outside_since is None:
            self.state.outside_since = sample.ts_utc
        elapsed = (sample.ts_utc - self.state.outside_since).total_seconds()

        logger.debug(
            "outside fix %d/%d (distance=%.0fm radius=%.0fm elapsed=%.0fs)",
            self.state.outside_count, self.debounce_samples, distance, region.radius_m, elapsed,
        )

        if self.state.outside_count >= self.debounce_samples or (
            self.state.outside_count >= 2 and elapsed >= self.debounce_seconds
        ):
            self._reset_debounce()
            return self._transition(ZoneEvent.EXIT, ZoneMembership.OUTSIDE, sample.ts_utc)
        return None

    def snapshot(self) -> dict[str, Any]:
        s = self.state
        return {
            "membership": s.membership.value,
            "outside_count": s.outside_count,
            "outside_since": to_iso(s.outside_since),
            "last_sample_ts": to_iso(s.last_sample_ts),
            "cycle": s.cycle,
            "changed_at": to_iso(s.changed_at),
        }

    def restore(self, data: dict[str, Any]) -> None:
        self.state = GeofenceState(
            membership=ZoneMembership(data.get("membership", ZoneMembership.UNKNOWN.value)),
            outside_count=int(data.get("outside_count", 0)),
            outside_since=from_iso(data.get("outside_since")),
            last_sample_ts=from_iso(data.get("last_sample_ts")),
            cycle=int(data.get("cycle", 0)),
            changed_at=from_iso(data.get("changed_at")),
        )
