from __future__ import annotations
import logging
from typing import Any, Optional

from ..domain.interfaces import KeyValueStore
from ..domain.models import GeofenceRegion

logger = logging.getLogger(__name__)

KEY_REGION = "geofence.region"
KEY_GEOFENCE_STATE = "geofence.state"
KEY_GRACE_PERIOD = "auto_shutdown.grace_period_s"
KEY_TIMERS = "auto_shutdown.timers"
KEY_LAST_TIMER = "timer.last_seconds"
KEY_PREFERENCES = "notifications.preferences"
KEY_SHOWN = "notifications.shown"
KEY_OUTBOX = "notifications.outbox"
KEY_OUTLETS = "outlets"


async def read_or_default(store: KeyValueStore, key: str, default: Any) -> Any:
    """Read `key`, falling back to `default` on a missing value or a failing store."""
    try:
        value = await store.get(key)
    except Exception as e:
        logger.warning("Failed to read %s, using default: %s", key, e)
        return default
    return default if value is None else value


class GeofenceRegionStore:
    """Persisted zone definition and enablement flag."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self.region: Optional[GeofenceRegion] = None

    async def load(self) -> Optional[GeofenceRegion]:
        raw = await read_or_default(self._store, KEY_REGION, None)
        self.region = None
        if raw is None:
            return None
        try:
            region = GeofenceRegion(
                center_lat=float(raw["center_lat"]),
                center_lng=float(raw["center_lng"]),
                radius_m=float(raw["radius_m"]),
                enabled=bool(raw.get("enabled", True)),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Corrupt geofence region %r, geofencing off", raw)
            return None
        if region.radius_m <= 0:
            logger.warning("Ignoring geofence region with radius %.1f", region.radius_m)
            return None
        self.region = region
        return region

    async def save(self, region: GeofenceRegion) -> None:
        await self._store.set(KEY_REGION, {
            "center_lat": region.center_lat,
            "center_lng": region.center_lng,
            "radius_m": region.radius_m,
            "enabled": region.enabled,
        })
        self.region = region

    async def set_enabled(self, enabled: bool) -> Optional[GeofenceRegion]:
        if self.region is None:
            return None
        region = GeofenceRegion(
            center_lat=self.region.center_lat,
            center_lng=self.region.center_lng,
            radius_m=self.region.radius_m,
            enabled=enabled,
        )
        await self.save(region)
        return region
