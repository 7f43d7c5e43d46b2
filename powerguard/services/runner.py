from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from ..core.config import settings
from ..core.timeutil import now_utc, to_iso
from ..domain.errors import ConfigurationError
from ..domain.geofence import GeofenceStateMachine, LocationMonitor
from ..domain.interfaces import CommandTransport, KeyValueStore, LocationProvider, Notifier
from ..domain.models import (
    CommandStatus,
    GeofenceRegion,
    LocationSample,
    Outlet,
    ShutdownTimer,
    TickResult,
    TickStatus,
    ZoneEvent,
    ZoneMembership,
)
from ..domain.outlets import OutletStateStore
from ..storage.state import (
    KEY_GEOFENCE_STATE,
    KEY_GRACE_PERIOD,
    KEY_LAST_TIMER,
    KEY_OUTBOX,
    KEY_OUTLETS,
    KEY_PREFERENCES,
    KEY_SHOWN,
    KEY_TIMERS,
    GeofenceRegionStore,
    read_or_default,
)
from .auto_shutdown import AutoShutdownScheduler, clamp_grace_period
from .dispatcher import CommandDispatcher
from .notifications import NotificationDeduplicator, parse_preferences

logger = logging.getLogger(__name__)


@dataclass
class LiveState:
    last_sample: Optional[LocationSample] = None
    last_tick: Optional[TickResult] = None
    last_error: Optional[str] = None
    ticks: int = 0


class BackgroundTaskRunner:
    """
    Evaluation pipeline entry point.

    `run_tick()` is what an external scheduler calls; `evaluate()` is the
    foreground path. Both go through one lock, so passes never overlap, and
    the newest offered location sample is the one a pass consumes.
    """

    def __init__(
        self,
        location: LocationProvider,
        kv: KeyValueStore,
        regions: GeofenceRegionStore,
        geofence: GeofenceStateMachine,
        outlets: OutletStateStore,
        dispatcher: CommandDispatcher,
        scheduler: AutoShutdownScheduler,
        notifications: NotificationDeduplicator,
        clock: Callable[[], datetime] = now_utc,
        budget_s: Optional[float] = None,
        interval_s: Optional[float] = None,
    ) -> None:
        self._location = location
        self._kv = kv
        self.regions = regions
        self.geofence = geofence
        self.outlets = outlets
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.notifications = notifications
        self._clock = clock
        self._budget = settings.tick_budget_seconds if budget_s is None else budget_s
        self._interval = settings.tick_interval_seconds if interval_s is None else interval_s

        self._lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()
        self._latest: Optional[LocationSample] = None
        self._loaded = False
        self.last_timer_s = settings.default_grace_period_seconds

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.live = LiveState()

    # --- lifecycle ---

    async def load(self) -> None:
        """Reload every persisted piece of state. Bad values fall back to defaults."""
        await self.regions.load()

        geo = await read_or_default(self._kv, KEY_GEOFENCE_STATE, {})
        try:
            self.geofence.restore(geo if isinstance(geo, dict) else {})
        except (TypeError, ValueError):
            logger.warning("Corrupt geofence state %r, starting UNKNOWN", geo)
            self.geofence.restore({})

        self.scheduler.grace_period_s = clamp_grace_period(
            await read_or_default(self._kv, KEY_GRACE_PERIOD, settings.default_grace_period_seconds)
        )
        self.last_timer_s = clamp_grace_period(
            await read_or_default(self._kv, KEY_LAST_TIMER, settings.default_grace_period_seconds)
        )
        self.notifications.preferences = parse_preferences(
            await read_or_default(self._kv, KEY_PREFERENCES, {})
        )
        self.notifications.restore_shown(await read_or_default(self._kv, KEY_SHOWN, []))
        self.notifications.restore_outbox(await read_or_default(self._kv, KEY_OUTBOX, []))

        rows = await read_or_default(self._kv, KEY_OUTLETS, [])
        try:
            self.outlets.restore(rows if isinstance(rows, list) else [])
        except (KeyError, TypeError, ValueError):
            logger.warning("Corrupt outlet snapshot, keeping configured outlets")

        timers = await read_or_default(self._kv, KEY_TIMERS, [])
        try:
            self.scheduler.restore(timers if isinstance(timers, list) else [])
        except (KeyError, TypeError, ValueError):
            logger.warning("Corrupt timer snapshot %r, no timers restored", timers)
            self.scheduler.restore([])

        self._loaded = True
        logger.info(
            "State loaded: membership=%s timers=%d outlets=%d grace=%ss",
            self.geofence.membership.value, len(self.scheduler.armed()),
            len(self.outlets.all()), self.scheduler.grace_period_s,
        )

    async def ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if not self._loaded:
                await self.load()

    async def persist(self) -> None:
        updates: dict[str, Any] = {
            KEY_GEOFENCE_STATE: self.geofence.snapshot(),
            KEY_TIMERS: self.scheduler.snapshot(),
            KEY_SHOWN: self.notifications.snapshot_shown(),
            KEY_OUTBOX: self.notifications.snapshot_outbox(),
            KEY_OUTLETS: self.outlets.snapshot(),
        }
        for key, value in updates.items():
            await self._kv.set(key, value)

    async def _persist_safely(self, errors: list[str]) -> None:
        try:
            await self.persist()
        except Exception as e:
            logger.exception("Failed to persist state: %s", e)
            errors.append(f"persist: {e}")

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="tick_loop")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info("Tick loop started (interval=%ss budget=%ss)", self._interval, self._budget)
        while not self._stop.is_set():
            try:
                await self.run_tick()
            except Exception as e:
                logger.exception("Tick loop error: %s", e)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Tick loop stopped")

    # --- evaluation ---

    def offer(self, sample: LocationSample) -> None:
        if self._latest is None or sample.ts_utc >= self._latest.ts_utc:
            self._latest = sample
        self.live.last_sample = self._latest

    async def run_tick(self, budget_s: Optional[float] = None) -> TickResult:
        """Background entry point. Returns before the budget expires."""
        errors: list[str] = []
        location_failed = False
        budget = self._budget_for(budget_s)
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            sample = await asyncio.wait_for(self._location.current(), timeout=budget)
        except asyncio.TimeoutError:
            sample = None
            errors.append("location: timed out")
        except Exception as e:
            logger.warning("Location provider failed: %s", e)
            sample = None
            errors.append(f"location: {e}")
        if sample is None:
            location_failed = True
            if not errors:
                errors.append("location: unavailable")
        else:
            self.offer(sample)
        remaining = max(0.0, budget - (loop.time() - started))
        return await self._evaluate(location_failed, remaining, errors)

    async def evaluate(self, sample: Optional[LocationSample] = None, budget_s: Optional[float] = None) -> TickResult:
        """Foreground entry point (app opened or a location was reported)."""
        if sample is not None:
            self.offer(sample)
        return await self._evaluate(False, budget_s, [])

    def _budget_for(self, budget_s: Optional[float]) -> float:
        return self._budget if budget_s is None else budget_s

    async def _evaluate(self, location_failed: bool, budget_s: Optional[float], errors: list[str]) -> TickResult:
        counts = {"commands": 0, "shown": 0}
        status = TickStatus.SUCCESS
        try:
            await asyncio.wait_for(
                self._locked_pass(location_failed, errors, counts),
                timeout=self._budget_for(budget_s),
            )
        except asyncio.TimeoutError:
            logger.warning("Evaluation exceeded its %.1fs budget; resuming next pass", self._budget_for(budget_s))
            errors.append("budget exceeded")
            status = TickStatus.PARTIAL
        except Exception as e:
            logger.exception("Evaluation failed: %s", e)
            errors.append(str(e))
            status = TickStatus.FAILED

        if status is TickStatus.SUCCESS and errors:
            status = TickStatus.PARTIAL

        result = TickResult(
            status=status,
            ts_utc=self._clock(),
            membership=self.geofence.membership,
            commands_issued=counts["commands"],
            notifications_shown=counts["shown"],
            errors=tuple(errors),
        )
        self.live.last_tick = result
        self.live.ticks += 1
        self.live.last_error = errors[-1] if errors else None
        logger.info(
            "pass: %s membership=%s commands=%d notified=%d",
            status.value, result.membership.value, result.commands_issued, result.notifications_shown,
        )
        return result

    async def _locked_pass(self, location_failed: bool, errors: list[str], counts: dict[str, int]) -> None:
        async with self._lock:
            try:
                await self.ensure_loaded()
                now = self._clock()

                # 1) Zone membership
                sample, self._latest = self._latest, None
                region = self.regions.region
                if sample is not None and region is not None and region.enabled:
                    problem = self.geofence.monitor.problem(sample, now)
                    if problem is not None:
                        errors.append(f"location: {problem}")
                if sample is not None or location_failed or region is None or not region.enabled:
                    transition = self.geofence.feed(region, sample, now)
                    if transition is not None:
                        if transition.event is ZoneEvent.EXIT:
                            self.scheduler.on_exit(transition, now)
                        elif transition.event is ZoneEvent.ENTER:
                            self.scheduler.on_enter()

                # 2) Timers, however late this pass is
                resolved = await self.scheduler.resolve_due(now, self.geofence.membership)
                counts["commands"] += resolved.commands_issued
                errors.extend(resolved.errors)

                # 3) Notifications
                try:
                    counts["shown"] += await self.notifications.drain()
                except Exception as e:
                    logger.exception("Notification delivery failed: %s", e)
                    errors.append(f"notify: {e}")
            finally:
                await self._persist_safely(errors)

    # --- user actions ---

    async def toggle(self, outlet_id: str, on: bool) -> Outlet:
        """User-initiated switch. Raises CommandFailedError when retries run out."""
        await self.ensure_loaded()
        self.outlets.get(outlet_id)
        if not on:
            self.scheduler.on_manual_off(outlet_id)
        errors: list[str] = []
        try:
            command = await self.dispatcher.submit(outlet_id, on)
            if (
                on
                and command.status is CommandStatus.ACKED
                and self.geofence.membership is ZoneMembership.OUTSIDE
                and self.regions.region is not None
                and self.regions.region.enabled
            ):
                self.scheduler.on_turned_on_outside(outlet_id, command.id, self._clock())
                try:
                    await self.notifications.drain()
                except Exception as e:
                    logger.exception("Notification delivery failed: %s", e)
        finally:
            await self._persist_safely(errors)
        return self.outlets.get(outlet_id)

    async def start_manual_timer(self, outlet_id: str, seconds: Optional[int] = None) -> ShutdownTimer:
        await self.ensure_loaded()
        seconds = self.last_timer_s if seconds is None else int(seconds)
        timer = self.scheduler.start_manual(outlet_id, seconds, self._clock())
        self.last_timer_s = seconds
        await self._kv.set(KEY_LAST_TIMER, seconds)
        await self.persist()
        return timer

    async def cancel_timer(self, outlet_id: str) -> bool:
        await self.ensure_loaded()
        cancelled = self.scheduler.on_manual_off(outlet_id)
        await self.persist()
        return cancelled

    async def set_region(self, region: GeofenceRegion) -> None:
        if region.radius_m <= 0:
            raise ConfigurationError(f"Radius must be positive, got {region.radius_m}")
        await self.ensure_loaded()
        async with self._lock:
            await self.regions.save(region)
            self.geofence.force_unknown(self._clock())
            if not region.enabled:
                self.scheduler.on_disabled()
            await self.persist()

    async def set_enabled(self, enabled: bool) -> Optional[GeofenceRegion]:
        await self.ensure_loaded()
        async with self._lock:
            region = await self.regions.set_enabled(enabled)
            if region is None:
                raise ConfigurationError("No geofence region configured")
            if not enabled:
                self.geofence.force_unknown(self._clock())
                self.scheduler.on_disabled()
            await self.persist()
        return region

    async def set_grace_period(self, seconds: int) -> None:
        await self.ensure_loaded()
        self.scheduler.set_grace_period(seconds)
        await self._kv.set(KEY_GRACE_PERIOD, self.scheduler.grace_period_s)

    async def set_preferences(self, updates: dict[str, bool]) -> dict[str, bool]:
        await self.ensure_loaded()
        try:
            prefs = self.notifications.set_preferences(updates)
        except KeyError as e:
            raise ConfigurationError(f"Unknown notification preference: {e.args[0]}") from None
        await self._kv.set(KEY_PREFERENCES, prefs)
        return prefs

    def status(self) -> dict[str, Any]:
        s = self.live.last_sample
        t = self.live.last_tick
        region = self.regions.region
        return {
            "membership": self.geofence.membership.value,
            "distance_m": self.geofence.monitor.last_distance_m,
            "region": None if region is None else {
                "center_lat": region.center_lat,
                "center_lng": region.center_lng,
                "radius_m": region.radius_m,
                "enabled": region.enabled,
            },
            "last_sample": None if s is None else {
                "lat": s.lat, "lng": s.lng, "accuracy": s.accuracy, "ts_utc": to_iso(s.ts_utc),
            },
            "grace_period_s": self.scheduler.grace_period_s,
            "timers": [
                {
                    "outlet_id": tm.outlet_id,
                    "source": tm.source.value,
                    "deadline": to_iso(tm.deadline),
                    "remaining_s": max(0, round((tm.deadline - self._clock()).total_seconds())),
                }
                for tm in self.scheduler.armed()
            ],
            "outlets": [
                {
                    "id": o.id,
                    "name": o.name,
                    "is_on": o.displayed_state,
                    "canonical_state": o.canonical_state,
                    "pending": o.pending_command_id is not None,
                    "last_ack_at": to_iso(o.last_ack_at),
                    "error": o.error,
                }
                for o in self.outlets.all()
            ],
            "preferences": dict(self.notifications.preferences),
            "last_tick": None if t is None else {
                "status": t.status.value,
                "ts_utc": to_iso(t.ts_utc),
                "commands_issued": t.commands_issued,
                "notifications_shown": t.notifications_shown,
                "errors": list(t.errors),
            },
            "ticks": self.live.ticks,
        }


def build_runner(
    location: LocationProvider,
    transport: CommandTransport,
    kv: KeyValueStore,
    notifier: Notifier,
    clock: Callable[[], datetime] = now_utc,
    **overrides: Any,
) -> BackgroundTaskRunner:
    """Wire the full pipeline around the given adapters.

    `overrides` accepts: debounce_samples, debounce_seconds, timeout_s,
    max_retries, backoff_s, budget_s, interval_s.
    """
    outlets = OutletStateStore()
    notifications = NotificationDeduplicator(notifier)
    dispatcher = CommandDispatcher(
        transport,
        outlets,
        timeout_s=overrides.get("timeout_s"),
        max_retries=overrides.get("max_retries"),
        backoff_s=overrides.get("backoff_s"),
    )
    return BackgroundTaskRunner(
        location=location,
        kv=kv,
        regions=GeofenceRegionStore(kv),
        geofence=GeofenceStateMachine(
            LocationMonitor(),
            debounce_samples=overrides.get("debounce_samples"),
            debounce_seconds=overrides.get("debounce_seconds"),
        ),
        outlets=outlets,
        dispatcher=dispatcher,
        scheduler=AutoShutdownScheduler(outlets, dispatcher, notifications),
        notifications=notifications,
        clock=clock,
        budget_s=overrides.get("budget_s"),
        interval_s=overrides.get("interval_s"),
    )
