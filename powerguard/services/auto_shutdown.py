from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from ..core.config import settings
from ..core.timeutil import from_iso, to_iso
from ..domain.errors import CommandFailedError, ConfigurationError, OutletNotFoundError
from ..domain.models import (
    CommandStatus,
    NotificationCategory,
    NotificationEvent,
    ShutdownTimer,
    TimerSource,
    ZoneMembership,
    ZoneTransition,
)
from ..domain.outlets import OutletStateStore
from .dispatcher import CommandDispatcher
from .notifications import NotificationDeduplicator

logger = logging.getLogger(__name__)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s" if minutes > 0 else f"{secs}s"


def clamp_grace_period(seconds: Any) -> int:
    """Persisted grace period, or the default when missing or below the floor."""
    try:
        value = int(seconds)
    except (TypeError, ValueError):
        return settings.default_grace_period_seconds
    if value < settings.min_grace_period_seconds:
        return settings.default_grace_period_seconds
    return value


@dataclass
class ResolveResult:
    commands_issued: int = 0
    resolved: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class AutoShutdownScheduler:
    def __init__(
        self,
        store: OutletStateStore,
        dispatcher: CommandDispatcher,
        notifications: NotificationDeduplicator,
        grace_period_s: Optional[int] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._notifications = notifications
        self.grace_period_s = grace_period_s or settings.default_grace_period_seconds
        self._timers: dict[str, ShutdownTimer] = {}

    def armed(self) -> list[ShutdownTimer]:
        return sorted(self._timers.values(), key=lambda t: t.deadline)

    def timer_for(self, outlet_id: str) -> Optional[ShutdownTimer]:
        return self._timers.get(outlet_id)

    def set_grace_period(self, seconds: int) -> None:
        if seconds < settings.min_grace_period_seconds:
            raise ConfigurationError(
                f"Grace period must be at least {settings.min_grace_period_seconds}s, got {seconds}s"
            )
        self.grace_period_s = int(seconds)

    def _arm(self, outlet_id: str, now_utc: datetime) -> Optional[ShutdownTimer]:
        if outlet_id in self._timers:
            return None
        timer = ShutdownTimer(
            outlet_id=outlet_id,
            deadline=now_utc + timedelta(seconds=self.grace_period_s),
            source=TimerSource.GEOFENCE,
            duration_s=self.grace_period_s,
        )
        self._timers[outlet_id] = timer
        logger.info("timer armed: outlet %s deadline %s", outlet_id, timer.deadline.isoformat())
        return timer

    def _cancel(self, timer: ShutdownTimer, why: str) -> None:
        timer.cancelled = True
        self._timers.pop(timer.outlet_id, None)
        logger.info("timer cancelled: outlet %s (%s)", timer.outlet_id, why)

    def on_exit(self, transition: ZoneTransition, now_utc: datetime) -> list[str]:
        armed = [o.id for o in self._store.outlets_on() if self._arm(o.id, now_utc)]
        if armed:
            count = len(armed)
            self._notifications.enqueue(NotificationEvent(
                category=NotificationCategory.LEFT_ZONE_WITH_OUTLETS_ON,
                identifier=f"left-zone:{transition.cycle}",
                title="PowerGuard CRITICAL ALERT",
                message=(
                    f"You left home with {count} outlet{'s' if count > 1 else ''} still ON! "
                    f"Auto-shutdown in {format_duration(self.grace_period_s)}."
                ),
                data={"outlets": armed},
            ))
        return armed

    def on_enter(self) -> int:
        geofence = [t for t in self._timers.values() if t.source is TimerSource.GEOFENCE]
        for t in geofence:
            self._cancel(t, "returned to zone")
        return len(geofence)

    def on_disabled(self) -> int:
        geofence = [t for t in self._timers.values() if t.source is TimerSource.GEOFENCE]
        for t in geofence:
            self._cancel(t, "geofence disabled")
        return len(geofence)

    def on_manual_off(self, outlet_id: str) -> bool:
        timer = self._timers.get(outlet_id)
        if timer is None:
            return False
        self._cancel(timer, "turned off by user")
        return True

    def on_turned_on_outside(self, outlet_id: str, command_id: str, now_utc: datetime) -> bool:
        timer = self._arm(outlet_id, now_utc)
        if timer is None:
            return False
        name = self._store.get(outlet_id).name
        self._notifications.enqueue(NotificationEvent(
            category=NotificationCategory.TURNED_ON_OUTLET_OUTSIDE_ZONE,
            identifier=f"turned-on-outside:{outlet_id}:{command_id}",
            title="PowerGuard Alert",
            message=(
                f"You turned on {name} while away from home. "
                f"Auto-shutdown in {format_duration(self.grace_period_s)}."
            ),
            data={"outlets": [outlet_id]},
        ))
        return True

    def start_manual(self, outlet_id: str, seconds: int, now_utc: datetime) -> ShutdownTimer:
        if seconds < settings.min_grace_period_seconds:
            raise ConfigurationError(
                f"Timer must be at least {settings.min_grace_period_seconds}s, got {seconds}s"
            )
        if not self._store.canonical(outlet_id):
            raise ConfigurationError("Timer can only be activated when outlet is ON")
        existing = self._timers.get(outlet_id)
        if existing is not None:
            self._cancel(existing, "replaced by manual timer")
        timer = ShutdownTimer(
            outlet_id=outlet_id,
            deadline=now_utc + timedelta(seconds=seconds),
            source=TimerSource.MANUAL,
            duration_s=int(seconds),
        )
        self._timers[outlet_id] = timer
        logger.info("manual timer: outlet %s %ss", outlet_id, seconds)
        return timer

    def due(self, now_utc: datetime) -> list[ShutdownTimer]:
        return [t for t in self.armed() if t.deadline <= now_utc and not t.cancelled]

    async def resolve_due(self, now_utc: datetime, membership: ZoneMembership) -> ResolveResult:
        """Resolve every timer whose deadline has passed, however late this runs.

        Shutdowns for different outlets are in flight together.
        """
        result = ResolveResult()
        firing: list[ShutdownTimer] = []
        for timer in self.due(now_utc):
            if self._timers.get(timer.outlet_id) is not timer:
                continue

            if timer.source is TimerSource.GEOFENCE:
                if membership is ZoneMembership.INSIDE:
                    self._cancel(timer, "back inside at deadline")
                    continue
                if membership is ZoneMembership.UNKNOWN:
                    logger.info("timer due for outlet %s but zone unknown; holding", timer.outlet_id)
                    continue

            try:
                is_on = self._store.canonical(timer.outlet_id)
            except OutletNotFoundError:
                logger.warning("Dropping timer for unknown outlet %s", timer.outlet_id)
                self._cancel(timer, "unknown outlet")
                continue
            if not is_on:
                self._cancel(timer, "outlet already off")
                continue

            if self._store.pending(timer.outlet_id) is not None:
                logger.info("timer due for outlet %s but a command is pending; next pass", timer.outlet_id)
                continue
            firing.append(timer)

        result.commands_issued = len(firing)
        outcomes = await asyncio.gather(
            *(self._dispatcher.submit(t.outlet_id, False) for t in firing),
            return_exceptions=True,
        )
        unexpected: Optional[BaseException] = None
        for timer, outcome in zip(firing, outcomes):
            if isinstance(outcome, CommandFailedError):
                self._cancel(timer, "shutdown failed")
                result.errors.append(str(outcome))
                continue
            if isinstance(outcome, BaseException):
                unexpected = unexpected or outcome
                continue

            if outcome.status is not CommandStatus.ACKED:
                continue

            if self._timers.get(timer.outlet_id) is timer:
                del self._timers[timer.outlet_id]
            result.resolved.append(timer.outlet_id)
            self._enqueue_completed(timer)
        if unexpected is not None:
            raise unexpected
        return result

    def _enqueue_completed(self, timer: ShutdownTimer) -> None:
        name = self._store.get(timer.outlet_id).name
        if timer.source is TimerSource.MANUAL:
            category = NotificationCategory.MANUAL_TIMER_COMPLETED
            message = f"{name} timer has completed and outlet has been turned off."
        else:
            category = NotificationCategory.GEOFENCE_TIMER_COMPLETED
            message = f"Auto-shutdown: {name} was turned off because you are away from home."
        self._notifications.enqueue(NotificationEvent(
            category=category,
            identifier=f"{timer.source.value.lower()}-timer:{timer.outlet_id}:{timer.deadline.isoformat()}",
            title="Timer Completed",
            message=message,
            data={"outlets": [timer.outlet_id]},
        ))

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "outlet_id": t.outlet_id,
                "deadline": to_iso(t.deadline),
                "source": t.source.value,
                "duration_s": t.duration_s,
            }
            for t in self.armed()
        ]

    def restore(self, rows: list[dict[str, Any]]) -> None:
        self._timers = {}
        for row in rows:
            deadline = from_iso(row.get("deadline"))
            if deadline is None:
                continue
            timer = ShutdownTimer(
                outlet_id=str(row["outlet_id"]),
                deadline=deadline,
                source=TimerSource(row.get("source", TimerSource.GEOFENCE.value)),
                duration_s=int(row.get("duration_s", 0)),
            )
            self._timers[timer.outlet_id] = timer
