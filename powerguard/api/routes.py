from __future__ import annotations

import logging
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import settings
from ..core.timeutil import now_utc, to_iso
from ..domain.errors import CommandFailedError, ConfigurationError, OutletNotFoundError
from ..domain.models import GeofenceRegion, LocationSample, TickResult
from ..drivers.location_reported import ReportedLocationProvider
from ..drivers.notifier_log import LoggingNotifier
from ..services.runner import BackgroundTaskRunner
from .schemas import (
    EnabledRequest,
    GracePeriodRequest,
    LocationReport,
    ManualTimerRequest,
    PreferencesRequest,
    RegionRequest,
    TickRequest,
    ToggleRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters ---
# main.py points these at the lifespan-built objects via app.dependency_overrides.
def get_runner() -> BackgroundTaskRunner:  # overridden in main
    raise RuntimeError("Runner dependency not configured")

def get_notifier() -> LoggingNotifier:  # overridden in main
    raise RuntimeError("Notifier dependency not configured")

def get_location() -> ReportedLocationProvider:  # overridden in main
    raise RuntimeError("Location dependency not configured")


def _tick_out(t: TickResult) -> dict:
    return {
        "status": t.status.value,
        "ts_utc": to_iso(t.ts_utc),
        "membership": t.membership.value,
        "commands_issued": t.commands_issued,
        "notifications_shown": t.notifications_shown,
        "errors": list(t.errors),
    }


@router.get("/live")
async def get_live(runner: BackgroundTaskRunner = Depends(get_runner)):
    return {"app": settings.app_name, "now_utc": now_utc().isoformat(), **runner.status()}


@router.post("/location")
async def report_location(
    req: LocationReport,
    runner: BackgroundTaskRunner = Depends(get_runner),
    location: ReportedLocationProvider = Depends(get_location),
):
    ts = req.ts_utc or now_utc()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    sample = LocationSample(lat=req.lat, lng=req.lng, accuracy=req.accuracy, ts_utc=ts)
    location.report(sample)
    result = await runner.evaluate(sample)
    return _tick_out(result)


@router.post("/tick")
async def tick(req: TickRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    result = await runner.run_tick(budget_s=req.budget_s)
    return _tick_out(result)


@router.post("/outlets/{outlet_id}/state")
async def toggle_outlet(outlet_id: str, req: ToggleRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    try:
        outlet = await runner.toggle(outlet_id, req.state)
    except OutletNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CommandFailedError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "ok": True,
        "id": outlet.id,
        "is_on": outlet.displayed_state,
        "canonical_state": outlet.canonical_state,
        "pending": outlet.pending_command_id is not None,
    }


@router.post("/outlets/{outlet_id}/timer")
async def start_timer(outlet_id: str, req: ManualTimerRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    try:
        timer = await runner.start_manual_timer(outlet_id, req.duration_s)
    except OutletNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "outlet_id": timer.outlet_id, "deadline": to_iso(timer.deadline), "duration_s": timer.duration_s}


@router.post("/outlets/{outlet_id}/timer/cancel")
async def cancel_timer(outlet_id: str, runner: BackgroundTaskRunner = Depends(get_runner)):
    cancelled = await runner.cancel_timer(outlet_id)
    return {"ok": True, "cancelled": cancelled}


@router.put("/geofence")
async def put_region(req: RegionRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    try:
        await runner.set_region(GeofenceRegion(**req.model_dump()))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, **req.model_dump()}


@router.post("/geofence/enabled")
async def set_geofence_enabled(req: EnabledRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    try:
        await runner.set_enabled(req.enabled)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "enabled": req.enabled}


@router.put("/settings/grace-period")
async def put_grace_period(req: GracePeriodRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    try:
        await runner.set_grace_period(req.seconds)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "grace_period_s": req.seconds}


@router.put("/settings/notifications")
async def put_preferences(req: PreferencesRequest, runner: BackgroundTaskRunner = Depends(get_runner)):
    try:
        prefs = await runner.set_preferences(req.updates)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "preferences": prefs}


@router.get("/notifications")
async def recent_notifications(notifier: LoggingNotifier = Depends(get_notifier)):
    return {
        "rows": [
            {
                "shown_at": shown_at,
                "category": e.category.value,
                "identifier": e.identifier,
                "title": e.title,
                "message": e.message,
            }
            for shown_at, e in reversed(notifier.recent)
        ]
    }
