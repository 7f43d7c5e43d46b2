from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Dict, Optional


class LocationReport(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    ts_utc: Optional[datetime] = None


class ToggleRequest(BaseModel):
    state: bool


class ManualTimerRequest(BaseModel):
    duration_s: Optional[int] = Field(default=None, ge=10, le=24 * 3600)


class RegionRequest(BaseModel):
    center_lat: float = Field(ge=-90, le=90)
    center_lng: float = Field(ge=-180, le=180)
    radius_m: float = Field(gt=0, le=100_000)
    enabled: bool = True


class EnabledRequest(BaseModel):
    enabled: bool


class GracePeriodRequest(BaseModel):
    seconds: int = Field(ge=10, le=24 * 3600)


class PreferencesRequest(BaseModel):
    updates: Dict[str, bool]


class TickRequest(BaseModel):
    budget_s: Optional[float] = Field(default=None, gt=0, le=300)
