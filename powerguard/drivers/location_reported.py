from __future__ import annotations

from threading import Lock
from typing import Optional

from ..domain.models import LocationSample


class ReportedLocationProvider:
    """Holds the last fix pushed by the phone; background ticks read it back."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._sample: Optional[LocationSample] = None

    def report(self, sample: LocationSample) -> None:
        with self._lock:
            if self._sample is None or sample.ts_utc >= self._sample.ts_utc:
                self._sample = sample

    def clear(self) -> None:
        with self._lock:
            self._sample = None

    async def current(self) -> Optional[LocationSample]:
        with self._lock:
            return self._sample
