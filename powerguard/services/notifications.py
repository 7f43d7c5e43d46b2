from __future__ import annotations
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Optional

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.interfaces import Notifier
from ..domain.models import NotificationCategory, NotificationEvent

logger = logging.getLogger(__name__)

DEFAULT_PREFERENCES: dict[str, bool] = {c.value: True for c in NotificationCategory}


def parse_preferences(raw: Any) -> dict[str, bool]:
    """Merge stored preferences over the defaults; unknown keys are dropped."""
    prefs = dict(DEFAULT_PREFERENCES)
    if isinstance(raw, dict):
        for key, value in raw.items():
            if key in prefs and isinstance(value, bool):
                prefs[key] = value
    return prefs


class NotificationDeduplicator:
    """
    Shows each notification identifier at most once.

    Events are queued in an outbox during a pass and drained at the end of
    it. The shown set is bounded and evicts the oldest identifier first.
    """

    def __init__(self, notifier: Notifier, capacity: Optional[int] = None) -> None:
        self._notifier = notifier
        self.capacity = capacity or settings.notification_history_size
        self.preferences: dict[str, bool] = dict(DEFAULT_PREFERENCES)
        self._shown: OrderedDict[str, str] = OrderedDict()
        self._outbox: list[NotificationEvent] = []
        self._drain_lock = asyncio.Lock()

    @property
    def outbox(self) -> list[NotificationEvent]:
        return list(self._outbox)

    def has_shown(self, identifier: str) -> bool:
        return identifier in self._shown

    def shown_ids(self) -> list[str]:
        return list(self._shown)

    def set_preferences(self, updates: dict[str, bool]) -> dict[str, bool]:
        for key, value in updates.items():
            if key not in self.preferences:
                raise KeyError(key)
            self.preferences[key] = bool(value)
        return dict(self.preferences)

    def enqueue(self, event: NotificationEvent) -> None:
        if any(e.identifier == event.identifier for e in self._outbox):
            return
        self._outbox.append(event)

    def _record(self, identifier: str) -> None:
        self._shown[identifier] = now_utc().isoformat()
        self._shown.move_to_end(identifier)
        while len(self._shown) > self.capacity:
            self._shown.popitem(last=False)

    async def offer(self, event: NotificationEvent) -> bool:
        """Emit `event` unless its category is off or it was shown before."""
        if not self.preferences.get(event.category.value, True):
            logger.debug("notification %s suppressed (%s disabled)", event.identifier, event.category.value)
            return False
        if event.identifier in self._shown:
            logger.debug("notification %s suppressed (already shown)", event.identifier)
            return False
        await self._notifier.emit(event)
        self._record(event.identifier)
        return True

    async def drain(self) -> int:
        shown = 0
        async with self._drain_lock:
            while self._outbox:
                event = self._outbox[0]
                if await self.offer(event):
                    shown += 1
                self._outbox.pop(0)
        return shown

    def snapshot_shown(self) -> list[list[str]]:
        return [[k, v] for k, v in self._shown.items()]

    def restore_shown(self, rows: Any) -> None:
        self._shown = OrderedDict()
        if not isinstance(rows, list):
            return
        for row in rows:
            if isinstance(row, list) and len(row) == 2:
                self._shown[str(row[0])] = str(row[1])
            elif isinstance(row, (str, int)):
                self._shown[str(row)] = ""
        while len(self._shown) > self.capacity:
            self._shown.popitem(last=False)

    def snapshot_outbox(self) -> list[dict[str, Any]]:
        return [
            {
                "category": e.category.value,
                "identifier": e.identifier,
                "title": e.title,
                "message": e.message,
                "data": e.data,
            }
            for e in self._outbox
        ]

    def restore_outbox(self, rows: Any) -> None:
        self._outbox = []
        if not isinstance(rows, list):
            return
        for row in rows:
            try:
                self.enqueue(NotificationEvent(
                    category=NotificationCategory(row["category"]),
                    identifier=str(row["identifier"]),
                    title=str(row.get("title", "")),
                    message=str(row.get("message", "")),
                    data=dict(row.get("data") or {}),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping corrupt outbox entry: %r", row)
