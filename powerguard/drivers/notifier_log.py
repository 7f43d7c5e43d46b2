from __future__ import annotations
import logging
from collections import deque
from typing import Optional

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.models import NotificationEvent

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notification sink: logs and keeps the most recent ones for the API."""

    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.recent: deque[tuple[str, NotificationEvent]] = deque(
            maxlen=maxlen or settings.recent_notifications_size
        )

    async def emit(self, event: NotificationEvent) -> None:
        self.recent.append((now_utc().isoformat(), event))
        logger.info("NOTIFY [%s] %s: %s", event.category.value, event.title, event.message)
