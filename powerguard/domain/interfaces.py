from __future__ import annotations
from typing import Any, Optional, Protocol, runtime_checkable
from .models import CommandAck, LocationSample, NotificationEvent


@runtime_checkable
class LocationProvider(Protocol):
    async def current(self) -> Optional[LocationSample]:
        """Latest fix, or None when no location is available. May raise."""
        ...


@runtime_checkable
class CommandTransport(Protocol):
    async def submit(self, outlet_id: str, desired_state: bool) -> CommandAck:
        """Send one command. Raise TransportError on explicit failure."""
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    async def init(self) -> None:
        ...

    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class Notifier(Protocol):
    async def emit(self, event: NotificationEvent) -> None:
        ...
