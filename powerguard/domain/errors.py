"""
PowerGuard exceptions.

Small hierarchy; callers catch PowerGuardError at the outer surfaces.
"""

from __future__ import annotations

from typing import Optional


class PowerGuardError(Exception):
    """Base exception for PowerGuard."""

    pass


class ConfigurationError(PowerGuardError):
    """A setting or user-supplied value is invalid."""

    pass


class TransportError(PowerGuardError):
    """The outlet hardware explicitly rejected or failed a command."""

    pass


class StoreError(PowerGuardError):
    """The durable key-value store could not be read or written."""

    pass


class OutletNotFoundError(PowerGuardError):
    """No outlet with the given id is known."""

    pass


class CommandFailedError(PowerGuardError):
    """A command exhausted its retries. The outlet is marked errored."""

    def __init__(self, outlet_id: str, command_id: str, status: str, detail: Optional[str] = None) -> None:
        self.outlet_id = outlet_id
        self.command_id = command_id
        self.status = status
        self.detail = detail
        msg = f"Command {command_id} for outlet {outlet_id} {status.lower()}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
