from __future__ import annotations
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from .errors import OutletNotFoundError
from .models import Command, CommandAck, CommandStatus, Outlet
from ..core.timeutil import from_iso, to_iso

logger = logging.getLogger(__name__)


class OutletStateStore:
    """
    Canonical and optimistic power state per outlet.

    `displayed_state` is what the UI shows, `canonical_state` is the last
    hardware-acknowledged state. They differ only while a command is pending.
    """

    def __init__(self) -> None:
        self._outlets: dict[str, Outlet] = {}
        self._commands: dict[str, Command] = {}  # pending, keyed by outlet id

    def upsert(self, outlet_id: str, name: Optional[str] = None, canonical_state: Optional[bool] = None) -> Outlet:
        outlet = self._outlets.get(outlet_id)
        if outlet is None:
            outlet = Outlet(id=outlet_id, name=name or outlet_id)
            self._outlets[outlet_id] = outlet
        elif name:
            outlet.name = name
        if canonical_state is not None and outlet.pending_command_id is None:
            outlet.canonical_state = canonical_state
            outlet.displayed_state = canonical_state
        return outlet

    def get(self, outlet_id: str) -> Outlet:
        try:
            return self._outlets[outlet_id]
        except KeyError:
            raise OutletNotFoundError(f"Unknown outlet: {outlet_id}") from None

    def all(self) -> list[Outlet]:
        return list(self._outlets.values())

    def displayed(self, outlet_id: str) -> bool:
        return self.get(outlet_id).displayed_state

    def canonical(self, outlet_id: str) -> bool:
        return self.get(outlet_id).canonical_state

    def outlets_on(self) -> list[Outlet]:
        return [o for o in self._outlets.values() if o.canonical_state]

    def pending(self, outlet_id: str) -> Optional[Command]:
        return self._commands.get(outlet_id)

    def is_current(self, command: Command) -> bool:
        outlet = self._outlets.get(command.outlet_id)
        return (
            outlet is not None
            and outlet.pending_command_id == command.id
            and command.status is CommandStatus.PENDING
        )

    def begin_command(self, outlet_id: str, desired_state: bool, now_utc: datetime) -> Command:
        """Optimistically apply a toggle. Any earlier pending command is abandoned."""
        outlet = self.get(outlet_id)
        prev = self._commands.pop(outlet_id, None)
        if prev is not None:
            prev.status = CommandStatus.ABANDONED
            logger.info("outlet %s: command %s superseded", outlet_id, prev.id)

        command = Command(
            id=uuid.uuid4().hex,
            outlet_id=outlet_id,
            desired_state=desired_state,
            issued_at=now_utc,
        )
        self._commands[outlet_id] = command
        outlet.pending_command_id = command.id
        outlet.displayed_state = desired_state
        outlet.error = None
        return command

    def apply_ack(self, command: Command, ack: CommandAck) -> bool:
        if not self.is_current(command):
            logger.info("outlet %s: ignoring ack for stale command %s", command.outlet_id, command.id)
            return False
        outlet = self._outlets[command.outlet_id]
        outlet.canonical_state = ack.achieved_state
        outlet.displayed_state = ack.achieved_state
        outlet.pending_command_id = None
        outlet.last_ack_at = ack.ts_utc
        outlet.error = None
        command.status = CommandStatus.ACKED
        self._commands.pop(command.outlet_id, None)
        return True

    def rollback(self, command: Command) -> None:
        """Show canonical state again while the command waits for a retry."""
        if self.is_current(command):
            outlet = self._outlets[command.outlet_id]
            outlet.displayed_state = outlet.canonical_state

    def retry_displayed(self, command: Command) -> None:
        if self.is_current(command):
            self._outlets[command.outlet_id].displayed_state = command.desired_state

    def resolve_failed(self, command: Command, status: CommandStatus, error: Optional[str]) -> bool:
        """Terminal failure: reconverge displayed to canonical, mark outlet errored."""
        command.error = error
        if not self.is_current(command):
            if command.status is CommandStatus.PENDING:
                command.status = status
            return False
        outlet = self._outlets[command.outlet_id]
        outlet.displayed_state = outlet.canonical_state
        outlet.pending_command_id = None
        if status is not CommandStatus.ABANDONED:
            outlet.error = error or status.value
        command.status = status
        self._commands.pop(command.outlet_id, None)
        return True

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "id": o.id,
                "name": o.name,
                "canonical_state": o.canonical_state,
                "last_ack_at": to_iso(o.last_ack_at),
            }
            for o in self._outlets.values()
        ]

    def restore(self, rows: list[dict[str, Any]]) -> None:
        for row in rows:
            outlet = self.upsert(str(row["id"]), name=row.get("name"), canonical_state=bool(row.get("canonical_state")))
            outlet.last_ack_at = from_iso(row.get("last_ack_at"))
