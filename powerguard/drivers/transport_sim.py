from __future__ import annotations
import asyncio
import logging
import uuid
from collections import deque
from typing import Optional

from ..core.timeutil import now_utc
from ..domain.errors import TransportError
from ..domain.models import CommandAck

logger = logging.getLogger(__name__)


class SimulatedTransport:
    """
    In-memory power strip.

    Faults are scripted per call with `fail_next()` and `drop_next()`;
    `delay_s` slows every ack down.
    """

    def __init__(self, outlet_ids: list[str], delay_s: float = 0.0) -> None:
        self.states: dict[str, bool] = {oid: False for oid in outlet_ids}
        self.delay_s = delay_s
        self.calls: list[tuple[str, bool]] = []
        self._faults: deque[str] = deque()

    def fail_next(self, count: int = 1) -> None:
        self._faults.extend(["fail"] * count)

    def drop_next(self, count: int = 1) -> None:
        self._faults.extend(["drop"] * count)

    async def submit(self, outlet_id: str, desired_state: bool) -> CommandAck:
        self.calls.append((outlet_id, desired_state))
        if outlet_id not in self.states:
            raise TransportError(f"No such outlet: {outlet_id}")

        fault: Optional[str] = self._faults.popleft() if self._faults else None
        if fault == "drop":
            # Lost on the wire: never acked
            await asyncio.Event().wait()
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if fault == "fail":
            raise TransportError(f"Relay {outlet_id} did not switch")

        self.states[outlet_id] = bool(desired_state)
        logger.info("OUTLET %s set_state=%s", outlet_id, desired_state)
        return CommandAck(
            command_id=uuid.uuid4().hex,
            outlet_id=outlet_id,
            achieved_state=self.states[outlet_id],
            ts_utc=now_utc(),
        )
