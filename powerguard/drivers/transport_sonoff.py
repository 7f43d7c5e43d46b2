from __future__ import annotations

import logging
import uuid

import httpx

from ..core.timeutil import now_utc
from ..domain.errors import TransportError
from ..domain.models import CommandAck

logger = logging.getLogger(__name__)


class SonoffStripTransport:
    """Command transport for a multi-channel Sonoff strip in eWeLink DIY mode.

    Outlet ids are the channel numbers as strings ("0", "1", ...).
    """

    def __init__(
        self,
        ip: str = "192.168.1.19",
        port: int = 8081,
        device_id: str = "1000b8d61a",
        channels: int = 4,
        timeout: float = 5.0,
    ) -> None:
        self._base_url = f"http://{ip}:{port}"
        self._device_id = device_id
        self._timeout = timeout
        self.outlet_ids = [str(i) for i in range(channels)]

    def _channel(self, outlet_id: str) -> int:
        if outlet_id not in self.outlet_ids:
            raise TransportError(f"No such channel: {outlet_id}")
        return int(outlet_id)

    async def submit(self, outlet_id: str, desired_state: bool) -> CommandAck:
        channel = self._channel(outlet_id)
        switch_val = "on" if desired_state else "off"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/zeroconf/switches",
                    json={
                        "deviceid": self._device_id,
                        "data": {"switches": [{"switch": switch_val, "outlet": channel}]},
                    },
                )
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as e:
            raise TransportError(f"Sonoff switch {outlet_id} -> {switch_val}: {e}") from e

        if body.get("error", 0) != 0:
            raise TransportError(f"Sonoff rejected switch {outlet_id} -> {switch_val}: error={body.get('error')}")

        logger.info("Sonoff outlet %s set_state=%s", outlet_id, switch_val)
        return CommandAck(
            command_id=str(body.get("seq") or uuid.uuid4().hex),
            outlet_id=outlet_id,
            achieved_state=desired_state,
            ts_utc=now_utc(),
        )

    async def get_states(self) -> dict[str, bool]:
        """Current relay states, used to seed canonical state at startup."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/zeroconf/info",
                    json={"deviceid": self._device_id, "data": {}},
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise TransportError(f"Sonoff info: {e}") from e
        out: dict[str, bool] = {}
        for sw in data.get("data", {}).get("switches", []):
            out[str(sw.get("outlet"))] = sw.get("switch") == "on"
        return out
