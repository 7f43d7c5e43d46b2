from __future__ import annotations

import json

import httpx
import pytest

from powerguard.domain.errors import TransportError
from powerguard.drivers.transport_sonoff import SonoffStripTransport


@pytest.fixture
def strip(monkeypatch):
    requests: list[tuple[str, dict]] = []
    replies: dict[str, httpx.Response] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.url.path, json.loads(request.content)))
        return replies.get(request.url.path, httpx.Response(200, json={"seq": 7, "error": 0}))

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx, "AsyncClient",
        lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
    )
    transport = SonoffStripTransport(ip="10.0.0.5", port=8081, device_id="abc", channels=2)
    return transport, requests, replies


async def test_switch_posts_channel(strip):
    transport, requests, _ = strip
    ack = await transport.submit("1", True)

    assert ack.achieved_state is True
    assert ack.outlet_id == "1"
    assert requests == [(
        "/zeroconf/switches",
        {"deviceid": "abc", "data": {"switches": [{"switch": "on", "outlet": 1}]}},
    )]


async def test_device_error_code_raises(strip):
    transport, _, replies = strip
    replies["/zeroconf/switches"] = httpx.Response(200, json={"error": 400})
    with pytest.raises(TransportError):
        await transport.submit("0", False)


async def test_http_error_raises(strip):
    transport, _, replies = strip
    replies["/zeroconf/switches"] = httpx.Response(503)
    with pytest.raises(TransportError):
        await transport.submit("0", False)


async def test_unknown_channel(strip):
    transport, requests, _ = strip
    with pytest.raises(TransportError):
        await transport.submit("7", True)
    assert requests == []


async def test_get_states(strip):
    transport, _, replies = strip
    replies["/zeroconf/info"] = httpx.Response(200, json={
        "data": {"switches": [{"switch": "on", "outlet": 0}, {"switch": "off", "outlet": 1}]},
    })
    assert await transport.get_states() == {"0": True, "1": False}
