import json

import httpx
import pytest

from aura_beacon.config import CoreSettings
from aura_beacon.errors import RegistrationError, TransportError
from aura_beacon.registration import CoreClient

CORE_URL = "http://core.test"


def core_client(handler) -> CoreClient:
    settings = CoreSettings(url=CORE_URL, external_id="store-1", name="Test Store")
    client = httpx.AsyncClient(base_url=CORE_URL, transport=httpx.MockTransport(handler))
    return CoreClient(settings, client=client)


@pytest.mark.asyncio
async def test_register_follows_discovered_link():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/v1":
            return httpx.Response(
                200,
                json={"_links": {"beacons": {"href": f"{CORE_URL}/v2/beacons", "method": "POST"}}},
            )
        return httpx.Response(
            201,
            json={
                "beacon_id": "bcn_123",
                "api_key": "secret",
                "status": "active",
                "_links": {"self": {"href": f"{CORE_URL}/v2/beacons/bcn_123"}},
            },
        )

    core = core_client(handler)
    registration = await core.register()

    assert registration.beacon_id == "bcn_123"
    assert registration.api_key == "secret"
    assert "self" in registration.links
    assert [r.url.path for r in requests] == ["/v1", "/v2/beacons"]
    body = json.loads(requests[1].content)
    assert body["external_id"] == "store-1"
    assert body["agent_name"] == "Test Store Beacon"
    assert requests[1].headers["X-Beacon-SDK"].startswith("aura-beacon/")

    assert await core.register() is registration
    assert len(requests) == 2
    assert core.headers["X-Beacon-ID"] == "bcn_123"
    await core.aclose()


@pytest.mark.asyncio
async def test_register_falls_back_to_default_path():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/v1":
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(201, json={"beacon_id": "bcn_1"})

    core = core_client(handler)
    registration = await core.register()

    assert registration.beacon_id == "bcn_1"
    assert paths == ["/v1", "/v1/beacons"]
    await core.aclose()


@pytest.mark.asyncio
async def test_register_error_carries_server_message():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1":
            return httpx.Response(200, json={"_links": {}})
        return httpx.Response(409, json={"message": "external_id already registered"})

    core = core_client(handler)
    with pytest.raises(RegistrationError, match="external_id already registered"):
        await core.register()
    await core.aclose()


@pytest.mark.asyncio
async def test_register_without_beacon_id_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    core = core_client(handler)
    with pytest.raises(RegistrationError):
        await core.register()
    await core.aclose()


@pytest.mark.asyncio
async def test_unreachable_core_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    core = core_client(handler)
    with pytest.raises(TransportError):
        await core.discover()
    await core.aclose()


@pytest.mark.asyncio
async def test_socket_url_requires_registration():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1":
            return httpx.Response(200, json={"_links": {}})
        return httpx.Response(201, json={"beacon_id": "bcn_9", "api_key": "k"})

    core = core_client(handler)
    with pytest.raises(RegistrationError):
        core.socket_url()

    await core.register()
    assert core.socket_url() == "ws://core.test/ws/beacons/bcn_9?token=k"
    assert core.socket_url("wss://edge.test/") == "wss://edge.test/ws/beacons/bcn_9?token=k"
    await core.aclose()
