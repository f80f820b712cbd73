from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from aura_beacon import __version__
from aura_beacon.config import CoreSettings
from aura_beacon.errors import RegistrationError, TransportError
from aura_beacon.transports.websocket import beacon_socket_url

logger = structlog.get_logger(__name__)

DEFAULT_BEACONS_PATH = "/v1/beacons"


@dataclass
class Registration:
    beacon_id: str
    api_key: str | None = None
    status: str | None = None
    links: dict[str, Any] = field(default_factory=dict)


class CoreClient:
    """HTTP client for AURA Core discovery and beacon registration."""

    def __init__(self, settings: CoreSettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            base_url=settings.url, timeout=settings.timeout_seconds
        )
        self.links: dict[str, Any] = {}
        self.registration: Registration | None = None

    @property
    def headers(self) -> dict[str, str]:
        headers = {"X-Beacon-SDK": f"aura-beacon/{__version__}"}
        if self.registration:
            headers["X-Beacon-ID"] = self.registration.beacon_id
        return headers

    async def discover(self) -> dict[str, Any]:
        """Fetch the API root and keep its ``_links``."""
        data = await self._request("GET", "/v1")
        self.links = data.get("_links", {})
        logger.info("core_api_discovered", actions=sorted(self.links))
        return self.links

    async def register(self) -> Registration:
        """Register this beacon once; later calls return the cached registration."""
        if self.registration is not None:
            return self.registration

        if "beacons" not in self.links:
            try:
                await self.discover()
            except RegistrationError as e:
                logger.warning("core_discovery_failed_using_default", error=str(e))

        link = self.links.get("beacons", {})
        method = link.get("method", "POST")
        path = urlparse(link["href"]).path if link.get("href") else DEFAULT_BEACONS_PATH

        data = await self._request(method, path, json=self.profile())
        beacon_id = data.get("beacon_id")
        if not beacon_id:
            raise RegistrationError("AURA Core returned no beacon_id")

        self.links = {**self.links, **data.get("_links", {})}
        self.registration = Registration(
            beacon_id=beacon_id,
            api_key=data.get("api_key"),
            status=data.get("status"),
            links=self.links,
        )
        logger.info("beacon_registered", beacon_id=beacon_id, status=self.registration.status)
        return self.registration

    def profile(self) -> dict[str, Any]:
        s = self.settings
        return {
            "external_id": s.external_id,
            "agent_name": f"{s.name} Beacon",
            "agent_version": __version__,
            "merchant_name": s.name,
            "merchant_domain": s.domain,
            "description": s.description,
            "categories": list(s.categories),
            "capabilities": list(s.capabilities),
        }

    def socket_url(self, ws_base_url: str | None = None) -> str:
        if self.registration is None:
            raise RegistrationError("Beacon must be registered before connecting")
        return beacon_socket_url(
            ws_base_url or self.settings.url,
            self.registration.beacon_id,
            self.registration.api_key,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(
                method, path, json=json, headers=self.headers
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.error(
                "core_request_failed",
                method=method,
                path=path,
                status_code=e.response.status_code,
                error=message,
            )
            raise RegistrationError(message) from e
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request timed out after {self.settings.timeout_seconds}s"
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Failed to connect to AURA Core: {e}") from e


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"Request failed with status {response.status_code}"
