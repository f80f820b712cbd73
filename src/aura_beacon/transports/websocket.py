import asyncio
from urllib.parse import urlencode

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidURI, WebSocketException

from aura_beacon.errors import TransportError

logger = structlog.get_logger(__name__)


def beacon_socket_url(base_url: str, beacon_id: str, api_key: str | None = None) -> str:
    """AURA Core beacon socket: ``/ws/beacons/<beacon_id>?token=<api_key>``."""
    if base_url.startswith("https://"):
        base_url = "wss://" + base_url.removeprefix("https://")
    elif base_url.startswith("http://"):
        base_url = "ws://" + base_url.removeprefix("http://")
    url = f"{base_url.rstrip('/')}/ws/beacons/{beacon_id}"
    if api_key:
        url += "?" + urlencode({"token": api_key})
    return url


class WebSocketTransport:
    """Duplex text link over a websockets client connection."""

    def __init__(self, url: str, connect_timeout: float = 10.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self._ws: ClientConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        try:
            self._ws = await asyncio.wait_for(connect(self.url), self.connect_timeout)
        except InvalidURI as e:
            raise TransportError(f"Invalid beacon socket URL: {e}") from e
        except (OSError, TimeoutError, WebSocketException) as e:
            raise TransportError(f"Connect to {self.url} failed: {e}") from e
        logger.info("websocket_connected", url=self.url)

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        try:
            await self._ws.send(text)
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"WebSocket send failed: {e}") from e

    async def recv(self) -> str:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        try:
            frame = await self._ws.recv()
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"WebSocket closed: {e}") from e
        return frame.decode() if isinstance(frame, bytes) else frame

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
