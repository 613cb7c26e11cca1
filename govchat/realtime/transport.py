"""
Real-time Transport
===================
Thin seam between ConnectionManager and the WebSocket library.

ConnectionManager only sees TransportFactory / TransportChannel, so tests
can substitute an in-memory transport.
"""

from abc import ABC, abstractmethod
from typing import Optional, Union

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from govchat.resilience.errors import MessageValidationError


class TransportClosed(Exception):
    """The channel was closed by either side."""

    def __init__(self, code: int = 1006, reason: str = ""):
        super().__init__(f"transport closed ({code}) {reason}".strip())
        self.code = code
        self.reason = reason


def decode_frame(frame: Union[str, bytes]) -> str:
    """
    Text of one inbound frame. Binary frames must be UTF-8.

    Raises:
        MessageValidationError: Binary frame that is not valid UTF-8
    """
    if isinstance(frame, bytes):
        try:
            return frame.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MessageValidationError(f"binary frame is not valid UTF-8: {e}") from e
    return frame


class TransportChannel(ABC):
    """An open bidirectional text channel."""

    @abstractmethod
    async def send(self, data: str) -> None:
        """Write one text frame."""

    @abstractmethod
    async def recv(self) -> str:
        """
        Read one text frame.

        Raises:
            TransportClosed: When the channel is closed
            MessageValidationError: The frame cannot be read as text; the
                channel stays open
        """

    @abstractmethod
    async def ping(self) -> None:
        """Send a ping and wait for the matching pong."""

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel. Safe to call twice."""


class TransportFactory(ABC):
    """Opens channels to the upstream agent."""

    @abstractmethod
    async def connect(
        self,
        url: str,
        headers: dict[str, str],
        timeout_sec: float,
    ) -> TransportChannel:
        """Open a channel, raising on failure or after timeout_sec."""


class WebsocketsChannel(TransportChannel):
    """TransportChannel over a websockets client connection."""

    def __init__(self, ws: ClientConnection):
        self._ws = ws

    async def send(self, data: str) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e

    async def recv(self) -> str:
        try:
            frame = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e
        return decode_frame(frame)

    async def ping(self) -> None:
        try:
            pong_waiter = await self._ws.ping()
            await pong_waiter
        except ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code=code, reason=reason)


class WebsocketsTransport(TransportFactory):
    """
    Opens WebSocket connections with the websockets asyncio client.

    Library-level keepalive is disabled; ConnectionManager runs its own
    heartbeat so a dead transport is detected on its schedule.
    """

    def __init__(self, max_size: Optional[int] = 2 ** 20):
        self.max_size = max_size

    async def connect(
        self,
        url: str,
        headers: dict[str, str],
        timeout_sec: float,
    ) -> TransportChannel:
        ws = await connect(
            url,
            additional_headers=headers,
            open_timeout=timeout_sec,
            ping_interval=None,
            max_size=self.max_size,
        )
        logger.debug("WebSocket opened: {}", url)
        return WebsocketsChannel(ws)


def _close_details(error: ConnectionClosed) -> tuple[int, str]:
    if error.rcvd is not None:
        return error.rcvd.code, error.rcvd.reason
    return 1006, "connection lost"
