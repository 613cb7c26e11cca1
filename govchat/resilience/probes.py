"""
Health Probes
=============
Boolean dependency checks registered with the HealthAggregator.

- RedisProbe: persistence store ping
- HttpEndpointProbe: GET on the agent's HTTP health endpoint
- TransportProbe: real-time transport health, fed by connection events and
  recovered by a test dial once the agent accepts connections again
"""

import asyncio
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from loguru import logger

from govchat.realtime.connection import ConnectionEvent, ConnectionEventType
from govchat.realtime.transport import TransportFactory


def derive_health_url(ws_url: str, health_path: str = "/health") -> str:
    """
    Map the agent WebSocket URL to its HTTP health endpoint.

    wss://agent.example/ws/agents -> https://agent.example/health
    """
    parts = urlsplit(ws_url)
    scheme = {"wss": "https", "ws": "http"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, health_path, "", ""))


class RedisProbe:
    """Ping a Redis server. Not configured means unhealthy."""

    def __init__(self, redis_url: Optional[str], timeout_sec: float = 3.0):
        self.redis_url = redis_url
        self.timeout_sec = timeout_sec
        self._client = None

    def _get_client(self):
        if self._client is None and self.redis_url:
            import redis.asyncio as redis
            self._client = redis.from_url(
                self.redis_url,
                socket_connect_timeout=self.timeout_sec,
                socket_timeout=self.timeout_sec,
            )
        return self._client

    async def __call__(self) -> bool:
        client = self._get_client()
        if client is None:
            return False

        try:
            return bool(await client.ping())
        except Exception as e:
            logger.warning("Redis health check failed: {}", e)
            # Drop the client so the next probe reconnects from scratch
            await self.close()
            return False

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


class HttpEndpointProbe:
    """GET a health endpoint; any 2xx is healthy."""

    def __init__(
        self,
        url: str,
        timeout_sec: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout_sec = timeout_sec
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_sec)
        return self._client

    async def __call__(self) -> bool:
        try:
            response = await self._get_client().get(self.url)
        except httpx.HTTPError as e:
            logger.warning("Health endpoint not reachable: {} ({})", self.url, e)
            return False
        return response.is_success

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class TransportProbe:
    """
    Real-time transport health.

    Healthy until a connection gives up reconnecting. While any session has
    given up, each check dials the agent once; a dial that opens clears the
    given-up sessions, which reconnect on their next message.
    """

    def __init__(
        self,
        transport: Optional[TransportFactory] = None,
        url: str = "",
        timeout_sec: float = 3.0,
    ):
        self.transport = transport
        self.url = url
        self.timeout_sec = timeout_sec
        self._gave_up: set[str] = set()

    def on_connection_event(self, event: ConnectionEvent) -> None:
        """ConnectionManager listener."""
        if event.type == ConnectionEventType.MAX_RETRIES_REACHED:
            self._gave_up.add(event.session_id)
        elif event.type == ConnectionEventType.CONNECTED:
            self._gave_up.clear()
        elif event.type == ConnectionEventType.DISCONNECTED and event.intentional:
            self._gave_up.discard(event.session_id)

    @property
    def gave_up(self) -> bool:
        return bool(self._gave_up)

    async def __call__(self) -> bool:
        if not self._gave_up:
            return True
        if self.transport is None or not await self._dial():
            return False

        logger.info(
            "Agent transport reachable again, clearing {} given-up session(s)",
            len(self._gave_up),
        )
        self._gave_up.clear()
        return True

    async def _dial(self) -> bool:
        try:
            channel = await asyncio.wait_for(
                self.transport.connect(self.url, {"X-Health-Check": "1"}, self.timeout_sec),
                timeout=self.timeout_sec,
            )
        except Exception as e:
            logger.warning("Agent transport still unreachable: {}", e)
            return False

        try:
            await channel.close()
        except Exception as e:
            logger.debug("Error while closing health-check channel: {}", e)
        return True
