"""
Connection Manager
==================
Lifecycle of one chat session's real-time link to the upstream agent.

State machine:
    connecting -> connected -> {disconnected, error}
    disconnected/error -> reconnecting -> connecting
    reconnecting -> give up (max_retries_reached) once retry_count >= reconnect_attempts

Two backoffs compose here: RetryEngine retries inside one connection attempt
(exponential, jittered); the manager retries across attempts with a linear
delay of reconnect_delay_sec * retry_count.
"""

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from govchat.config import Settings
from govchat.realtime.messages import AgentMessage, MessageType
from govchat.realtime.transport import (
    TransportChannel,
    TransportClosed,
    TransportFactory,
    WebsocketsTransport,
)
from govchat.resilience.errors import (
    MessageSendError,
    MessageValidationError,
    ResilienceError,
    TransportConnectionError,
    TransportNotConnectedError,
)
from govchat.resilience.recovery import (
    RetryEngine,
    RetryPolicy,
    message_policy,
    transport_policy,
)


class ConnectionState(str, Enum):
    """Real-time connection states."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class Connection(BaseModel):
    """The live connection of one chat session."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    session_id: str
    user_id: str
    state: ConnectionState = ConnectionState.CONNECTING
    last_activity: datetime = Field(default_factory=datetime.now)
    last_heartbeat: Optional[datetime] = None
    retry_count: int = 0


class ConnectionConfig(BaseModel):
    """Transport configuration for one manager."""

    model_config = ConfigDict(frozen=True)

    url: str
    timeout_sec: float = Field(default=5.0, gt=0)
    reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_delay_sec: float = Field(default=1.0, ge=0)
    heartbeat_interval_sec: float = Field(default=30.0, gt=0)
    heartbeat_timeout_sec: float = Field(default=10.0, gt=0)
    max_message_chars: int = Field(default=4000, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionConfig":
        return cls(
            url=settings.agent_ws_url,
            timeout_sec=settings.ws_timeout_sec,
            reconnect_attempts=settings.ws_reconnect_attempts,
            reconnect_delay_sec=settings.ws_reconnect_delay_sec,
            heartbeat_interval_sec=settings.ws_heartbeat_interval_sec,
            heartbeat_timeout_sec=settings.ws_heartbeat_timeout_sec,
            max_message_chars=settings.max_message_chars,
        )


class ConnectionEventType(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    MAX_RETRIES_REACHED = "max_retries_reached"


class ConnectionEvent(BaseModel):
    """A transport event, delivered to listeners."""

    model_config = ConfigDict(frozen=True)

    type: ConnectionEventType
    session_id: str
    state: ConnectionState
    message: Optional[AgentMessage] = None
    error: Optional[str] = None
    code: Optional[int] = None
    reason: Optional[str] = None
    retry_count: int = 0
    delay_sec: Optional[float] = None
    intentional: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


ConnectionListener = Callable[[ConnectionEvent], None]


def validate_content(content: str, max_chars: int) -> str:
    """
    Check a user message before it touches the transport.

    Raises:
        MessageValidationError: Empty or oversized content
    """
    if not isinstance(content, str) or not content.strip():
        raise MessageValidationError("content must not be empty")
    if len(content) > max_chars:
        raise MessageValidationError(f"content exceeds {max_chars} characters")
    return content


class ConnectionManager:
    """
    Owns one session's connection to the upstream agent.

    Usage:
        manager = ConnectionManager(ConnectionConfig(url="wss://agent/ws"))
        manager.add_listener(on_event)

        await manager.connect(session_id, user_id)
        sent = await manager.send_message("How do I renew my licence?")

        await manager.disconnect()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        transport: Optional[TransportFactory] = None,
        retry_engine: Optional[RetryEngine] = None,
        connect_policy: Optional[RetryPolicy] = None,
        send_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize connection manager.

        Args:
            config: Transport configuration
            transport: Channel factory (websockets by default)
            retry_engine: Engine used for connect and send
            connect_policy: Retry policy inside one connection attempt
            send_policy: Fixed-delay retry policy for sends
        """
        self.config = config
        self._transport = transport or WebsocketsTransport()
        self._retry_engine = retry_engine or RetryEngine()
        self._connect_policy = connect_policy or RetryPolicy(
            name="transport", max_attempts=5, base_delay_sec=1.0, max_delay_sec=30.0
        )
        self._send_policy = send_policy or RetryPolicy(
            name="message", max_attempts=3, base_delay_sec=0.5, max_delay_sec=0.5,
            backoff_strategy="constant", jitter_enabled=False,
        )

        self._connection: Optional[Connection] = None
        self._channel: Optional[TransportChannel] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        # Serializes connect() callers and the reconnect loop
        self._connect_lock = asyncio.Lock()
        self._listeners: list[ConnectionListener] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[TransportFactory] = None,
        retry_engine: Optional[RetryEngine] = None,
    ) -> "ConnectionManager":
        return cls(
            ConnectionConfig.from_settings(settings),
            transport=transport,
            retry_engine=retry_engine,
            connect_policy=transport_policy(settings),
            send_policy=message_policy(settings),
        )

    @property
    def state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.DISCONNECTED
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._channel is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._connection.session_id if self._connection else None

    def add_listener(self, listener: ConnectionListener) -> None:
        """Subscribe to transport events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def get_connection_status(self) -> Optional[Connection]:
        """Copy of the current connection, or None when there is none."""
        return self._connection.model_copy() if self._connection else None

    # =========================================================================
    # Connect
    # =========================================================================

    async def connect(self, session_id: str, user_id: str) -> Connection:
        """
        Establish the connection, retrying with the transport policy.

        Args:
            session_id: Chat session identifier
            user_id: User identifier

        Returns:
            Snapshot of the connected Connection

        Raises:
            RetryExhaustedError: Every attempt failed with a transient error
            NonRetryableError: The transport refused in a way retries cannot fix
        """
        async with self._connect_lock:
            # A concurrent caller may have connected while we waited
            if self.is_connected and self.session_id == session_id:
                return self.get_connection_status()

            if self._connection is not None and self.session_id != session_id:
                # One manager serves one session at a time
                await self.disconnect()

            self._closing = False
            self._cancel_task(self._reconnect_task)
            self._reconnect_task = None

            if self._connection is None or self._connection.session_id != session_id:
                self._connection = Connection(session_id=session_id, user_id=user_id)

            await self._connect_with_retry()
            return self.get_connection_status()

    async def _connect_with_retry(self) -> None:
        await self._retry_engine.run_with_retry(self._establish_connection, self._connect_policy)

    async def _establish_connection(self) -> None:
        """One attempt: open the transport and start reader and heartbeat."""
        connection = self._connection
        if self._closing or connection is None:
            raise TransportNotConnectedError("Connection was closed")

        connection.state = ConnectionState.CONNECTING
        headers = {
            "X-Session-ID": connection.session_id,
            "X-User-ID": connection.user_id,
        }

        try:
            channel = await asyncio.wait_for(
                self._transport.connect(self.config.url, headers, self.config.timeout_sec),
                timeout=self.config.timeout_sec,
            )
        except asyncio.TimeoutError as e:
            self._fail_attempt(f"timed out after {self.config.timeout_sec:.1f}s")
            raise TransportConnectionError(
                f"WebSocket connection timed out after {self.config.timeout_sec:.1f}s"
            ) from e
        except Exception as e:
            self._fail_attempt(str(e))
            raise TransportConnectionError(f"WebSocket connection failed: {e}") from e

        if self._closing:
            # disconnect() ran while the transport was opening
            await self._close_channel(channel)
            raise TransportNotConnectedError("Connection was closed while opening")

        self._channel = channel
        connection.state = ConnectionState.CONNECTED
        connection.retry_count = 0
        connection.last_activity = datetime.now()

        self._reader_task = asyncio.create_task(self._read_loop(channel))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(channel))

        logger.info(
            "Connected to agent: session={}, connection={}",
            connection.session_id, connection.id,
        )
        self._emit(ConnectionEventType.CONNECTED)

    def _fail_attempt(self, error: str) -> None:
        self._connection.state = ConnectionState.ERROR
        self._emit(ConnectionEventType.ERROR, error=f"connect failed: {error}")

    # =========================================================================
    # Send / receive
    # =========================================================================

    async def send_message(
        self,
        content: str,
        metadata: Optional[dict] = None,
        correlation_id: Optional[str] = None,
    ) -> AgentMessage:
        """
        Send a user query to the agent.

        Args:
            content: Message text
            metadata: Optional metadata to include
            correlation_id: Id the agent echoes on its reply

        Returns:
            The AgentMessage that was sent

        Raises:
            TransportNotConnectedError: Not connected; check state first
            MessageValidationError: Empty or oversized content
            RetryExhaustedError: Every send attempt failed
        """
        if not self.is_connected:
            raise TransportNotConnectedError()

        validate_content(content, self.config.max_message_chars)
        message = AgentMessage.query(content, metadata, correlation_id)

        await self._retry_engine.run_with_retry(
            lambda: self._perform_send(message),
            self._send_policy,
        )
        return message

    async def _perform_send(self, message: AgentMessage) -> None:
        channel = self._channel
        if channel is None or not self.is_connected:
            raise TransportNotConnectedError()

        try:
            await channel.send(message.to_wire())
        except Exception as e:
            raise MessageSendError(f"Failed to send message: {e}") from e

        self._connection.last_activity = datetime.now()

    async def _read_loop(self, channel: TransportChannel) -> None:
        try:
            while True:
                try:
                    raw = await channel.recv()
                except MessageValidationError as e:
                    self._drop_frame(e)
                    continue
                await self._handle_frame(channel, raw)

        except TransportClosed as e:
            await self._handle_close(channel, e.code, e.reason)

        except Exception as e:
            logger.error("Agent reader failed: {}", e)
            self._emit(ConnectionEventType.ERROR, error=str(e))
            await self._handle_close(channel, 1011, str(e))
            await self._close_channel(channel)

    async def _handle_frame(self, channel: TransportChannel, raw: str) -> None:
        try:
            message = AgentMessage.from_wire(raw)
        except MessageValidationError as e:
            self._drop_frame(e)
            return

        self._connection.last_activity = datetime.now()

        if message.type == MessageType.PING:
            try:
                await channel.send(message.pong().to_wire())
            except Exception as e:
                logger.warning("Failed to answer agent ping: {}", e)
            return

        if message.type == MessageType.PONG:
            self._connection.last_heartbeat = datetime.now()
            return

        self._emit(ConnectionEventType.MESSAGE, message=message)

    def _drop_frame(self, error: MessageValidationError) -> None:
        logger.warning("Dropping unparseable agent frame: {}", error)
        self._emit(ConnectionEventType.ERROR, error=str(error))

    # =========================================================================
    # Heartbeat
    # =========================================================================

    async def _heartbeat_loop(self, channel: TransportChannel) -> None:
        """Ping on a fixed interval; an unanswered ping means the transport is dead."""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_sec)

            if channel is not self._channel:
                return

            try:
                await asyncio.wait_for(channel.ping(), timeout=self.config.heartbeat_timeout_sec)
            except asyncio.TimeoutError:
                await self._abort_channel(channel, "heartbeat timeout")
                return
            except Exception as e:
                await self._abort_channel(channel, f"heartbeat failed: {e}")
                return

            self._connection.last_heartbeat = datetime.now()

    async def _abort_channel(self, channel: TransportChannel, reason: str) -> None:
        logger.warning("Agent transport presumed dead: {}", reason)
        self._emit(ConnectionEventType.ERROR, error=reason)
        await self._handle_close(channel, 1006, reason)
        await self._close_channel(channel)

    # =========================================================================
    # Close / reconnect
    # =========================================================================

    async def _handle_close(self, channel: TransportChannel, code: int, reason: str) -> None:
        if channel is not self._channel:
            return

        self._channel = None
        await self._stop_tasks(self._heartbeat_task, self._reader_task)
        self._heartbeat_task = None
        self._reader_task = None

        if self._closing or self._connection is None:
            return

        self._connection.state = ConnectionState.DISCONNECTED
        logger.warning(
            "Agent connection closed: session={}, code={}, reason={}",
            self._connection.session_id, code, reason or "-",
        )
        self._emit(ConnectionEventType.DISCONNECTED, code=code, reason=reason)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        connection = self._connection
        if connection is None or self._closing:
            return

        if connection.retry_count >= self.config.reconnect_attempts:
            connection.state = ConnectionState.ERROR
            logger.error(
                "Giving up on agent connection after {} reconnect attempts: session={}",
                connection.retry_count, connection.session_id,
            )
            self._emit(ConnectionEventType.MAX_RETRIES_REACHED)
            return

        connection.retry_count += 1
        connection.state = ConnectionState.RECONNECTING
        delay = self.config.reconnect_delay_sec * connection.retry_count

        logger.info(
            "Reconnecting in {:.1f}s (attempt {}/{}): session={}",
            delay, connection.retry_count, self.config.reconnect_attempts,
            connection.session_id,
        )
        self._emit(ConnectionEventType.RECONNECTING, delay_sec=delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)

        try:
            async with self._connect_lock:
                if self._closing or self.is_connected:
                    return
                await self._connect_with_retry()
        except ResilienceError as e:
            if self._closing:
                return
            logger.warning(
                "Reconnect attempt {} failed: {}",
                self._connection.retry_count, e,
            )
            self._schedule_reconnect()

    async def disconnect(self) -> None:
        """
        Tear the connection down on purpose.

        Cancels heartbeat, reader and any pending reconnect so nothing
        resurrects the connection afterwards.
        """
        self._closing = True

        await self._stop_tasks(self._reconnect_task, self._heartbeat_task, self._reader_task)
        self._reconnect_task = None
        self._heartbeat_task = None
        self._reader_task = None

        channel, self._channel = self._channel, None
        if channel is not None:
            await self._close_channel(channel)

        if self._connection is not None:
            self._connection.state = ConnectionState.DISCONNECTED
            self._emit(ConnectionEventType.DISCONNECTED, code=1000, intentional=True)
            logger.info("Disconnected from agent: session={}", self._connection.session_id)
            self._connection = None

    async def _close_channel(self, channel: TransportChannel) -> None:
        try:
            await channel.close()
        except Exception as e:
            logger.debug("Error while closing agent transport: {}", e)

    async def _stop_tasks(self, *tasks: Optional[asyncio.Task]) -> None:
        """Cancel tasks and wait for them, skipping the task we are running in."""
        current = asyncio.current_task()
        pending = [t for t in tasks if t is not None and t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _cancel_task(self, task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _emit(self, event_type: ConnectionEventType, **fields) -> None:
        connection = self._connection
        if connection is None:
            return

        event = ConnectionEvent(
            type=event_type,
            session_id=connection.session_id,
            state=connection.state,
            retry_count=connection.retry_count,
            **fields,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Connection listener failed: {}", e)
