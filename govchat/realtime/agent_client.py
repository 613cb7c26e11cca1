"""
Agent Client
============
Round trips to the upstream conversational agent through a circuit breaker.

A query is sent over the session's ConnectionManager and the reply is
matched by correlation id. When the breaker is open the caller gets a
canned apology instead of an error.
"""

import asyncio
import time
from typing import Optional

from loguru import logger

from govchat.config import Settings
from govchat.observability.metrics import ChatMetrics
from govchat.realtime.connection import (
    ConnectionEvent,
    ConnectionEventType,
    ConnectionManager,
    validate_content,
)
from govchat.realtime.messages import AgentMessage, MessageType, new_message_id
from govchat.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from govchat.resilience.errors import AgentReplyError, CircuitOpenError, ResilienceError


AGENT_BREAKER_NAME = "upstream-agent"

FALLBACK_RESPONSE = (
    "I apologize, but I'm currently experiencing technical difficulties. "
    "Please try again in a few moments, or contact support if the issue persists."
)


def agent_breaker_config(settings: Settings) -> CircuitBreakerConfig:
    """Breaker configuration for the upstream agent dependency."""
    return CircuitBreakerConfig(
        name=AGENT_BREAKER_NAME,
        timeout_sec=settings.agent_breaker_timeout_sec,
        error_threshold_percent=settings.agent_breaker_error_threshold_percent,
        reset_timeout_sec=settings.agent_breaker_reset_timeout_sec,
        volume_threshold=settings.agent_breaker_volume_threshold,
        rolling_window_sec=settings.agent_breaker_rolling_window_sec,
    )


class AgentClient:
    """
    Sends user queries to the agent and waits for the correlated reply.

    Usage:
        breaker = registry.register(agent_breaker_config(settings))
        client = AgentClient(manager, breaker, reply_timeout_sec=8.0)

        reply = await client.send_message("When is the office open?")
        if reply.metadata.get("fallback"):
            ...
    """

    def __init__(
        self,
        connection: ConnectionManager,
        breaker: CircuitBreaker,
        reply_timeout_sec: float = 8.0,
        metrics: Optional[ChatMetrics] = None,
    ):
        """
        Initialize agent client.

        Args:
            connection: The session's connection manager
            breaker: Shared breaker for the upstream agent
            reply_timeout_sec: How long to wait for the correlated reply
            metrics: Optional metrics sink
        """
        self.connection = connection
        self.breaker = breaker
        self.reply_timeout_sec = reply_timeout_sec
        self.metrics = metrics

        self._pending: dict[str, asyncio.Future] = {}
        connection.add_listener(self._on_connection_event)

    async def send_message(self, content: str, metadata: Optional[dict] = None) -> AgentMessage:
        """
        Send a query and return the agent's reply, or the fallback response.

        Raises:
            MessageValidationError: Invalid content, checked before the breaker
            ResilienceError: Upstream failure while the breaker stays closed
        """
        validate_content(content, self.connection.config.max_message_chars)

        start = time.perf_counter()
        try:
            reply = await self.breaker.call(self._round_trip, content, metadata)

        except CircuitOpenError as e:
            logger.warning("Agent circuit open, using fallback: {}", e)
            return self._fallback(content, start)

        except ResilienceError as e:
            self._record("error", start)
            if self.metrics:
                self.metrics.increment_error_counter(e.code, AGENT_BREAKER_NAME)
            if self.breaker.state == CircuitState.OPEN:
                # This failure tripped the breaker
                logger.warning("Agent circuit opened by failure, using fallback: {}", e)
                return self._fallback(content, start)
            raise

        self._record("success", start)
        return reply

    async def _round_trip(self, content: str, metadata: Optional[dict]) -> AgentMessage:
        correlation_id = new_message_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future

        try:
            await self.connection.send_message(content, metadata, correlation_id=correlation_id)
            return await asyncio.wait_for(future, timeout=self.reply_timeout_sec)
        except asyncio.TimeoutError as e:
            raise AgentReplyError(
                f"Agent did not reply within {self.reply_timeout_sec:.1f}s",
                service=AGENT_BREAKER_NAME,
            ) from e
        finally:
            self._pending.pop(correlation_id, None)

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event.type == ConnectionEventType.MESSAGE and event.message is not None:
            self._resolve(event.message)

        elif event.type == ConnectionEventType.DISCONNECTED:
            # Replies can no longer arrive on this connection
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(AgentReplyError(
                        "Connection closed before the agent replied",
                        service=AGENT_BREAKER_NAME,
                    ))

    def _resolve(self, message: AgentMessage) -> None:
        future = self._pending.get(message.correlation_id)
        if future is None or future.done():
            return

        if message.type == MessageType.ERROR:
            future.set_exception(AgentReplyError(
                message.content or "Agent reported an error",
                service=AGENT_BREAKER_NAME,
            ))
        elif message.type in (MessageType.RESPONSE, MessageType.MESSAGE):
            future.set_result(message)

    def _fallback(self, content: str, start: float) -> AgentMessage:
        self._record("fallback", start)
        return AgentMessage(
            type=MessageType.RESPONSE,
            content=FALLBACK_RESPONSE,
            metadata={
                "fallback": True,
                "reason": "circuit-breaker-open",
                "original_content": content[:100],
            },
        )

    def _record(self, status: str, start: float) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_message_counter("query", status)
        self.metrics.record_message_duration("query", status, time.perf_counter() - start)

    def close(self) -> None:
        """Detach from the connection and cancel waiting round trips."""
        self.connection.remove_listener(self._on_connection_event)
        for future in self._pending.values():
            future.cancel()
        self._pending.clear()
