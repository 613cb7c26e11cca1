"""
Resilience Service
==================
Composition root wiring the resilience core for the request layer.

Owns, for the lifetime of the process:
- One RetryEngine, one CircuitBreakerRegistry and the upstream-agent breaker
- The conversation store, health aggregator and degradation engine
- One ConnectionManager + AgentClient per active chat session
- Periodic degradation re-assessment and metrics refresh tasks
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

from loguru import logger

from govchat.config import Settings
from govchat.memory.state_manager import ConversationStore, Message
from govchat.observability import ChatMetrics, log_event
from govchat.realtime.agent_client import AgentClient, agent_breaker_config
from govchat.realtime.connection import (
    Connection,
    ConnectionEvent,
    ConnectionEventType,
    ConnectionManager,
    validate_content,
)
from govchat.realtime.transport import TransportFactory, WebsocketsTransport
from govchat.resilience.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitEvent,
    CircuitEventType,
)
from govchat.resilience.degradation import (
    AGENT,
    FEATURE_AGENT,
    GET_MESSAGES,
    PERSISTENCE,
    SEND_MESSAGE,
    TRANSPORT,
    DegradationEngine,
    DegradationLevel,
    FallbackAction,
    FallbackHandlers,
    PendingMessageQueue,
    ServiceLevel,
)
from govchat.resilience.errors import ResilienceError
from govchat.resilience.health_monitor import HealthAggregator, HealthProbe
from govchat.resilience.probes import (
    HttpEndpointProbe,
    RedisProbe,
    TransportProbe,
    derive_health_url,
)
from govchat.resilience.recovery import RetryEngine, api_policy


ANONYMOUS_USER = "anonymous"


@dataclass
class ChatSession:
    """Per-session transport and agent client."""
    session_id: str
    user_id: str
    manager: ConnectionManager
    client: AgentClient


class ResilienceService:
    """
    Front door of the resilience core.

    Usage:
        service = ResilienceService(get_settings())
        await service.start()

        result = await service.send_message(session_id, "How do I renew my passport?")

        await service.stop()
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[TransportFactory] = None,
        store: Optional[ConversationStore] = None,
        metrics: Optional[ChatMetrics] = None,
        agent_probe: Optional[HealthProbe] = None,
        persistence_probe: Optional[HealthProbe] = None,
    ):
        """
        Initialize the service graph from settings.

        Args:
            settings: Process configuration, read once here
            transport: Channel factory for agent connections (websockets by default)
            store: Conversation store (built from redis_url by default)
            metrics: Metrics sink (fresh registry by default)
            agent_probe: Upstream agent health probe (HTTP /health by default)
            persistence_probe: Persistence probe (Redis ping when configured, else store.ping)
        """
        self.settings = settings
        self.metrics = metrics or ChatMetrics()
        self.retry_engine = RetryEngine(service=settings.service_name)

        # Circuit breakers
        self.breakers = CircuitBreakerRegistry()
        self.breakers.add_listener(self._on_circuit_event)
        self.agent_breaker = self.breakers.register(agent_breaker_config(settings))
        self.metrics.set_circuit_breaker_state(self.agent_breaker.name, self.agent_breaker.state)

        # Persistence
        self.store = store or ConversationStore(
            redis_url=settings.redis_url or None,
            max_messages=settings.max_history_messages,
            session_ttl_sec=settings.session_ttl_sec,
            retry_engine=self.retry_engine,
            retry_policy=api_policy(settings),
        )

        # Health
        self._owned_probes: list[Union[HttpEndpointProbe, RedisProbe]] = []
        if persistence_probe is None and settings.redis_url:
            persistence_probe = RedisProbe(settings.redis_url, timeout_sec=settings.health_probe_timeout_sec)
            self._owned_probes.append(persistence_probe)
        if agent_probe is None:
            endpoint = HttpEndpointProbe(
                derive_health_url(settings.agent_ws_url, settings.agent_health_path),
                timeout_sec=settings.health_probe_timeout_sec,
            )
            self._owned_probes.append(endpoint)
            agent_probe = endpoint
        self._transport = transport or WebsocketsTransport()
        self.transport_probe = TransportProbe(
            self._transport,
            url=settings.agent_ws_url,
            timeout_sec=settings.health_probe_timeout_sec,
        )

        self.health = HealthAggregator(probe_timeout_sec=settings.health_probe_timeout_sec)
        self.health.register_check(PERSISTENCE, persistence_probe or self.store.ping)
        self.health.register_check(TRANSPORT, self.transport_probe)
        self.health.register_check(AGENT, agent_probe)

        # Degradation
        self.queue = PendingMessageQueue(max_size=settings.pending_queue_size)
        self.degradation = DegradationEngine(
            self.health,
            FallbackHandlers(self.queue, self.store),
            breaker=self.agent_breaker,
        )
        self.degradation.add_listener(self._on_level_change)

        self._sessions: dict[str, ChatSession] = {}
        self._metrics_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Freeze health checks, take the first assessment and start background tasks."""
        self.health.freeze()
        await self.degradation.assess_system_health()
        self.degradation.start(self.settings.health_check_interval_sec)
        self._metrics_task = asyncio.create_task(
            self._refresh_metrics(self.settings.metrics_refresh_interval_sec)
        )
        logger.info("Resilience service started: level={}", self.get_current_level().level.value)

    async def stop(self) -> None:
        """Stop background tasks, close every session and release clients."""
        await self.degradation.stop()

        for task in (self._metrics_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._metrics_task = None
        self._drain_task = None

        for session_id in list(self._sessions):
            await self.disconnect(session_id)

        self.breakers.shutdown()
        await self.store.close()
        for probe in self._owned_probes:
            await probe.close()
        logger.info("Resilience service stopped")

    # =========================================================================
    # Sessions
    # =========================================================================

    async def connect(self, session_id: str, user_id: str = ANONYMOUS_USER) -> Connection:
        """
        Open (or reuse) the session's agent connection.

        Raises:
            RetryExhaustedError: The transport could not be opened
        """
        session = self._sessions.get(session_id)
        if session is None:
            session = self._create_session(session_id, user_id)
        return await session.manager.connect(session_id, session.user_id)

    async def disconnect(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.client.close()
        await session.manager.disconnect()
        self._update_active_connections()

    def get_connection_status(self, session_id: str) -> Optional[Connection]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return session.manager.get_connection_status()

    @property
    def active_connections(self) -> int:
        return sum(1 for s in self._sessions.values() if s.manager.is_connected)

    def _create_session(self, session_id: str, user_id: str) -> ChatSession:
        manager = ConnectionManager.from_settings(
            self.settings,
            transport=self._transport,
            retry_engine=self.retry_engine,
        )
        manager.add_listener(self.transport_probe.on_connection_event)
        manager.add_listener(self._on_connection_event)

        client = AgentClient(
            manager,
            self.agent_breaker,
            reply_timeout_sec=self.settings.agent_reply_timeout_sec,
            metrics=self.metrics,
        )
        session = ChatSession(session_id=session_id, user_id=user_id, manager=manager, client=client)
        self._sessions[session_id] = session
        return session

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        session_id: str,
        content: str,
        user_id: str = ANONYMOUS_USER,
        metadata: Optional[dict] = None,
    ) -> dict[str, Any]:
        """
        Deliver a user message to the agent, or run the level's fallback.

        Args:
            session_id: Chat session identifier
            content: Message text
            user_id: User identifier, used when a connection must be opened
            metadata: Optional metadata forwarded to the agent

        Returns:
            {"status": "delivered" | "fallback", "reply": {...}} or the fallback payload

        Raises:
            MessageValidationError: Empty or oversized content
            RetryExhaustedError: The transport could not be opened
        """
        validate_content(content, self.settings.max_message_chars)

        if not self.degradation.can_use_feature(FEATURE_AGENT):
            fallback = self.degradation.get_fallback_action(SEND_MESSAGE)
            logger.info(
                "Agent unavailable at level {}, using fallback for session {}",
                self.get_current_level().level.value, session_id,
            )
            return await fallback(session_id, content)

        await self.connect(session_id, user_id)
        session = self._sessions[session_id]

        await self._remember(session_id, Message(role="user", content=content))
        reply = await session.client.send_message(content, metadata)

        if reply.metadata.get("fallback"):
            return {"status": "fallback", "reply": reply.model_dump(mode="json")}

        await self._remember(
            session_id,
            Message(role="assistant", content=reply.content, metadata={"message_id": reply.id}),
        )
        return {"status": "delivered", "reply": reply.model_dump(mode="json")}

    async def get_messages(self, session_id: str) -> dict[str, Any]:
        """
        Conversation history, or what the current level can serve instead.

        Returns:
            {"status": "ok" | "cached", "messages": [...]} or the offline payload
        """
        fallback = self.degradation.get_fallback_action(GET_MESSAGES)
        if fallback is None:
            messages = await self.store.get_messages(session_id)
            return {"status": "ok", "messages": [m.model_dump(mode="json") for m in messages]}

        result = await fallback(session_id)
        if isinstance(result, list):
            return {"status": "cached", "messages": result}
        return result

    async def _remember(self, session_id: str, message: Message) -> None:
        try:
            await self.store.add_message(session_id, message)
        except ResilienceError as e:
            # History is best effort; the reply still goes back to the user
            logger.warning("Could not persist {} message for session {}: {}", message.role, session_id, e)
            self.metrics.increment_error_counter(e.code, PERSISTENCE)

    # =========================================================================
    # Degradation passthrough
    # =========================================================================

    def get_current_level(self) -> DegradationLevel:
        return self.degradation.get_current_level()

    def can_use_feature(self, feature: str) -> bool:
        return self.degradation.can_use_feature(feature)

    def get_fallback_action(self, action: str) -> Optional[FallbackAction]:
        return self.degradation.get_fallback_action(action)

    async def assess(self) -> DegradationLevel:
        """Force a fresh assessment."""
        return await self.degradation.assess_system_health()

    # =========================================================================
    # Listeners
    # =========================================================================

    def _on_level_change(self, old: DegradationLevel, new: DegradationLevel) -> None:
        log_event(
            "degradation_level_changed",
            service=self.settings.service_name,
            level="WARNING" if new.level != ServiceLevel.FULL else "INFO",
            previous=old.level.value,
            current=new.level.value,
        )
        if new.level == ServiceLevel.FULL and len(self.queue):
            if self._drain_task is None or self._drain_task.done():
                self._drain_task = asyncio.create_task(self._drain_queue())

    async def _drain_queue(self) -> None:
        """Replay messages queued while the agent was unavailable."""
        items = self.queue.drain()
        logger.info("Replaying {} queued messages", len(items))

        for item in items:
            session = self._sessions.get(item.session_id)
            user_id = session.user_id if session else ANONYMOUS_USER
            try:
                await self.send_message(item.session_id, item.content, user_id=user_id)
            except ResilienceError as e:
                logger.warning("Queued message for session {} not delivered: {}", item.session_id, e)
                self.metrics.increment_error_counter(e.code, AGENT)

    def _on_circuit_event(self, event: CircuitEvent) -> None:
        self.metrics.set_circuit_breaker_state(event.breaker, event.state)

        if event.type == CircuitEventType.OPEN:
            log_event("circuit_opened", service=event.breaker, level="WARNING")
        elif event.type == CircuitEventType.HALF_OPEN:
            log_event("circuit_half_open", service=event.breaker)
        elif event.type == CircuitEventType.CLOSE:
            log_event("circuit_closed", service=event.breaker)
        elif event.type == CircuitEventType.REJECT:
            self.metrics.increment_error_counter("circuit_open", event.breaker)

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event.type in (
            ConnectionEventType.CONNECTED,
            ConnectionEventType.DISCONNECTED,
            ConnectionEventType.MAX_RETRIES_REACHED,
        ):
            self._update_active_connections()

        if event.type == ConnectionEventType.ERROR:
            self.metrics.increment_error_counter("transport_error", TRANSPORT)
        elif event.type == ConnectionEventType.MAX_RETRIES_REACHED:
            log_event(
                "max_retries_reached",
                service=TRANSPORT,
                error=f"gave up after {event.retry_count} reconnect attempts",
                level="ERROR",
                session_id=event.session_id,
            )

    def _update_active_connections(self) -> None:
        self.metrics.set_active_connections(self.active_connections)

    async def _refresh_metrics(self, interval_sec: float) -> None:
        while True:
            await asyncio.sleep(interval_sec)
            self._update_active_connections()
            for breaker in self.breakers:
                self.metrics.set_circuit_breaker_state(breaker.name, breaker.state)
