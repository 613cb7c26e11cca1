"""
Graceful Degradation
====================
System-wide service level derived from dependency health.

Levels:
- FULL: Every dependency healthy, all features available
- LIMITED: Persistence up with transport or agent up; messages are queued
- OFFLINE: Static content only; fixed "service offline" responses

Each assessment builds a complete new DegradationLevel and swaps it in with
one assignment, so readers never observe a half-built level.
"""

import asyncio
from collections import deque
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from govchat.memory.state_manager import ConversationStore
from govchat.resilience.circuit_breaker import CircuitBreaker, CircuitState
from govchat.resilience.health_monitor import HealthAggregator


# Canonical dependency keys
PERSISTENCE = "persistence-store"
TRANSPORT = "real-time-transport"
AGENT = "upstream-agent"

# Features
FEATURE_TRANSPORT = "transport"
FEATURE_AGENT = "agent"
FEATURE_PERSISTENCE = "persistence"
FEATURE_REAL_TIME = "real-time"
FEATURE_MESSAGE_QUEUE = "message-queue"
FEATURE_STATIC_CONTENT = "static-content"

# Fallback action names
SEND_MESSAGE = "sendMessage"
GET_MESSAGES = "getMessages"

QUEUED_MESSAGE = (
    "Your message has been queued and will be processed when services are restored."
)
OFFLINE_MESSAGE = (
    "The service is currently offline for maintenance. Please try again later."
)


FallbackAction = Callable[..., Awaitable[Any]]


class ServiceLevel(str, Enum):
    """Degradation tiers."""
    FULL = "full"
    LIMITED = "limited"
    OFFLINE = "offline"


class DegradationLevel(BaseModel):
    """A complete, immutable service level."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    level: ServiceLevel
    description: str
    features: tuple[str, ...]
    fallback_actions: Mapping[str, FallbackAction] = Field(
        default_factory=lambda: MappingProxyType({})
    )
    health: Mapping[str, bool] = Field(default_factory=lambda: MappingProxyType({}))
    assessed_at: datetime = Field(default_factory=datetime.now)

    @field_validator("fallback_actions", "health", mode="after")
    @classmethod
    def _read_only(cls, value: Mapping) -> Mapping:
        return MappingProxyType(dict(value))

    def to_dict(self) -> dict:
        return {
            "level": self.level.value,
            "description": self.description,
            "features": list(self.features),
            "fallback_actions": sorted(self.fallback_actions),
            "health": dict(self.health),
            "assessed_at": self.assessed_at.isoformat(),
        }


class QueuedMessage(BaseModel):
    session_id: str
    content: str
    queued_at: datetime = Field(default_factory=datetime.now)


class PendingMessageQueue:
    """
    Bounded in-memory queue for messages sent while the agent is unreachable.

    Contents are lost on process restart. When full, the oldest message is
    dropped.
    """

    def __init__(self, max_size: int = 500):
        self._items: deque[QueuedMessage] = deque(maxlen=max_size)
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def put(self, session_id: str, content: str) -> QueuedMessage:
        if len(self._items) == self._items.maxlen:
            self.dropped += 1
            logger.warning("Pending message queue full, dropping oldest message")
        item = QueuedMessage(session_id=session_id, content=content)
        self._items.append(item)
        return item

    def drain(self) -> list[QueuedMessage]:
        """Remove and return every queued message, oldest first."""
        items = list(self._items)
        self._items.clear()
        return items

    def pending_for(self, session_id: str) -> list[QueuedMessage]:
        return [item for item in self._items if item.session_id == session_id]


class FallbackHandlers:
    """Fallback actions offered by the limited and offline levels."""

    def __init__(
        self,
        queue: PendingMessageQueue,
        store: Optional[ConversationStore] = None,
    ):
        self.queue = queue
        self.store = store

    async def queue_message(self, session_id: str, content: str = "") -> dict:
        item = self.queue.put(session_id, content)
        logger.info("Message queued for later processing: session={}", session_id)
        return {
            "status": "queued",
            "message": QUEUED_MESSAGE,
            "queued_at": item.queued_at.isoformat(),
        }

    async def cached_messages(self, session_id: str) -> list[dict]:
        if self.store is None:
            return []
        try:
            messages = await self.store.get_messages(session_id)
        except Exception as e:
            logger.warning("Cached messages unavailable for session {}: {}", session_id, e)
            return []
        return [m.model_dump(mode="json") for m in messages]

    async def offline(self, *args, **kwargs) -> dict:
        return {"status": "offline", "message": OFFLINE_MESSAGE}


def decide_level(
    health: Mapping[str, bool],
    handlers: FallbackHandlers,
    breaker_state: Optional[CircuitState] = None,
) -> DegradationLevel:
    """
    Pure decision table from a complete health snapshot.

    Missing keys count as unhealthy. An open agent breaker makes the agent
    unhealthy regardless of its probe.
    """
    persistence = health.get(PERSISTENCE, False)
    transport = health.get(TRANSPORT, False)
    agent = health.get(AGENT, False) and breaker_state != CircuitState.OPEN
    snapshot = dict(health)

    if persistence and transport and agent:
        return DegradationLevel(
            level=ServiceLevel.FULL,
            description="All services operational",
            features=(FEATURE_TRANSPORT, FEATURE_AGENT, FEATURE_PERSISTENCE, FEATURE_REAL_TIME),
            health=snapshot,
        )

    if persistence and (transport or agent):
        return DegradationLevel(
            level=ServiceLevel.LIMITED,
            description="Limited functionality - some services unavailable",
            features=(FEATURE_PERSISTENCE, FEATURE_MESSAGE_QUEUE),
            fallback_actions={
                SEND_MESSAGE: handlers.queue_message,
                GET_MESSAGES: handlers.cached_messages,
            },
            health=snapshot,
        )

    return DegradationLevel(
        level=ServiceLevel.OFFLINE,
        description="System offline - maintenance mode",
        features=(FEATURE_STATIC_CONTENT,),
        fallback_actions={
            SEND_MESSAGE: handlers.offline,
            GET_MESSAGES: handlers.offline,
        },
        health=snapshot,
    )


LevelListener = Callable[[DegradationLevel, DegradationLevel], None]


class DegradationEngine:
    """
    Computes and holds the current service level.

    Usage:
        engine = DegradationEngine(aggregator, handlers, breaker=agent_breaker)
        engine.start(interval_sec=30)

        if not engine.can_use_feature("agent"):
            fallback = engine.get_fallback_action("sendMessage")
            return await fallback(session_id, content)
    """

    def __init__(
        self,
        aggregator: HealthAggregator,
        handlers: FallbackHandlers,
        breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize degradation engine.

        Args:
            aggregator: Source of dependency health
            handlers: Fallback actions for degraded levels
            breaker: Upstream agent breaker, consulted on every assessment
        """
        self.aggregator = aggregator
        self.handlers = handlers
        self.breaker = breaker

        self._current = DegradationLevel(
            level=ServiceLevel.FULL,
            description="All services operational",
            features=(FEATURE_TRANSPORT, FEATURE_AGENT, FEATURE_PERSISTENCE, FEATURE_REAL_TIME),
        )
        self._listeners: list[LevelListener] = []
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, listener: LevelListener) -> None:
        """Subscribe to level changes: listener(old, new)."""
        self._listeners.append(listener)

    async def assess_system_health(self) -> DegradationLevel:
        """
        Probe every dependency and replace the current level.

        Returns:
            The newly computed level
        """
        health = await self.aggregator.assess()
        breaker_state = self.breaker.state if self.breaker else None

        new_level = decide_level(health, self.handlers, breaker_state)
        old_level, self._current = self._current, new_level

        logger.bind(event="degradation_assessed", level=new_level.level.value).info(
            "System degradation level assessed: {} ({}) health={}",
            new_level.level.value, new_level.description, dict(health),
        )

        if old_level.level != new_level.level:
            logger.warning(
                "Service level changed: {} -> {}",
                old_level.level.value, new_level.level.value,
            )
            for listener in list(self._listeners):
                try:
                    listener(old_level, new_level)
                except Exception as e:
                    logger.error("Degradation listener failed: {}", e)

        return new_level

    def get_current_level(self) -> DegradationLevel:
        return self._current

    def can_use_feature(self, feature: str) -> bool:
        return feature in self._current.features

    def get_fallback_action(self, action: str) -> Optional[FallbackAction]:
        return self._current.fallback_actions.get(action)

    # =========================================================================
    # Periodic re-assessment
    # =========================================================================

    def start(self, interval_sec: float) -> None:
        """Re-assess every interval_sec on its own task."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(interval_sec))
        logger.info("Degradation monitor started (every {:.0f}s)", interval_sec)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Degradation monitor stopped")

    async def _run(self, interval_sec: float) -> None:
        while True:
            try:
                await self.assess_system_health()
            except Exception as e:
                # Probes never raise; this guards listener-side bugs
                logger.error("Degradation assessment failed: {}", e)
            await asyncio.sleep(interval_sec)
