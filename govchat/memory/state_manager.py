"""
Conversation Store
==================
Conversation state keyed by session id.

Provides:
- Chat history with Redis or in-memory fallback
- Bounded history per session with a TTL in Redis
- A ping used as the persistence health probe
"""

from datetime import datetime
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, Field

from govchat.resilience.recovery import RetryEngine, RetryPolicy


class Message(BaseModel):
    """Single message in a conversation."""

    role: str  # user, assistant, system
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConversationStore:
    """
    Stores chat history per session.

    Usage:
        store = ConversationStore(redis_url="redis://localhost:6379/0")

        await store.add_message(session_id, Message(role="user", content="Hello"))
        history = await store.get_messages(session_id)
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        max_messages: int = 50,
        session_ttl_sec: int = 86400,
        retry_engine: Optional[RetryEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize conversation store.

        Args:
            redis_url: Optional Redis URL; in-memory when empty
            max_messages: History kept per session
            session_ttl_sec: Redis key TTL
            retry_engine: Engine for Redis round trips
            retry_policy: Policy for Redis round trips
        """
        self.redis_url = redis_url
        self.max_messages = max_messages
        self.session_ttl_sec = session_ttl_sec
        self._retry_engine = retry_engine or RetryEngine()
        self._retry_policy = retry_policy or RetryPolicy(
            name="persistence", max_attempts=2, base_delay_sec=0.2, max_delay_sec=1.0
        )
        self._redis_client = None

        # In-memory fallback
        self._sessions: dict[str, list[Message]] = {}

    def _get_redis(self):
        """Lazy Redis client. Connection happens on first command."""
        if self._redis_client is None and self.redis_url:
            import redis.asyncio as redis
            self._redis_client = redis.from_url(self.redis_url)
        return self._redis_client

    @staticmethod
    def _key(session_id: str) -> str:
        return f"conversation:{session_id}"

    async def add_message(self, session_id: str, message: Message) -> None:
        """Append a message, trimming history to max_messages."""
        redis = self._get_redis()

        if redis is None:
            history = self._sessions.setdefault(session_id, [])
            history.append(message)
            del history[:-self.max_messages]
            return

        key = self._key(session_id)

        async def _write():
            async with redis.pipeline(transaction=True) as pipe:
                pipe.rpush(key, message.model_dump_json())
                pipe.ltrim(key, -self.max_messages, -1)
                pipe.expire(key, self.session_ttl_sec)
                await pipe.execute()

        await self._retry_engine.run_with_retry(_write, self._retry_policy)

    async def get_messages(self, session_id: str) -> list[Message]:
        """Get conversation history, oldest first. Empty if unknown."""
        redis = self._get_redis()

        if redis is None:
            return list(self._sessions.get(session_id, []))

        raw = await self._retry_engine.run_with_retry(
            lambda: redis.lrange(self._key(session_id), 0, -1),
            self._retry_policy,
        )
        return [Message.model_validate_json(item) for item in raw]

    async def ping(self) -> bool:
        """Persistence health probe. In-memory mode is always healthy."""
        redis = self._get_redis()
        if redis is None:
            return True
        return bool(await redis.ping())

    async def close(self) -> None:
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None
            logger.debug("Conversation store Redis client closed")
