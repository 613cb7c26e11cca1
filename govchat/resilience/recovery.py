"""
Error Recovery
==============
Retry strategies with backoff for resilient operations.

Features:
- Immutable, named retry policies
- Exponential, linear and constant backoff with optional jitter
- Explicit error classification (retryable vs terminal)
- One "attempt failed" event per failed attempt
"""

import asyncio
import functools
import random
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator

from govchat.config import Settings
from govchat.resilience.errors import (
    NonRetryableError,
    ResilienceError,
    RetryExhaustedError,
)


# Jitter multiplies the delay by a uniform factor in this band
JITTER_MIN = 0.5
JITTER_MAX = 1.0

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


class BackoffStrategy(str, Enum):
    """Backoff strategies."""
    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def default_is_retryable(error: BaseException) -> bool:
    """Classify an error using its kind tag, falling back to transient builtins."""
    if isinstance(error, ResilienceError):
        return error.retryable
    return isinstance(error, TRANSIENT_EXCEPTIONS)


class RetryPolicy(BaseModel):
    """Configuration for retry behavior at one call site."""

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    max_attempts: int = Field(default=3, ge=1)
    base_delay_sec: float = Field(default=1.0, gt=0)
    max_delay_sec: float = Field(default=30.0, gt=0)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter_enabled: bool = True
    is_retryable: Callable[[BaseException], bool] = default_is_retryable

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "RetryPolicy":
        if self.max_delay_sec < self.base_delay_sec:
            raise ValueError("max_delay_sec must be >= base_delay_sec")
        return self

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay after the given (1-based) failed attempt.

        Jitter is applied before clamping, so the result never exceeds
        max_delay_sec.
        """
        if self.backoff_strategy == BackoffStrategy.CONSTANT:
            delay = self.base_delay_sec

        elif self.backoff_strategy == BackoffStrategy.LINEAR:
            delay = self.base_delay_sec * attempt

        else:  # EXPONENTIAL
            delay = self.base_delay_sec * (self.backoff_multiplier ** (attempt - 1))

        if self.jitter_enabled:
            delay *= random.uniform(JITTER_MIN, JITTER_MAX)

        return min(delay, self.max_delay_sec)


class RetryAttempt(BaseModel):
    """Event emitted for every failed attempt."""

    model_config = ConfigDict(frozen=True)

    policy: str
    attempt: int
    retries_left: int
    delay_sec: float
    error: str
    error_type: str
    retryable: bool
    timestamp: datetime = Field(default_factory=datetime.now)


AttemptListener = Callable[[RetryAttempt], None]


class RetryEngine:
    """
    Runs async operations under a retry policy.

    Usage:
        engine = RetryEngine()

        try:
            result = await engine.run_with_retry(
                lambda: client.fetch(url),
                transport_policy(settings),
            )
        except RetryExhaustedError:
            # Transient failure that never cleared
            ...
        except NonRetryableError:
            # Fix the request, do not try again
            ...
    """

    def __init__(self, service: str = "govchat"):
        """
        Initialize retry engine.

        Args:
            service: Service name attached to emitted events
        """
        self.service = service
        self._listeners: list[AttemptListener] = []

    def add_listener(self, listener: AttemptListener) -> None:
        """Subscribe to failed-attempt events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: AttemptListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def run_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
    ) -> Any:
        """
        Execute an operation, retrying on retryable failures.

        Args:
            operation: Zero-argument coroutine function
            policy: Retry policy for this call site

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: Retryable failure outlived max_attempts
            NonRetryableError: Failure classified as terminal
            CircuitOpenError: Passed through unchanged, never retried
        """
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await operation()

            except ResilienceError as e:
                if e.passthrough:
                    # Already a final outcome from a lower layer
                    raise
                error = e

            except Exception as e:
                error = e

            retryable = bool(policy.is_retryable(error))
            retries_left = policy.max_attempts - attempt
            will_retry = retryable and retries_left > 0
            delay = policy.get_delay(attempt) if will_retry else 0.0

            self._emit(RetryAttempt(
                policy=policy.name,
                attempt=attempt,
                retries_left=retries_left if retryable else 0,
                delay_sec=delay,
                error=str(error),
                error_type=type(error).__name__,
                retryable=retryable,
            ))

            if not will_retry:
                raise self._final_error(error, attempt, retryable, policy) from error

            await asyncio.sleep(delay)

        # max_attempts >= 1, so the loop always returns or raises
        raise AssertionError("unreachable")

    def wrap(
        self,
        func: Callable[..., Awaitable[Any]],
        policy: RetryPolicy,
    ) -> Callable[..., Awaitable[Any]]:
        """
        Return a coroutine function that retries func under policy.

        Usage:
            send = engine.wrap(channel.send, message_policy(settings))
            await send(payload)
        """
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.run_with_retry(lambda: func(*args, **kwargs), policy)
        return wrapper

    def _final_error(
        self,
        error: BaseException,
        attempts: int,
        retryable: bool,
        policy: RetryPolicy,
    ) -> ResilienceError:
        if retryable:
            logger.error(
                "Retry policy '{}' exhausted after {} attempts: {}",
                policy.name, attempts, error,
            )
            return RetryExhaustedError(
                f"Operation failed after {attempts} attempts: {error}",
                attempts=attempts,
                last_error=error,
            )

        logger.warning("Non-retryable error under policy '{}': {}", policy.name, error)
        return NonRetryableError(str(error), attempts=attempts, last_error=error)

    def _emit(self, event: RetryAttempt) -> None:
        logger.bind(
            service=self.service,
            event="retry_attempt_failed",
            attempt=event.attempt,
            retries_left=event.retries_left,
            next_retry_in=event.delay_sec,
        ).warning(
            "Attempt {} under '{}' failed: {}. Retries left: {}, next in {:.2f}s",
            event.attempt, event.policy, event.error, event.retries_left, event.delay_sec,
        )

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Retry listener failed: {}", e)


# =============================================================================
# Named policies
# =============================================================================

def transport_policy(settings: Settings) -> RetryPolicy:
    """Policy for opening the real-time transport: exponential x2 with jitter."""
    return RetryPolicy(
        name="transport",
        max_attempts=settings.transport_retry_max_attempts,
        base_delay_sec=settings.transport_retry_base_delay_sec,
        max_delay_sec=settings.transport_retry_max_delay_sec,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        backoff_multiplier=2.0,
        jitter_enabled=True,
    )


def message_policy(settings: Settings) -> RetryPolicy:
    """Policy for sending one frame: fixed delay, send failures are usually transient."""
    return RetryPolicy(
        name="message",
        max_attempts=settings.message_retry_max_attempts,
        base_delay_sec=settings.message_retry_delay_sec,
        max_delay_sec=settings.message_retry_delay_sec,
        backoff_strategy=BackoffStrategy.CONSTANT,
        jitter_enabled=False,
    )


def api_policy(settings: Settings) -> RetryPolicy:
    """Policy for plain request/response calls."""
    return RetryPolicy(
        name="api",
        max_attempts=settings.api_retry_max_attempts,
        base_delay_sec=settings.api_retry_base_delay_sec,
        max_delay_sec=settings.api_retry_max_delay_sec,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        jitter_enabled=True,
    )
