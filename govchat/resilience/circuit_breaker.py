"""
Circuit Breaker
===============
Fail-fast pattern for degraded services.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Failing state, requests fail immediately
- HALF_OPEN: One trial request tests whether the service recovered

The breaker trips on a rolling error rate: once the window holds at least
volume_threshold calls and the failure percentage reaches
error_threshold_percent, it opens and arms a reset timer.
"""

import asyncio
import inspect
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from govchat.resilience.errors import CircuitOpenError, CircuitTimeoutError


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitEventType(str, Enum):
    """Events delivered to breaker listeners."""
    OPEN = "open"
    HALF_OPEN = "half_open"
    CLOSE = "close"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    REJECT = "reject"


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration."""

    model_config = ConfigDict(frozen=True)

    name: str
    timeout_sec: float = Field(default=10.0, gt=0)
    error_threshold_percent: int = Field(default=50, ge=1, le=100)
    reset_timeout_sec: float = Field(default=30.0, gt=0)
    volume_threshold: int = Field(default=10, ge=1)
    rolling_window_sec: float = Field(default=10.0, gt=0)


class CircuitStats(BaseModel):
    """Circuit breaker statistics."""
    fires: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    rejects: int = 0
    opened_at: Optional[datetime] = None
    last_failure: Optional[str] = None
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    state_changed_at: datetime = Field(default_factory=datetime.now)


class CircuitEvent(BaseModel):
    """A breaker event, delivered to listeners."""

    model_config = ConfigDict(frozen=True)

    breaker: str
    type: CircuitEventType
    state: CircuitState
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


CircuitListener = Callable[[CircuitEvent], None]


class CircuitBreaker:
    """
    Implements circuit breaker pattern.

    Usage:
        breaker = CircuitBreaker(
            CircuitBreakerConfig(name="upstream-agent", volume_threshold=5),
            action=call_agent,
        )

        try:
            result = await breaker.fire(query)
        except CircuitOpenError:
            # Use fallback
            result = fallback_value
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        action: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            config: Circuit configuration
            action: Operation invoked by fire()
        """
        self.config = config
        self.action = action

        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        # (monotonic timestamp, succeeded) per completed call
        self._window: deque[tuple[float, bool]] = deque()
        self._opened_monotonic: Optional[float] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        # Token of the one call admitted in the current half-open period
        self._trial: Optional[object] = None
        self._listeners: list[CircuitListener] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        self._check_reset_elapsed()
        return self._state

    @property
    def stats(self) -> CircuitStats:
        """Snapshot of current statistics."""
        return self._stats.model_copy()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def add_listener(self, listener: CircuitListener) -> None:
        """Subscribe to breaker events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: CircuitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def fire(self, *args, **kwargs) -> Any:
        """
        Invoke the bound action through the breaker.

        Raises:
            CircuitOpenError: If circuit is open
            CircuitTimeoutError: If the action exceeded timeout_sec
        """
        if self.action is None:
            raise RuntimeError(f"Circuit '{self.name}' has no bound action")
        return await self.call(self.action, *args, **kwargs)

    async def call(
        self,
        func: Callable,
        *args,
        **kwargs,
    ) -> Any:
        """
        Execute function through circuit breaker.

        Args:
            func: Function to call (sync or async)
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            CircuitOpenError: If circuit is open
            CircuitTimeoutError: If the call exceeded timeout_sec
        """
        self._stats.fires += 1
        trial = self._admit()

        try:
            if inspect.iscoroutinefunction(func):
                result = await asyncio.wait_for(
                    func(*args, **kwargs),
                    timeout=self.config.timeout_sec,
                )
            else:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, timeout=self.config.timeout_sec)

        except asyncio.TimeoutError as e:
            self._stats.timeouts += 1
            self._emit(CircuitEventType.TIMEOUT)
            error = CircuitTimeoutError(self.name, self.config.timeout_sec)
            self._on_failure(error, trial)
            raise error from e

        except Exception as e:
            self._on_failure(e, trial)
            raise

        except asyncio.CancelledError:
            # The caller gave up; the trial slot must not leak
            if self._is_current_trial(trial):
                self._trial = None
            raise

        self._on_success(trial)
        return result

    def _admit(self) -> Optional[object]:
        """
        Reject the call unless the current state lets it through.

        Returns:
            A trial token when this call is the half-open trial, else None
        """
        self._check_reset_elapsed()

        if self._state == CircuitState.OPEN:
            self._reject()

        if self._state == CircuitState.HALF_OPEN:
            if self._trial is not None:
                self._reject("is half-open (trial call in flight)")
            self._trial = object()
            return self._trial

        return None

    def _is_current_trial(self, trial: Optional[object]) -> bool:
        return trial is not None and trial is self._trial

    def _reject(self, reason: str = "is open") -> None:
        self._stats.rejects += 1
        self._emit(CircuitEventType.REJECT)
        raise CircuitOpenError(self.name, f"Circuit '{self.name}' {reason}")

    def _on_success(self, trial: Optional[object] = None) -> None:
        """Handle successful call."""
        self._stats.successes += 1
        self._stats.last_success_time = datetime.now()
        self._emit(CircuitEventType.SUCCESS)

        if self._state == CircuitState.HALF_OPEN:
            # Only the trial call decides; calls admitted earlier are just counted
            if self._is_current_trial(trial):
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._record(True)

    def _on_failure(self, error: BaseException, trial: Optional[object] = None) -> None:
        """Handle failed call."""
        self._stats.failures += 1
        self._stats.last_failure = str(error)
        self._stats.last_failure_time = datetime.now()
        self._emit(CircuitEventType.FAILURE, error=str(error))

        if self._state == CircuitState.HALF_OPEN:
            if self._is_current_trial(trial):
                self._transition_to(CircuitState.OPEN)
            return

        if self._state == CircuitState.CLOSED:
            self._record(False)
            if self._should_trip():
                self._transition_to(CircuitState.OPEN)

    def _record(self, succeeded: bool) -> None:
        now = time.monotonic()
        self._window.append((now, succeeded))
        self._prune(now)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.rolling_window_sec
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _should_trip(self) -> bool:
        self._prune(time.monotonic())
        total = len(self._window)
        if total < self.config.volume_threshold:
            return False
        failures = sum(1 for _, ok in self._window if not ok)
        return failures * 100 >= self.config.error_threshold_percent * total

    def error_rate(self) -> float:
        """Failure percentage over the rolling window."""
        self._prune(time.monotonic())
        if not self._window:
            return 0.0
        failures = sum(1 for _, ok in self._window if not ok)
        return failures * 100 / len(self._window)

    def _check_reset_elapsed(self) -> None:
        """Move to half-open if the reset timeout passed without the timer firing."""
        if self._state == CircuitState.OPEN and self._opened_monotonic is not None:
            if time.monotonic() - self._opened_monotonic >= self.config.reset_timeout_sec:
                self._transition_to(CircuitState.HALF_OPEN)

    def _arm_reset_timer(self) -> None:
        self._cancel_reset_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (forced open from sync code); the lazy check covers it
            return
        self._reset_handle = loop.call_later(
            self.config.reset_timeout_sec,
            self._on_reset_timer,
        )

    def _cancel_reset_timer(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _on_reset_timer(self) -> None:
        self._reset_handle = None
        if self._state == CircuitState.OPEN:
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to new state."""
        old_state = self._state

        if old_state == new_state:
            return

        self._state = new_state
        self._stats.state_changed_at = datetime.now()

        if new_state == CircuitState.OPEN:
            self._opened_monotonic = time.monotonic()
            self._stats.opened_at = datetime.now()
            self._arm_reset_timer()
            event = CircuitEventType.OPEN
        elif new_state == CircuitState.HALF_OPEN:
            self._cancel_reset_timer()
            self._trial = None
            event = CircuitEventType.HALF_OPEN
        else:
            self._cancel_reset_timer()
            self._opened_monotonic = None
            self._window.clear()
            self._trial = None
            event = CircuitEventType.CLOSE

        logger.info(
            "Circuit '{}' transitioned: {} -> {}",
            self.name, old_state.value, new_state.value
        )
        self._emit(event)

    def _emit(self, event_type: CircuitEventType, error: Optional[str] = None) -> None:
        event = CircuitEvent(
            breaker=self.name,
            type=event_type,
            state=self._state,
            error=error,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Circuit '{}' listener failed: {}", self.name, e)

    def reset(self) -> None:
        """Reset circuit to closed state with fresh statistics."""
        self._cancel_reset_timer()
        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._window.clear()
        self._opened_monotonic = None
        self._trial = None
        logger.info("Circuit '{}' reset", self.name)

    def force_open(self) -> None:
        """Force circuit to open state."""
        self._transition_to(CircuitState.OPEN)

    def force_close(self) -> None:
        """Force circuit to closed state."""
        self._transition_to(CircuitState.CLOSED)

    def shutdown(self) -> None:
        """Cancel the pending reset timer."""
        self._cancel_reset_timer()


class CircuitBreakerRegistry:
    """
    Registry holding one breaker per named dependency.

    Constructed explicitly and owned by the service; shut down with it.

    Usage:
        registry = CircuitBreakerRegistry()
        registry.add_listener(log_breaker_event)

        breaker = registry.register(CircuitBreakerConfig(name="upstream-agent"))

        # Check health of all circuits
        health = registry.get_health()
    """

    def __init__(self):
        """Initialize registry."""
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[CircuitListener] = []

    def register(
        self,
        config: CircuitBreakerConfig,
        action: Optional[Callable[..., Any]] = None,
    ) -> CircuitBreaker:
        """Get the breaker for config.name, creating it on first use."""
        breaker = self._breakers.get(config.name)
        if breaker is None:
            breaker = CircuitBreaker(config, action=action)
            for listener in self._listeners:
                breaker.add_listener(listener)
            self._breakers[config.name] = breaker
            logger.debug("Registered circuit breaker '{}'", config.name)
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def add_listener(self, listener: CircuitListener) -> None:
        """Attach a listener to every current and future breaker."""
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker.add_listener(listener)

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __iter__(self):
        return iter(self._breakers.values())

    def get_health(self) -> dict[str, dict]:
        """Get health status of all circuits."""
        return {
            name: {
                "state": breaker.state.value,
                "error_rate": breaker.error_rate(),
                "failures": breaker.stats.failures,
                "rejects": breaker.stats.rejects,
            }
            for name, breaker in self._breakers.items()
        }

    def all_stats(self) -> list[dict]:
        """Stats for every breaker, in registration order."""
        return [
            {"name": name, "state": breaker.state.value, "stats": breaker.stats.model_dump()}
            for name, breaker in self._breakers.items()
        ]

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self._breakers.values():
            breaker.reset()

    def shutdown(self) -> None:
        """Cancel all reset timers. Called on process stop."""
        for breaker in self._breakers.values():
            breaker.shutdown()
