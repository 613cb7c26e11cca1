"""
Resilience Module
=================
Retry, circuit breaking, health aggregation and graceful degradation.

Components:
- RetryEngine: Policy-driven retries with backoff and jitter
- CircuitBreaker: Fail-fast wrapper around an unreliable dependency
- HealthAggregator: Concurrent dependency health probing
- DegradationEngine: Service level derived from dependency health
"""

from govchat.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitEvent,
    CircuitEventType,
    CircuitState,
    CircuitStats,
)
from govchat.resilience.degradation import (
    DegradationEngine,
    DegradationLevel,
    FallbackHandlers,
    PendingMessageQueue,
    ServiceLevel,
    decide_level,
)
from govchat.resilience.errors import (
    AgentReplyError,
    CircuitOpenError,
    CircuitTimeoutError,
    ErrorKind,
    HealthProbeError,
    MessageSendError,
    MessageValidationError,
    NonRetryableError,
    ResilienceError,
    RetryExhaustedError,
    TransportConnectionError,
    TransportNotConnectedError,
)
from govchat.resilience.health_monitor import HealthAggregator, HealthStatus, SystemHealth
from govchat.resilience.recovery import (
    BackoffStrategy,
    RetryAttempt,
    RetryEngine,
    RetryPolicy,
    api_policy,
    message_policy,
    transport_policy,
)

__all__ = [
    # Retry
    "BackoffStrategy",
    "RetryAttempt",
    "RetryEngine",
    "RetryPolicy",
    "api_policy",
    "message_policy",
    "transport_policy",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitEvent",
    "CircuitEventType",
    "CircuitState",
    "CircuitStats",
    # Health
    "HealthAggregator",
    "HealthStatus",
    "SystemHealth",
    # Degradation
    "DegradationEngine",
    "DegradationLevel",
    "FallbackHandlers",
    "PendingMessageQueue",
    "ServiceLevel",
    "decide_level",
    # Errors
    "AgentReplyError",
    "CircuitOpenError",
    "CircuitTimeoutError",
    "ErrorKind",
    "HealthProbeError",
    "MessageSendError",
    "MessageValidationError",
    "NonRetryableError",
    "ResilienceError",
    "RetryExhaustedError",
    "TransportConnectionError",
    "TransportNotConnectedError",
]
