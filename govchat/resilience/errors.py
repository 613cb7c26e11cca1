"""
Resilience Errors
=================
Typed failures raised by the connection and resilience layer.

Every error carries an explicit kind tag set where it is raised, so retry
decisions use structured matching instead of inspecting messages.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Retry classification attached to an error."""
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


class ResilienceError(Exception):
    """Base class for all errors raised by the resilience core."""

    kind: ErrorKind = ErrorKind.NON_RETRYABLE
    code: str = "RESILIENCE_ERROR"
    status_code: int = 500

    # Final outcomes propagate through RetryEngine without being retried
    passthrough: bool = False

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        service: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.service = service
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE

    def to_dict(self) -> dict:
        """Serialize for API responses and log payloads."""
        payload = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.service:
            payload["service"] = self.service
        return payload


# =============================================================================
# Transport
# =============================================================================

class TransportConnectionError(ResilienceError):
    """Opening the real-time transport failed or timed out."""
    kind = ErrorKind.RETRYABLE
    code = "TRANSPORT_CONNECTION_FAILED"
    status_code = 503

    def __init__(self, message: str = "WebSocket connection failed", **kwargs):
        super().__init__(message, **kwargs)


class TransportNotConnectedError(ResilienceError):
    """An operation needed a live connection and there was none."""
    code = "TRANSPORT_NOT_CONNECTED"
    status_code = 409

    def __init__(self, message: str = "WebSocket is not connected", **kwargs):
        super().__init__(message, **kwargs)


class MessageSendError(ResilienceError):
    """Writing a frame to the transport failed."""
    kind = ErrorKind.RETRYABLE
    code = "MESSAGE_SEND_FAILED"
    status_code = 502


class MessageValidationError(ResilienceError):
    """A message was rejected before reaching the transport."""
    code = "MESSAGE_VALIDATION_FAILED"
    status_code = 400

    def __init__(self, message: str, **kwargs):
        super().__init__(f"Message validation failed: {message}", **kwargs)


class AgentReplyError(ResilienceError):
    """The upstream agent answered with an error frame."""
    kind = ErrorKind.RETRYABLE
    code = "AGENT_REPLY_ERROR"
    status_code = 502


# =============================================================================
# Circuit breaker
# =============================================================================

class CircuitOpenError(ResilienceError):
    """Raised when a circuit is open; callers should use a fallback."""
    kind = ErrorKind.RETRYABLE
    code = "CIRCUIT_OPEN"
    status_code = 503
    passthrough = True

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(message or f"Circuit '{name}' is open", service=name)
        self.breaker_name = name


class CircuitTimeoutError(ResilienceError):
    """A call through a circuit breaker exceeded its timeout."""
    kind = ErrorKind.RETRYABLE
    code = "CIRCUIT_TIMEOUT"
    status_code = 504

    def __init__(self, name: str, timeout_sec: float):
        super().__init__(
            f"Call through circuit '{name}' timed out after {timeout_sec:.1f}s",
            service=name,
        )
        self.timeout_sec = timeout_sec


# =============================================================================
# Health
# =============================================================================

class HealthProbeError(ResilienceError):
    """A health probe failed. Always recorded as unhealthy, never raised to callers."""
    code = "HEALTH_PROBE_FAILED"
    status_code = 503


# =============================================================================
# Retry outcomes
# =============================================================================

class RetryOutcomeError(ResilienceError):
    """Terminal result of RetryEngine. Carries the attempt count and last error."""
    passthrough = True

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RetryExhaustedError(RetryOutcomeError):
    """A retryable error persisted through every allowed attempt."""
    kind = ErrorKind.RETRYABLE
    code = "RETRY_EXHAUSTED"
    status_code = 503


class NonRetryableError(RetryOutcomeError):
    """The error was classified as not worth retrying."""
    code = "NON_RETRYABLE"
    status_code = 400

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message, attempts, last_error)
        # Keep the HTTP status of a typed cause, e.g. 409 for not-connected
        if isinstance(last_error, ResilienceError):
            self.status_code = last_error.status_code
