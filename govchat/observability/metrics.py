"""
Chat Metrics
============
Prometheus counters and gauges written by the resilience core.

Each ChatMetrics owns its CollectorRegistry, so the service and every test
get an isolated set of series.
"""

from typing import Union

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from govchat.resilience.circuit_breaker import CircuitState


# Encoding for chat_circuit_breaker_state
CIRCUIT_STATE_VALUES: dict[CircuitState, int] = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


class ChatMetrics:
    """
    Metrics sink for chat traffic, connections, errors and breakers.

    Usage:
        metrics = ChatMetrics()
        metrics.increment_message_counter("query", "success")
        metrics.record_message_duration("query", "success", 0.42)
        payload = metrics.render()
    """

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.messages = Counter(
            "chat_messages_total",
            "Total number of chat messages, labeled by type and status.",
            labelnames=("type", "status"),
            registry=self.registry,
        )

        self.message_duration = Histogram(
            "chat_message_duration_seconds",
            "Round-trip duration of chat messages to the upstream agent.",
            labelnames=("type", "status"),
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
            registry=self.registry,
        )

        self.active_connections = Gauge(
            "chat_active_connections",
            "Number of connected real-time transport sessions.",
            registry=self.registry,
        )

        self.errors = Counter(
            "chat_errors_total",
            "Total number of errors, labeled by error type and service.",
            labelnames=("type", "service"),
            registry=self.registry,
        )

        self.circuit_breaker_state = Gauge(
            "chat_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half-open, 2=open).",
            labelnames=("service",),
            registry=self.registry,
        )

    def increment_message_counter(self, type: str, status: str) -> None:
        self.messages.labels(type=type, status=status).inc()

    def record_message_duration(self, type: str, status: str, seconds: float) -> None:
        self.message_duration.labels(type=type, status=status).observe(seconds)

    def set_active_connections(self, count: int) -> None:
        self.active_connections.set(count)

    def increment_error_counter(self, type: str, service: str) -> None:
        self.errors.labels(type=type, service=service).inc()

    def set_circuit_breaker_state(self, service: str, state: Union[CircuitState, str]) -> None:
        self.circuit_breaker_state.labels(service=service).set(
            CIRCUIT_STATE_VALUES[CircuitState(state)]
        )

    def render(self) -> bytes:
        """Prometheus text exposition of every series in this registry."""
        return generate_latest(self.registry)
