"""
Observability Module
====================
Metrics and structured logging for the resilience layer.

Components:
- ChatMetrics: Prometheus counters, gauges and histograms
- Logging: loguru sink setup and structured event helper
"""

from govchat.observability.logging import configure_logging, log_event
from govchat.observability.metrics import CIRCUIT_STATE_VALUES, ChatMetrics

__all__ = [
    "ChatMetrics",
    "CIRCUIT_STATE_VALUES",
    "configure_logging",
    "log_event",
]
