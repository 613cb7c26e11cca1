"""
Real-time Module
================
The session's WebSocket link to the upstream agent.

Components:
- ConnectionManager: Connect, heartbeat, reconnect, send
- AgentClient: Correlated query/reply through the agent circuit breaker
- Transport: websockets-backed channel factory
"""

from govchat.realtime.agent_client import AGENT_BREAKER_NAME, FALLBACK_RESPONSE, AgentClient
from govchat.realtime.connection import (
    Connection,
    ConnectionConfig,
    ConnectionEvent,
    ConnectionEventType,
    ConnectionManager,
    ConnectionState,
)
from govchat.realtime.messages import AgentMessage, MessageType
from govchat.realtime.transport import (
    TransportChannel,
    TransportClosed,
    TransportFactory,
    WebsocketsTransport,
)

__all__ = [
    "AGENT_BREAKER_NAME",
    "FALLBACK_RESPONSE",
    "AgentClient",
    "AgentMessage",
    "Connection",
    "ConnectionConfig",
    "ConnectionEvent",
    "ConnectionEventType",
    "ConnectionManager",
    "ConnectionState",
    "MessageType",
    "TransportChannel",
    "TransportClosed",
    "TransportFactory",
    "WebsocketsTransport",
]
