"""
Chat API Routes
===============
Chat message endpoints backed by the resilience core.

Provides:
- POST /chat/{session_id}/messages - Send a message (agent reply or fallback)
- GET /chat/{session_id}/messages - Conversation history (or fallback)
- GET /chat/{session_id}/status - Connection status and service level
- DELETE /chat/{session_id}/connection - Close the session's agent connection
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from govchat.api.deps import get_service
from govchat.realtime.connection import ConnectionState
from govchat.service import ANONYMOUS_USER, ResilienceService


router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """A user message for the agent."""
    content: str
    user_id: str = ANONYMOUS_USER
    metadata: dict = Field(default_factory=dict)


class ConnectionStatusResponse(BaseModel):
    """Connection state of one session."""
    session_id: str
    connected: bool
    state: Optional[str] = None
    retry_count: int = 0
    last_activity: Optional[str] = None
    level: str
    features: list[str] = Field(default_factory=list)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/chat/{session_id}/messages")
async def send_message(
    session_id: str,
    request: SendMessageRequest,
    service: ResilienceService = Depends(get_service),
):
    """Send a message; degraded levels answer with their fallback payload."""
    return await service.send_message(
        session_id,
        request.content,
        user_id=request.user_id,
        metadata=request.metadata or None,
    )


@router.get("/chat/{session_id}/messages")
async def get_messages(
    session_id: str,
    service: ResilienceService = Depends(get_service),
):
    """Get conversation history."""
    return await service.get_messages(session_id)


@router.get("/chat/{session_id}/status", response_model=ConnectionStatusResponse)
async def connection_status(
    session_id: str,
    service: ResilienceService = Depends(get_service),
):
    """Get connection status for a session."""
    connection = service.get_connection_status(session_id)
    level = service.get_current_level()

    return ConnectionStatusResponse(
        session_id=session_id,
        connected=connection is not None and connection.state == ConnectionState.CONNECTED,
        state=connection.state.value if connection else None,
        retry_count=connection.retry_count if connection else 0,
        last_activity=connection.last_activity.isoformat() if connection else None,
        level=level.level.value,
        features=list(level.features),
    )


@router.delete("/chat/{session_id}/connection")
async def close_connection(
    session_id: str,
    service: ResilienceService = Depends(get_service),
):
    """Close the session's agent connection."""
    await service.disconnect(session_id)
    return {"status": "disconnected", "session_id": session_id}
