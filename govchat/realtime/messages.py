"""
Agent Wire Messages
===================
JSON frames exchanged with the upstream conversational agent.

- query: free-text user question
- response: agent reply, same correlation_id as the query
- error: human-readable failure description
- ping / pong: application-level heartbeat pair
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from govchat.resilience.errors import MessageValidationError


class MessageType(str, Enum):
    MESSAGE = "message"
    QUERY = "query"
    RESPONSE = "response"
    ERROR = "error"
    STATUS = "status"
    PING = "ping"
    PONG = "pong"


def new_message_id() -> str:
    return uuid.uuid4().hex


class AgentMessage(BaseModel):
    """One frame on the agent transport."""

    id: str = Field(default_factory=new_message_id)
    type: MessageType
    content: str = ""
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def query(
        cls,
        content: str,
        metadata: Optional[dict] = None,
        correlation_id: Optional[str] = None,
    ) -> "AgentMessage":
        message_id = new_message_id()
        return cls(
            id=message_id,
            type=MessageType.QUERY,
            content=content,
            correlation_id=correlation_id or message_id,
            metadata=metadata or {},
        )

    def pong(self) -> "AgentMessage":
        """Answer to an agent-initiated ping."""
        return AgentMessage(type=MessageType.PONG, correlation_id=self.id)

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, raw: Union[str, bytes]) -> "AgentMessage":
        """
        Parse a frame.

        Raises:
            MessageValidationError: If the frame is not a valid message
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MessageValidationError(
                f"invalid agent frame ({e.error_count()} errors)"
            ) from e
