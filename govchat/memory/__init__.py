"""Memory module for conversation state."""

from govchat.memory.state_manager import ConversationStore, Message

__all__ = [
    "ConversationStore",
    "Message",
]
