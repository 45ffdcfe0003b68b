"""
Message model definitions.
Represents individual messages in a conversation.
"""

from datetime import datetime
from typing import Any, Dict
from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


class MessageCreate(BaseModel):
    """Schema for submitting a new user message.

    Args:
        conversation_id: ID of the conversation to add the message to.
        content: Message text. Must be 1-100000 characters.
        stream: If True, the reply is streamed back as Server-Sent Events.
    """
    conversation_id: str
    content: str = Field(..., min_length=1, max_length=100000)
    stream: bool = True


class Message(BaseModel):
    """Full message model as stored in database."""
    model_config = ConfigDict(from_attributes=True)
    id: str
    conversation_id: str
    user_id: str
    app_scope: str
    content: str
    is_user: bool
    timestamp: datetime

    @property
    def role(self) -> str:
        """Transcript role for this message."""
        return "user" if self.is_user else "assistant"

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Message":
        """Build from a stored document (camelCase keys)."""
        return cls(
            id=str(doc["_id"]),
            conversation_id=doc["conversationId"],
            user_id=doc["userId"],
            app_scope=doc["appScope"],
            content=doc["content"],
            is_user=bool(doc["isUser"]),
            timestamp=doc["timestamp"],
        )
