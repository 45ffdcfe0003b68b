"""
Conversation model definitions.
Represents a titled chat session owned by one user within one app scope.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

DEFAULT_TITLE = "New Chat"


class ConversationMetadata(BaseModel):
    """Derived summary and keywords, replaced wholesale on each derivation."""
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)


class ConversationCreate(BaseModel):
    """Schema for creating a new conversation."""
    title: Optional[str] = DEFAULT_TITLE


class Conversation(BaseModel):
    """
    Full conversation model as stored in database.
    The id is immutable; title and metadata may change.
    """
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    app_scope: str
    title: str = DEFAULT_TITLE
    timestamp: datetime
    metadata: Optional[ConversationMetadata] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Conversation":
        """Build from a stored document (camelCase keys)."""
        metadata = doc.get("metadata")
        return cls(
            id=str(doc["_id"]),
            user_id=doc["userId"],
            app_scope=doc["appScope"],
            title=doc.get("title") or DEFAULT_TITLE,
            timestamp=doc["timestamp"],
            metadata=ConversationMetadata(**metadata) if metadata else None,
        )


class ConversationResponse(Conversation):
    """Conversation data returned in API responses."""
    message_count: int = 0  # Populated when fetching


class ConversationUpdate(BaseModel):
    """Schema for renaming a conversation."""
    title: str = Field(..., min_length=1, max_length=200)
