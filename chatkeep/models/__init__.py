"""
Pydantic models package.
Each module contains models for a specific domain.
"""

from chatkeep.models.user import User
from chatkeep.models.conversation import (
    Conversation, ConversationCreate, ConversationMetadata,
    ConversationResponse, ConversationUpdate,
)
from chatkeep.models.message import Message, MessageCreate
from chatkeep.models.settings import (
    ProviderConfig, ProviderConfigRequest, ProviderConfigResponse, ProviderSelectRequest,
)

__all__ = [
    "User",
    "Conversation", "ConversationCreate", "ConversationMetadata",
    "ConversationResponse", "ConversationUpdate",
    "Message", "MessageCreate",
    "ProviderConfig", "ProviderConfigRequest", "ProviderConfigResponse",
    "ProviderSelectRequest",
]
