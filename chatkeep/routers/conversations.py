"""
Conversations router.
Handles CRUD operations for chat conversations.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from chatkeep.config import get_settings
from chatkeep.database import get_store
from chatkeep.models import ConversationCreate, ConversationResponse, ConversationUpdate, User
from chatkeep.orchestrator import ConversationOrchestrator
from chatkeep.routers.deps import get_current_user, get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


async def _owned(conversation_id: str, user: User):
    conversation = await get_store().get_conversation(conversation_id)
    if conversation is None or conversation.user_id != user.id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.post("", response_model=ConversationResponse)
async def create_conversation(
    data: ConversationCreate,
    current_user: User = Depends(get_current_user)
) -> ConversationResponse:
    """Create a new conversation."""
    conversation = await get_store().create_conversation(
        current_user.id, get_settings().app_scope, data.title
    )
    return ConversationResponse(**conversation.model_dump(), message_count=0)


@router.get("", response_model=List[ConversationResponse])
async def list_conversations(
    current_user: User = Depends(get_current_user)
) -> List[ConversationResponse]:
    """List the user's conversations, newest first."""
    store = get_store()
    conversations = await store.list_conversations(current_user.id, get_settings().app_scope)

    # One count per conversation; SQLite is local so each is sub-ms
    return [
        ConversationResponse(
            **conv.model_dump(),
            message_count=await store.count_messages(conv.id),
        )
        for conv in conversations
    ]


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user)
) -> ConversationResponse:
    """Get a specific conversation by ID."""
    conversation = await _owned(conversation_id, current_user)
    count = await get_store().count_messages(conversation_id)
    return ConversationResponse(**conversation.model_dump(), message_count=count)


@router.put("/{conversation_id}", response_model=ConversationResponse)
async def update_conversation(
    conversation_id: str,
    data: ConversationUpdate,
    current_user: User = Depends(get_current_user)
) -> ConversationResponse:
    """Rename a conversation."""
    await _owned(conversation_id, current_user)
    store = get_store()
    await store.rename_conversation(conversation_id, data.title)

    conversation = await _owned(conversation_id, current_user)
    count = await store.count_messages(conversation_id)
    return ConversationResponse(**conversation.model_dump(), message_count=count)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Delete a conversation and all its messages."""
    await _owned(conversation_id, current_user)

    orchestrator.forget(conversation_id)
    await get_store().delete_conversation(conversation_id)

    return {"message": "Conversation deleted"}
