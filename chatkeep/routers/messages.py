"""
Messages router.
Sends messages (streamed as Server-Sent Events or returned whole), lists
a conversation's messages and regenerates the last answer.
"""

import asyncio
import json
import logging
from typing import List, Set

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from chatkeep.database import get_store
from chatkeep.errors import ChatkeepError
from chatkeep.models import Message, MessageCreate, User
from chatkeep.orchestrator import ConversationOrchestrator, SessionState
from chatkeep.routers.deps import get_current_user, get_orchestrator, raise_http

logger = logging.getLogger(__name__)
router = APIRouter()

# Keep references so stream consumers are not garbage-collected
_background_tasks: Set[asyncio.Task] = set()


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def _check_can_send(
    conversation_id: str,
    user: User,
    orchestrator: ConversationOrchestrator,
) -> None:
    """Reject with an HTTP error before a streaming response is opened."""
    store = get_store()
    conversation = await store.get_conversation(conversation_id)
    if conversation is None or conversation.user_id != user.id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if orchestrator.state(conversation_id) is not SessionState.IDLE:
        raise HTTPException(status_code=409, detail="A response is already being generated")
    config = await store.get_provider_config(user.id)
    if config is None or not config.provider:
        raise HTTPException(status_code=400, detail="No inference provider selected")


@router.post("")
async def send_message(
    data: MessageCreate,
    current_user: User = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """
    Send a message and get the assistant's reply.

    With stream=True the reply arrives as SSE frames:
    data: {"content": "..."} per chunk, then
    data: {"done": true, "message": {...}} once it is saved.
    """
    if not data.content.strip():
        raise HTTPException(status_code=400, detail="Message text must not be empty")

    if not data.stream:
        try:
            reply = await orchestrator.submit(data.conversation_id, data.content, streaming=False)
        except ChatkeepError as e:
            raise_http(e)
        if reply is None:
            raise HTTPException(status_code=409, detail="Generation was abandoned")
        return reply

    await _check_can_send(data.conversation_id, current_user, orchestrator)

    # The generation runs as its own task feeding a queue, so a client that
    # disconnects mid-stream does not cancel it; the reply is still saved.
    stream_queue: asyncio.Queue = asyncio.Queue()

    async def _consume():
        try:
            reply = await orchestrator.submit(
                data.conversation_id,
                data.content,
                streaming=True,
                on_chunk=lambda delta: stream_queue.put_nowait(_sse({"content": delta})),
            )
            if reply is None:
                await stream_queue.put(_sse({"done": True, "abandoned": True}))
            else:
                await stream_queue.put(_sse({"done": True, "message": reply.model_dump()}))
        except ChatkeepError as e:
            logger.warning(f"Message for {data.conversation_id} rejected: {e}")
            await stream_queue.put(_sse({"error": str(e)}))
        except Exception:
            logger.exception(f"Streaming reply for {data.conversation_id} failed")
            await stream_queue.put(_sse({"error": "Internal error"}))
        finally:
            await stream_queue.put(None)

    consumer_task = asyncio.create_task(_consume())
    _background_tasks.add(consumer_task)
    consumer_task.add_done_callback(_background_tasks.discard)

    async def generate_stream():
        try:
            while True:
                item = await stream_queue.get()
                if item is None:
                    break
                yield item
        except asyncio.CancelledError:
            logger.info(
                f"Client disconnected mid-stream for conversation "
                f"{data.conversation_id}; generation continues"
            )
            raise

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive"
        }
    )


@router.get("/{conversation_id}", response_model=List[Message])
async def get_messages(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> List[Message]:
    """Get the messages of a conversation, oldest first."""
    conversation = await get_store().get_conversation(conversation_id)
    if conversation is None or conversation.user_id != current_user.id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return await orchestrator.open(conversation_id)


@router.post("/regenerate")
async def regenerate_response(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Regenerate the last assistant response in place."""
    try:
        message = await orchestrator.regenerate(conversation_id, streaming=False)
    except ChatkeepError as e:
        raise_http(e)
    if message is None:
        raise HTTPException(status_code=409, detail="Regeneration was abandoned")
    return message
