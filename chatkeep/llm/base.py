"""
Abstract base class for inference providers.
All providers must implement this interface.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field

# Called once per streamed delta; may be a plain function or a coroutine.
ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]

FALLBACK_TITLE = "New Chat"
FALLBACK_SUMMARY = "Chat started"


@dataclass
class StreamChunk:
    """A single chunk from a streaming response."""
    content: str
    is_done: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMResponse(BaseModel):
    """Complete response from a provider."""
    content: str
    model: str
    provider: str
    usage: Dict[str, Any] = Field(default_factory=dict)
    finish_reason: Optional[str] = None


class ChatMetadata(BaseModel):
    """Title, summary and keywords derived from a conversation's first message."""
    title: str = FALLBACK_TITLE
    summary: str = FALLBACK_SUMMARY
    keywords: List[str] = Field(default_factory=list)

    @classmethod
    def fallback(cls) -> "ChatMetadata":
        return cls(title=FALLBACK_TITLE, summary=FALLBACK_SUMMARY, keywords=[])


class LLMProvider(ABC):
    """
    Abstract base class for inference providers.

    Each provider implementation must:
    1. Implement generate() for single, non-streaming completions
    2. Implement stream() for SSE streaming completions
    3. Implement classify() for metadata derivation

    complete() and complete_streaming() are built on top of those and take
    a transcript of {"role", "content"} dicts.
    """

    provider_name: str = "base"
    requires_api_key: bool = False

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize provider with credentials.

        Args:
            api_key: API key for authentication (if required)
            base_url: Base URL for API requests
            model: Chat model; the provider's configured default when omitted
            transport: httpx transport override, used by tests
        """
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self._transport = transport

    @abstractmethod
    async def generate(self, messages: List[Dict[str, str]], **kwargs) -> LLMResponse:
        """
        Generate a complete response (non-streaming).

        Args:
            messages: List of message dicts with 'role' and 'content'
            **kwargs: Provider-specific options (model, temperature, max_tokens)

        Returns:
            LLMResponse with complete generated text
        """

    @abstractmethod
    def stream(self, messages: List[Dict[str, str]], **kwargs) -> AsyncIterator[StreamChunk]:
        """
        Stream response chunks via SSE.

        The returned async generator can be closed early with aclose(),
        which releases the underlying HTTP response.

        Yields:
            StreamChunk objects with partial content
        """

    @abstractmethod
    async def classify(self, content: str) -> ChatMetadata:
        """
        Derive title, summary and keywords for a first message.
        Never raises; failures produce ChatMetadata.fallback().
        """

    async def complete(self, transcript: List[Dict[str, str]]) -> str:
        """Send the transcript and return the assistant text."""
        response = await self.generate(transcript)
        return response.content

    async def complete_streaming(
        self,
        transcript: List[Dict[str, str]],
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        """
        Stream the transcript, reporting each delta to on_chunk in arrival
        order, and return the full text once the stream has ended.

        A callback that returns an awaitable is awaited before the next
        delta is read, so callbacks never overlap.
        """
        parts: List[str] = []
        chunks = self.stream(transcript)
        try:
            async for chunk in chunks:
                if chunk.is_done:
                    break
                if not chunk.content:
                    continue
                parts.append(chunk.content)
                if on_chunk is not None:
                    result = on_chunk(chunk.content)
                    if inspect.isawaitable(result):
                        await result
        finally:
            await chunks.aclose()
        return "".join(parts)
