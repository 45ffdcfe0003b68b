"""
Inference providers package.
Unified interface over OpenAI-compatible chat completion backends.
"""

from chatkeep.llm.base import ChatMetadata, LLMProvider, LLMResponse, StreamChunk
from chatkeep.llm.factory import create_provider, get_available_providers

__all__ = [
    "ChatMetadata",
    "LLMProvider",
    "LLMResponse",
    "StreamChunk",
    "create_provider",
    "get_available_providers",
]
