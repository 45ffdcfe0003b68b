"""
Ollama provider implementation.
Talks to Ollama through its OpenAI-compatible /v1 endpoint.
"""

from chatkeep.llm.openai_provider import OpenAICompatibleProvider


class OllamaProvider(OpenAICompatibleProvider):
    """Ollama provider for local models (default port 11434, no auth)."""

    provider_name = "ollama"
    settings_prefix = "ollama"
