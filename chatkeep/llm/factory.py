"""
Provider factory module.
Creates provider instances based on the user's configuration.
"""

import logging
from typing import Dict, List, Optional

from chatkeep.llm.base import LLMProvider
from chatkeep.llm.lmstudio_provider import LMStudioProvider
from chatkeep.llm.ollama_provider import OllamaProvider
from chatkeep.llm.openai_provider import OpenAIProvider, OpenRouterProvider

logger = logging.getLogger(__name__)

# ============================================================
# Provider Registry
# ============================================================
PROVIDERS: Dict[str, type] = {
    "openai": OpenAIProvider,
    "openrouter": OpenRouterProvider,
    "lmstudio": LMStudioProvider,
    "ollama": OllamaProvider,
}


def create_provider(
    provider_name: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    **kwargs
) -> Optional[LLMProvider]:
    """
    Create a provider instance.

    Args:
        provider_name: Name of the provider (openai, openrouter, lmstudio, ollama)
        api_key: API key for authentication
        base_url: Custom base URL for the API
        **kwargs: Passed through to the provider (model, transport, settings)

    Returns:
        LLMProvider instance or None if provider not found
    """
    provider_class = PROVIDERS.get((provider_name or "").lower())

    if not provider_class:
        logger.error(f"Unknown provider: {provider_name}")
        return None

    return provider_class(api_key=api_key, base_url=base_url, **kwargs)


def get_available_providers() -> List[str]:
    """Get list of all supported provider names."""
    return list(PROVIDERS.keys())
