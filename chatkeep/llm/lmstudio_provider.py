"""
LM Studio provider implementation.
Supports local models running via LM Studio's OpenAI-compatible API.
"""

from chatkeep.llm.openai_provider import OpenAICompatibleProvider


class LMStudioProvider(OpenAICompatibleProvider):
    """
    LM Studio provider for local models.
    No authentication; the endpoint defaults to LM Studio's port 1234.
    """

    provider_name = "lmstudio"
    settings_prefix = "lmstudio"
