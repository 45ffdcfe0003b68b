"""
OpenAI-compatible inference providers.

Every supported backend speaks the /chat/completions wire format, so the
request, SSE parsing and error mapping live here once. OpenAI and
OpenRouter are the hosted providers; the local ones subclass the same base.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chatkeep.config import Settings, get_settings
from chatkeep.errors import CredentialMissingError, StructuralError, TransportError
from chatkeep.llm.base import ChatMetadata, LLMProvider, LLMResponse, StreamChunk

logger = logging.getLogger(__name__)

CLASSIFY_SCHEMA: Dict[str, Any] = {
    "name": "chat_metadata",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "chat_title": {
                "type": "string",
                "description": "A concise title for the chat based on the user message",
            },
            "summary": {
                "type": "string",
                "description": "A brief summary of the chat topic",
            },
            "keywords": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Key topics or themes from the message",
            },
        },
        "required": ["chat_title", "summary", "keywords"],
        "additionalProperties": False,
    },
}


class OpenAICompatibleProvider(LLMProvider):
    """
    Provider for any endpoint implementing OpenAI's chat completions API.

    Subclasses set provider_name, settings_prefix (which Settings fields
    hold their default base URL and model) and requires_api_key.
    """

    provider_name = "openai-compatible"
    settings_prefix: Optional[str] = None

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        if self.settings_prefix:
            base_url = base_url or getattr(self.settings, f"{self.settings_prefix}_base_url")
            model = model or getattr(self.settings, f"{self.settings_prefix}_model")
        super().__init__(
            api_key=api_key,
            base_url=base_url.rstrip("/") if base_url else None,
            model=model,
            transport=transport,
        )

    @property
    def classify_model(self) -> Optional[str]:
        """Model used for metadata derivation."""
        return self.model

    def _get_headers(self) -> Dict[str, str]:
        """Build request headers; bearer auth only when a key is set."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.request_timeout_seconds,
            transport=self._transport,
        )

    def _require_credentials(self) -> None:
        """Raise before any network call when the provider cannot be reached."""
        if self.requires_api_key and not self.api_key:
            raise CredentialMissingError(f"{self.provider_name} requires an API key")
        if not self.base_url:
            raise CredentialMissingError(f"{self.provider_name} has no endpoint configured")

    def _build_payload(
        self,
        messages: List[Dict[str, str]],
        stream: bool,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.settings.temperature if temperature is None else temperature,
            "stream": stream,
        }
        max_tokens = max_tokens or self.settings.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a non-streaming request and return the decoded JSON body."""
        self._require_credentials()
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._get_headers(),
                    json=payload,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"{self.provider_name} returned HTTP {status}")
            raise TransportError(f"HTTP error! status: {status}", status_code=status) from e
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name} request failed: {e}")
            raise TransportError(f"Request to {self.provider_name} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise StructuralError("Response body is not valid JSON") from e

    @staticmethod
    def _extract_content(data: Any) -> str:
        """Pull choices[0].message.content out of a completion body."""
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise StructuralError("Invalid response format from API") from e
        if not isinstance(content, str):
            raise StructuralError("Invalid response format from API")
        return content

    async def generate(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a complete response."""
        payload = self._build_payload(messages, False, model, temperature, max_tokens)
        data = await self._post(payload)
        content = self._extract_content(data)

        choice = data["choices"][0]
        return LLMResponse(
            content=content,
            model=payload["model"] or "",
            provider=self.provider_name,
            usage=data.get("usage") or {},
            finish_reason=choice.get("finish_reason"),
        )

    async def stream(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> AsyncIterator[StreamChunk]:
        """Stream response chunks from the event-stream body.

        Frames that are not valid JSON, or whose delta content is not text,
        are logged and skipped; the stream carries on with the next frame.
        """
        self._require_credentials()
        payload = self._build_payload(messages, True, model, temperature, max_tokens)

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._get_headers(),
                    json=payload,
                ) as response:
                    response.raise_for_status()

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue

                        data_str = line[5:].strip()
                        if data_str == "[DONE]":
                            yield StreamChunk(content="", is_done=True)
                            return

                        try:
                            data = json.loads(data_str)
                            content = (data["choices"][0].get("delta") or {}).get("content")
                        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
                            logger.warning(f"Skipping malformed stream frame: {e}")
                            continue

                        if content and isinstance(content, str):
                            yield StreamChunk(content=content)
                        elif content:
                            logger.warning(f"Skipping stream frame with non-text content: {content!r}")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"{self.provider_name} stream returned HTTP {status}")
            raise TransportError(f"HTTP error! status: {status}", status_code=status) from e
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name} stream failed: {e}")
            raise TransportError(f"Stream from {self.provider_name} failed: {e}") from e

    async def classify(self, content: str) -> ChatMetadata:
        """Ask for schema-constrained metadata; fall back on any failure."""
        payload = self._build_payload(
            [{"role": "user", "content": f'Generate metadata for this chat message: "{content}"'}],
            False,
            model=self.classify_model,
        )
        payload["response_format"] = {"type": "json_schema", "json_schema": CLASSIFY_SCHEMA}

        try:
            data = await self._post(payload)
            parsed = json.loads(self._extract_content(data))
            return ChatMetadata(
                title=parsed["chat_title"],
                summary=parsed["summary"],
                keywords=[str(k) for k in parsed["keywords"]],
            )
        except Exception as e:
            logger.warning(f"Metadata derivation failed, using defaults: {e}")
            return ChatMetadata.fallback()


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI API provider."""

    provider_name = "openai"
    settings_prefix = "openai"
    requires_api_key = True


class OpenRouterProvider(OpenAICompatibleProvider):
    """
    OpenRouter provider.
    Sends the attribution headers OpenRouter uses to identify the calling app.
    """

    provider_name = "openrouter"
    settings_prefix = "openrouter"
    requires_api_key = True

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["HTTP-Referer"] = self.settings.openrouter_referer
        headers["X-Title"] = self.settings.openrouter_title
        return headers

    @property
    def classify_model(self) -> Optional[str]:
        return self.settings.classify_model or self.model
