"""
Configuration module for the chat client.
Loads environment variables and provides centralized config access.
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

# ============================================================
# Centralized Data Paths
# ============================================================
# All user data lives under <project>/data/ for easy backup/deletion.
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# SQLite conversation store
SQLITE_DB_PATH = DATA_DIR / "chatkeep.db"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, accurate, and engaging responses."
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ============================================================
    # Local Store
    # ============================================================
    # Empty means SQLITE_DB_PATH under the data directory.
    db_path: Optional[str] = None

    # Application-scope tag stamped on conversations and messages
    # created through the bundled API.
    app_scope: str = "neural_text"

    # ============================================================
    # Encryption for API Keys
    # ============================================================
    encryption_key: str = "your-32-byte-encryption-key-here"

    # ============================================================
    # Identity
    # ============================================================
    # Single local user served by LocalIdentityProvider.
    local_user_id: str = "local"
    # How long a looked-up current user is trusted before asking the
    # identity provider again.
    auth_cache_ttl_seconds: float = 300.0

    # ============================================================
    # LLM Provider Defaults
    # ============================================================
    # OpenAI
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"

    # OpenRouter
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "nvidia/llama-3.1-nemotron-70b-instruct:free"
    openrouter_referer: str = "http://localhost:5173"
    openrouter_title: str = "Pluto AI Platform"

    # LM Studio (local)
    lmstudio_base_url: str = "http://localhost:1234/v1"
    lmstudio_model: str = "deepseek-r1-distill-qwen-14b"

    # Ollama (local, OpenAI-compatible endpoint)
    ollama_base_url: str = "http://localhost:11434/v1"
    ollama_model: str = "llama3"

    # Model OpenRouter uses for title/summary/keyword derivation. Empty
    # means the chat model. Other providers always use their chat model.
    classify_model: Optional[str] = "google/learnlm-1.5-pro-experimental:free"

    # ============================================================
    # Generation
    # ============================================================
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.7
    max_tokens: Optional[int] = 1000
    request_timeout_seconds: float = 120.0

    # ============================================================
    # Server Configuration
    # ============================================================
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    # ============================================================
    # CORS Configuration
    # ============================================================
    # Comma-separated origins allowed to call the local API.
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse the comma-separated CORS origins."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def sqlite_path(self) -> Path:
        """Resolved path of the SQLite database file."""
        return Path(self.db_path) if self.db_path else SQLITE_DB_PATH


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid re-reading environment on every call.
    """
    return Settings()
