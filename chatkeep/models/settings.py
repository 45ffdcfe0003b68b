"""
Provider settings model definitions.
One configuration record per user: the selected inference provider plus its
credential and endpoint override.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    """Provider configuration as returned by the store (credential decrypted)."""
    id: str
    user_id: str
    provider: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    updated_at: datetime
    # Providers with credentials kept for a later switch back
    retained_providers: List[str] = Field(default_factory=list)

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key or self.base_url)


class ProviderConfigRequest(BaseModel):
    """Request to save credentials for a provider."""
    provider: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None


class ProviderSelectRequest(BaseModel):
    """Request to switch the selected provider."""
    provider: Optional[str] = None


class ProviderConfigResponse(BaseModel):
    """Provider settings returned in API responses (masked API key)."""
    provider: Optional[str] = None
    api_key_set: bool = False
    api_key_masked: Optional[str] = None
    base_url: Optional[str] = None
    updated_at: Optional[datetime] = None
    available_providers: List[str] = Field(default_factory=list)
