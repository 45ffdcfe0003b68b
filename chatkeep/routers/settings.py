"""
Settings router.
Handles the user's inference provider selection and credentials.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from chatkeep.database import get_store
from chatkeep.llm.factory import get_available_providers
from chatkeep.models import (
    ProviderConfig, ProviderConfigRequest, ProviderConfigResponse, ProviderSelectRequest, User,
)
from chatkeep.routers.deps import get_current_user
from chatkeep.utils.encryption import mask_api_key
from chatkeep.utils.validators import normalize_base_url, validate_base_url

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_response(config: Optional[ProviderConfig] = None) -> ProviderConfigResponse:
    """Build the API view of a config; the key itself never leaves the server."""
    if config is None:
        return ProviderConfigResponse(available_providers=get_available_providers())
    return ProviderConfigResponse(
        provider=config.provider,
        api_key_set=bool(config.api_key),
        api_key_masked=mask_api_key(config.api_key) or None,
        base_url=config.base_url,
        updated_at=config.updated_at,
        available_providers=get_available_providers(),
    )


def _check_provider(provider: str) -> None:
    if provider not in get_available_providers():
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}")


@router.get("/provider", response_model=ProviderConfigResponse)
async def get_provider_settings(
    current_user: User = Depends(get_current_user)
) -> ProviderConfigResponse:
    """Get the user's provider configuration (API key masked)."""
    config = await get_store().get_provider_config(current_user.id)
    return _to_response(config)


@router.put("/provider", response_model=ProviderConfigResponse)
async def update_provider_settings(
    data: ProviderConfigRequest,
    current_user: User = Depends(get_current_user)
) -> ProviderConfigResponse:
    """Save credentials for a provider and select it."""
    _check_provider(data.provider)

    base_url = normalize_base_url(data.base_url) if data.base_url else None
    is_valid, error = validate_base_url(base_url)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error)

    config = await get_store().save_provider_config(
        current_user.id, data.provider, data.api_key, base_url
    )
    logger.info(f"Saved {data.provider} settings for user {current_user.id}")
    return _to_response(config)


@router.post("/provider/select", response_model=ProviderConfigResponse)
async def select_provider(
    data: ProviderSelectRequest,
    current_user: User = Depends(get_current_user)
) -> ProviderConfigResponse:
    """Switch provider, restoring credentials saved for it earlier."""
    if data.provider is not None:
        _check_provider(data.provider)
    config = await get_store().select_provider(current_user.id, data.provider)
    return _to_response(config)


@router.delete("/provider/credential", response_model=ProviderConfigResponse)
async def clear_provider_credential(
    current_user: User = Depends(get_current_user)
) -> ProviderConfigResponse:
    """Forget the current provider's API key and endpoint."""
    config = await get_store().clear_provider_credential(current_user.id)
    return _to_response(config)
