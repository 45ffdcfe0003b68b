"""
Shared router dependencies.
Resolves the signed-in user and the orchestrator, and maps chatkeep errors
onto HTTP status codes.
"""

import logging
from typing import NoReturn

from fastapi import Depends, HTTPException, Request, status

from chatkeep.auth import IdentityProvider
from chatkeep.errors import (
    ChatkeepError,
    ConversationNotFoundError,
    GenerationInProgressError,
    NotAuthenticatedError,
    PreconditionError,
    StorageError,
)
from chatkeep.models import User
from chatkeep.orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)


def get_identity(request: Request) -> IdentityProvider:
    return request.app.state.identity


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


async def get_current_user(identity: IdentityProvider = Depends(get_identity)) -> User:
    """FastAPI dependency: the signed-in user, or 401."""
    user = await identity.get_current_user()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not authenticated",
        )
    return user


def raise_http(error: ChatkeepError) -> NoReturn:
    """Translate a chatkeep error into an HTTPException."""
    if isinstance(error, NotAuthenticatedError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(error, ConversationNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, GenerationInProgressError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, PreconditionError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, StorageError):
        logger.error(f"Storage failure: {error}")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_502_BAD_GATEWAY
    raise HTTPException(status_code=code, detail=str(error)) from error
