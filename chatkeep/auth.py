"""
Identity seam.

The chat client does not own users. An IdentityProvider reports who is
signed in and announces sign-in/sign-out events; CachedIdentity wraps one
so repeated lookups within a short window do not hit the provider again.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from chatkeep.config import get_settings
from chatkeep.errors import NotAuthenticatedError
from chatkeep.models import User

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

# Receives (event, user); user is None for SIGNED_OUT.
AuthCallback = Callable[[str, Optional[User]], None]


class IdentityProvider(ABC):
    """Source of the current user plus auth-change notifications."""

    def __init__(self):
        self._listeners: List[AuthCallback] = []

    @abstractmethod
    async def get_current_user(self) -> Optional[User]:
        """The signed-in user, or None."""

    @abstractmethod
    async def sign_out(self) -> None:
        """End the current session."""

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        """Subscribe to auth events. Returns a function that unsubscribes."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, user: Optional[User]) -> None:
        for listener in list(self._listeners):
            listener(event, user)

    async def require_user(self) -> User:
        """Return the current user or raise NotAuthenticatedError."""
        user = await self.get_current_user()
        if user is None:
            raise NotAuthenticatedError("User not authenticated")
        return user


class LocalIdentityProvider(IdentityProvider):
    """
    Single-user provider for a local install.
    Starts signed in as the configured local user.
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        signed_in: bool = True,
    ):
        super().__init__()
        self._user = User(id=user_id or get_settings().local_user_id, email=email, name=name)
        self._signed_in = signed_in

    async def get_current_user(self) -> Optional[User]:
        return self._user if self._signed_in else None

    async def sign_in(self) -> User:
        self._signed_in = True
        logger.info(f"User {self._user.id} signed in")
        self._emit(SIGNED_IN, self._user)
        return self._user

    async def sign_out(self) -> None:
        self._signed_in = False
        logger.info(f"User {self._user.id} signed out")
        self._emit(SIGNED_OUT, None)


class CachedIdentity(IdentityProvider):
    """
    Caches the wrapped provider's current user for ttl_seconds.

    A SIGNED_IN event refreshes the cache with the announced user; a
    SIGNED_OUT event or sign_out() drops it.

    Args:
        provider: The identity provider to wrap.
        ttl_seconds: Cache lifetime; defaults to auth_cache_ttl_seconds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._provider = provider
        self._ttl = get_settings().auth_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cached: Optional[User] = None
        self._cached_at: Optional[float] = None
        self._unsubscribe = provider.on_auth_change(self._handle_auth_change)

    def _handle_auth_change(self, event: str, user: Optional[User]) -> None:
        if event == SIGNED_IN and user is not None:
            self._store(user)
        elif event == SIGNED_OUT:
            self.invalidate()
        self._emit(event, user)

    def _store(self, user: User) -> None:
        self._cached = user
        self._cached_at = self._clock()

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = None

    async def get_current_user(self) -> Optional[User]:
        if self._cached is not None and self._cached_at is not None:
            if self._clock() - self._cached_at < self._ttl:
                return self._cached

        user = await self._provider.get_current_user()
        if user is None:
            self.invalidate()
        else:
            self._store(user)
        return user

    async def sign_out(self) -> None:
        self.invalidate()
        await self._provider.sign_out()

    def close(self) -> None:
        """Stop listening to the wrapped provider."""
        self._unsubscribe()
