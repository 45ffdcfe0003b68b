"""Tests for the identity seam and its user cache."""

from unittest.mock import AsyncMock

import pytest

from chatkeep.auth import SIGNED_IN, SIGNED_OUT, CachedIdentity, LocalIdentityProvider
from chatkeep.errors import NotAuthenticatedError
from chatkeep.models import User


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local():
    return LocalIdentityProvider("u1")


class TestLocalIdentityProvider:
    """Single local user."""

    async def test_signed_in_by_default(self, local):
        assert (await local.get_current_user()).id == "u1"

    async def test_sign_out_emits_event(self, local):
        events = []
        local.on_auth_change(lambda event, user: events.append((event, user)))

        await local.sign_out()

        assert events == [(SIGNED_OUT, None)]
        assert await local.get_current_user() is None

    async def test_require_user_raises_when_signed_out(self, local):
        await local.sign_out()

        with pytest.raises(NotAuthenticatedError):
            await local.require_user()

    async def test_unsubscribe(self, local):
        events = []
        unsubscribe = local.on_auth_change(lambda event, user: events.append(event))
        unsubscribe()

        await local.sign_out()
        assert events == []


class TestCachedIdentity:
    """Time-bounded current-user cache."""

    async def test_lookups_within_ttl_hit_cache(self, local, clock):
        local.get_current_user = AsyncMock(return_value=User(id="u1"))
        cached = CachedIdentity(local, ttl_seconds=300, clock=clock)

        await cached.get_current_user()
        clock.now += 299
        await cached.get_current_user()

        assert local.get_current_user.await_count == 1

    async def test_expired_cache_asks_again(self, local, clock):
        local.get_current_user = AsyncMock(return_value=User(id="u1"))
        cached = CachedIdentity(local, ttl_seconds=300, clock=clock)

        await cached.get_current_user()
        clock.now += 300
        await cached.get_current_user()

        assert local.get_current_user.await_count == 2

    async def test_sign_out_invalidates(self, local, clock):
        cached = CachedIdentity(local, ttl_seconds=300, clock=clock)
        assert (await cached.get_current_user()).id == "u1"

        await cached.sign_out()

        assert await cached.get_current_user() is None

    async def test_signed_out_event_invalidates(self, local, clock):
        cached = CachedIdentity(local, ttl_seconds=300, clock=clock)
        await cached.get_current_user()

        await local.sign_out()

        assert await cached.get_current_user() is None

    async def test_signed_in_event_refreshes(self, local, clock):
        await local.sign_out()
        cached = CachedIdentity(local, ttl_seconds=300, clock=clock)
        assert await cached.get_current_user() is None

        events = []
        cached.on_auth_change(lambda event, user: events.append(event))
        local.get_current_user = AsyncMock(return_value=None)
        await local.sign_in()

        # Served from the event, not the (stubbed) provider
        assert (await cached.get_current_user()).id == "u1"
        assert events == [SIGNED_IN]

    async def test_default_ttl_from_settings(self, local):
        cached = CachedIdentity(local)
        assert cached._ttl == 300.0
