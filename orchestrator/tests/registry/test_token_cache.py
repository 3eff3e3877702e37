"""
Unit tests for the registry token cache.

Tests single-flight refreshes, freshness with clock skew, and that a
cancelled caller does not cancel the shared refresh.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ocf.schemas import RegistryToken
from ocf.services.registry.token_cache import TokenCache


def make_token(password="secret", expires_in=timedelta(hours=12)):
    return RegistryToken(
        username="AWS",
        password=password,
        expires_at=datetime.now(timezone.utc) + expires_in,
    )


class SlowFetch:
    """Token source that blocks until released."""

    def __init__(self):
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        return make_token(password=f"secret-{self.calls}")


@pytest.mark.unit
class TestTokenCache:
    """Test TokenCache."""

    @pytest.mark.asyncio
    async def test_token_reused_while_fresh(self):
        fetch = SlowFetch()
        fetch.release.set()
        cache = TokenCache(fetch, skew_seconds=300)

        first = await cache.get()
        second = await cache.get()

        assert first is second
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_token_near_expiry_is_refreshed(self):
        tokens = [make_token(expires_in=timedelta(seconds=60)), make_token(password="new")]

        async def fetch():
            return tokens.pop(0)

        cache = TokenCache(fetch, skew_seconds=300)
        await cache.get()
        token = await cache.get()

        assert token.password.get_secret_value() == "new"
        assert cache.refresh_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        fetch = SlowFetch()
        cache = TokenCache(fetch)

        callers = [asyncio.create_task(cache.get()) for _ in range(10)]
        await asyncio.sleep(0)
        fetch.release.set()
        tokens = await asyncio.gather(*callers)

        assert fetch.calls == 1
        assert all(t is tokens[0] for t in tokens)

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(self):
        fetch = SlowFetch()
        cache = TokenCache(fetch)

        cancelled = asyncio.create_task(cache.get())
        survivor = asyncio.create_task(cache.get())
        await asyncio.sleep(0)

        cancelled.cancel()
        await asyncio.sleep(0)
        fetch.release.set()

        token = await survivor
        assert token.password.get_secret_value() == "secret-1"
        assert fetch.calls == 1
        assert cancelled.cancelled()

    @pytest.mark.asyncio
    async def test_refresh_of_already_replaced_token(self):
        """A second rejection of the same stale token reuses the first refresh."""
        fetch = SlowFetch()
        fetch.release.set()
        cache = TokenCache(fetch)

        stale = await cache.get()
        fresh = await cache.refresh(stale=stale)
        again = await cache.refresh(stale=stale)

        assert fresh is not stale
        assert again is fresh
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_cached(self):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("registry down")
            return make_token()

        cache = TokenCache(fetch)

        with pytest.raises(ConnectionError):
            await cache.get()
        assert cache.token is None

        token = await cache.get()
        assert token is cache.token
        assert calls == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
