"""Tests for the token revocation registry."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shopcore.service.errors import UpstreamError
from shopcore.service.revocation import RevocationRegistry
from shopcore.service.tokens import TokenCodec, token_digest


@pytest.fixture
def codec(clock):
    return TokenCodec(
        "revocation-test-secret",
        issuer="shopcore",
        audience="shop-clients",
        access_ttl=timedelta(minutes=15),
        clock=clock,
    )


@pytest.fixture
def registry(codec, clock):
    return RevocationRegistry(codec, clock=clock)


class TestLocalRegistry:
    async def test_revoked_token_reported_until_codec_rejects_it(self, registry, codec, clock):
        token = codec.issue_access_token({"sub": "acc-1"}).token

        assert await registry.revoke(token) is True
        assert await registry.is_revoked(token) is True

        # Past exp but inside the leeway the codec still accepts it
        clock.advance(15 * 60 + 10)
        codec.verify(token, expected_type="access")
        assert await registry.is_revoked(token) is True

        clock.advance(21)
        assert await registry.is_revoked(token) is False
        assert registry._local == {}

    async def test_other_tokens_unaffected(self, registry, codec):
        revoked = codec.issue_access_token({"sub": "acc-1"}).token
        other = codec.issue_access_token({"sub": "acc-1"}).token

        await registry.revoke(revoked)
        assert await registry.is_revoked(other) is False

    async def test_revoking_expired_token_is_noop(self, registry, codec, clock):
        token = codec.issue_access_token({"sub": "acc-1"}).token
        clock.advance(16 * 60)

        assert await registry.revoke(token) is False
        assert registry._local == {}

    async def test_revoking_garbage_is_noop(self, registry):
        assert await registry.revoke("not-a-token") is False

    async def test_revoke_digest_covers_leeway(self, registry, codec, clock):
        assert await registry.revoke_digest("abc", clock() + 60) is True
        assert registry._local["abc"] == clock() + 60 + codec.leeway_seconds


class TestCachedRegistry:
    @pytest.fixture
    def cache(self):
        cache = AsyncMock()
        cache.is_token_revoked.return_value = False
        return cache

    async def test_revoke_writes_ttl_to_cache(self, codec, cache, clock):
        registry = RevocationRegistry(codec, cache, clock=clock)
        issued = codec.issue_access_token({"sub": "acc-1"})

        await registry.revoke(issued.token)

        cache.revoke_token.assert_awaited_once_with(token_digest(issued.token), 900 + codec.leeway_seconds)

    async def test_fail_open_when_cache_unreachable(self, codec, cache):
        cache.is_token_revoked.side_effect = RedisConnectionError("down")
        registry = RevocationRegistry(codec, cache, fail_open=True)

        assert await registry.is_revoked("any-token") is False

    async def test_fail_closed_when_configured(self, codec, cache):
        cache.is_token_revoked.side_effect = RedisConnectionError("down")
        registry = RevocationRegistry(codec, cache, fail_open=False)

        assert await registry.is_revoked("any-token") is True

    async def test_slow_cache_counts_as_unreachable(self, codec, cache):
        async def _hang(digest):
            await asyncio.sleep(1)
            return True

        cache.is_token_revoked.side_effect = _hang
        registry = RevocationRegistry(codec, cache, fail_open=True, timeout_seconds=0.01)

        assert await registry.is_revoked("any-token") is False

    async def test_revoke_failure_raises_upstream(self, codec, cache, clock):
        cache.revoke_token.side_effect = RedisConnectionError("down")
        registry = RevocationRegistry(codec, cache, clock=clock)
        token = codec.issue_access_token({"sub": "acc-1"}).token

        with pytest.raises(UpstreamError):
            await registry.revoke(token)
