from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for OTP challenges, rate limits and revoked tokens."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume so concurrent requests cannot overspend a bucket
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Delete the phone index only while it still points at this challenge
    _RELEASE_PHONE_INDEX_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._release_phone_index = self.client.register_script(
            self._RELEASE_PHONE_INDEX_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # -- rate limits ------------------------------------------------------

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # -- OTP challenges ---------------------------------------------------

    async def acquire_otp_cooldown(self, phone: str, seconds: int) -> Optional[int]:
        """Claim the cooldown window for ``phone``.

        Returns None when claimed, otherwise the seconds left on the
        existing window.
        """
        key = f"otp:cooldown:{phone}"
        if await self.client.set(key, "1", ex=seconds, nx=True):
            return None
        remaining = await self.client.ttl(key)
        return max(1, int(remaining)) if remaining and remaining > 0 else 1

    async def release_otp_cooldown(self, phone: str) -> None:
        await self.client.delete(f"otp:cooldown:{phone}")

    async def store_otp_challenge(
        self, challenge_id: str, phone: str, payload: str, ttl_seconds: int
    ) -> Optional[str]:
        """Persist a challenge and point the phone index at it.

        Returns the id of the challenge it replaced, if any.
        """
        pipe = self.client.pipeline()
        pipe.set(f"otp:phone:{phone}", challenge_id, ex=ttl_seconds, get=True)
        pipe.set(f"otp:challenge:{challenge_id}", payload, ex=ttl_seconds)
        previous, _ = await pipe.execute()
        if previous and previous != challenge_id:
            await self.client.delete(
                f"otp:challenge:{previous}", f"otp:attempts:{previous}"
            )
        return previous

    async def get_otp_challenge(self, challenge_id: str) -> Optional[str]:
        return await self.client.get(f"otp:challenge:{challenge_id}")

    async def get_otp_challenge_id(self, phone: str) -> Optional[str]:
        return await self.client.get(f"otp:phone:{phone}")

    async def record_otp_attempt(self, challenge_id: str, ttl_seconds: int) -> int:
        key = f"otp:attempts:{challenge_id}"
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, max(1, ttl_seconds))
        attempts, _ = await pipe.execute()
        return int(attempts)

    async def delete_otp_challenge(self, challenge_id: str, phone: str) -> bool:
        """Delete a challenge; True only for the caller that actually removed it."""
        removed = await self.client.delete(f"otp:challenge:{challenge_id}")
        await self.client.delete(f"otp:attempts:{challenge_id}")
        await self._release_phone_index(keys=[f"otp:phone:{phone}"], args=[challenge_id])
        return bool(removed)

    # -- revocation -------------------------------------------------------

    async def revoke_token(self, digest: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"revoked:{digest}", "1", ex=ttl_seconds)

    async def is_token_revoked(self, digest: str) -> bool:
        return bool(await self.client.exists(f"revoked:{digest}"))
