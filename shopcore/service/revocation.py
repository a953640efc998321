from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from shopcore.logging import get_logger
from shopcore.service.errors import UpstreamError
from shopcore.service.tokens import TokenCodec, token_digest
from shopcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RevocationRegistry:
    """Blacklist of still-valid tokens, keyed by token digest.

    Each entry lives as long as the codec would still accept the token it
    blocks, clock leeway included, so the registry never holds entries for
    tokens that would fail verification anyway.
    """

    def __init__(
        self,
        codec: TokenCodec,
        cache: Optional[RedisCache] = None,
        *,
        fail_open: bool = True,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.cache = cache
        self.fail_open = fail_open
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._local: Dict[str, float] = {}
        self._local_lock = threading.Lock()

    async def revoke(self, token: str) -> bool:
        """Revoke ``token`` until the codec stops accepting it.

        Returns False without writing anything when the token is unsigned,
        malformed, or already expired.
        """
        exp = self.codec.peek_expiry(token)
        if exp is None:
            return False
        return await self.revoke_digest(token_digest(token), exp)

    async def revoke_digest(self, digest: str, expires_at: float) -> bool:
        until = float(expires_at) + self.codec.leeway_seconds
        ttl = math.ceil(until - self.clock())
        if ttl <= 0:
            return False
        if self.cache is None:
            with self._local_lock:
                self._purge_expired()
                self._local[digest] = until
        else:
            try:
                await asyncio.wait_for(
                    self.cache.revoke_token(digest, ttl), self.timeout_seconds
                )
            except (RedisError, asyncio.TimeoutError) as exc:
                logger.error("token_revoke_failed", error=str(exc))
                raise UpstreamError("revocation registry unavailable") from exc
        logger.info("token_revoked", ttl_seconds=ttl)
        return True

    async def is_revoked(self, token: str) -> bool:
        digest = token_digest(token)
        if self.cache is None:
            with self._local_lock:
                expires_at = self._local.get(digest)
                if expires_at is None:
                    return False
                if expires_at <= self.clock():
                    del self._local[digest]
                    return False
                return True
        try:
            return await asyncio.wait_for(
                self.cache.is_token_revoked(digest), self.timeout_seconds
            )
        except (RedisError, asyncio.TimeoutError) as exc:
            # Availability over security: with fail_open an unreachable
            # registry lets revoked-but-unexpired tokens through until it
            # recovers. REVOCATION_FAIL_OPEN=false rejects them instead.
            logger.warning(
                "revocation_check_failed",
                error=str(exc) or type(exc).__name__,
                fail_open=self.fail_open,
            )
            return not self.fail_open

    def _purge_expired(self) -> None:
        now = self.clock()
        for digest in [d for d, exp in self._local.items() if exp <= now]:
            del self._local[digest]
