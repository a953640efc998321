from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from shopcore.logging import get_logger
from shopcore.service.errors import UpstreamError
from shopcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter:
    """Token-bucket limiter backed by Redis, with an in-process fallback."""

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.clock = clock
        # key -> (tokens, last refill, time the bucket is full again)
        self._local: Dict[str, Tuple[float, float, float]] = {}
        self._local_lock = threading.Lock()

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` from the bucket for ``key``.

        Returns:
            (allowed, remaining, reset_seconds)
        """
        if limit <= 0:
            return (True, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        if self.cache is not None:
            try:
                return await self.cache.check_rate_limit(
                    key, limit, window_seconds, return_remaining=True, cost=cost
                )
            except RedisError as exc:
                logger.error("rate_limit_backend_failed", key=key, error=str(exc))
                raise UpstreamError("rate limiter unavailable") from exc

        now = self.clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._local_lock:
            self._purge_full(now)
            tokens, last_ts, _ = self._local.get(key, (float(limit), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local[key] = (tokens, now, now + (float(limit) - tokens) / refill_rate)
            reset_seconds = (
                int((cost - tokens) / refill_rate) + 1 if not allowed and refill_rate > 0 else 0
            )
            remaining = int(tokens)
        return (allowed, remaining, reset_seconds)

    def _purge_full(self, now: float) -> None:
        # A refilled bucket behaves exactly like a missing one
        for key in [k for k, (_, _, full_at) in self._local.items() if full_at <= now]:
            del self._local[key]
