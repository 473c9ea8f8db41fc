"""Fixed-window rate limiting backed by Redis counters."""

import logging

from redis.exceptions import RedisError

from marketpulse import metrics
from marketpulse.infra.redis_store import RedisStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"


class RateLimiter:
    """
    Fixed-window counter shared by every process using the same Redis.

    The window starts with the first hit and resets when its key expires.
    Because windows are discrete, up to ``2 * limit`` requests can pass
    around a window boundary.
    """

    def __init__(self, store: RedisStore, prefix: str = KEY_PREFIX):
        self.store = store
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def hit(self, key: str, window_seconds: int) -> int:
        """
        Count one request in the current window.

        The key is created with its TTL (``SET NX EX``) and incremented in a
        single MULTI block, so the first writer of a window always sets the
        expiry and a crash can never leave a counter without one.

        Args:
            key: Limiter key (e.g. 'finnhub:api')
            window_seconds: Window length

        Returns:
            Post-increment count for the current window
        """
        redis_key = self._key(key)
        async with self.store.client.pipeline(transaction=True) as pipe:
            pipe.set(redis_key, 0, ex=window_seconds, nx=True)
            pipe.incr(redis_key)
            _, count = await pipe.execute()
        return int(count)

    async def is_rate_limited(self, key: str, limit: int, window_seconds: int) -> bool:
        """
        Check and count a request against a fixed-window limit.

        Args:
            key: Limiter key
            limit: Maximum requests allowed per window
            window_seconds: Window length

        Returns:
            True iff this request exceeds the limit. Store errors return False.
        """
        try:
            count = await self.hit(key, window_seconds)
        except RedisError as e:
            logger.warning(f"Rate limiter unavailable for {key}, allowing request: {e}")
            return False

        if count > limit:
            metrics.record_rate_limited(key)
            logger.debug(f"Rate limited {key}: {count}/{limit} in {window_seconds}s window")
            return True
        return False

    async def remaining(self, key: str, limit: int) -> int:
        """Return how many requests are left in the current window."""
        try:
            value = await self.store.client.get(self._key(key))
        except RedisError as e:
            logger.warning(f"Could not read rate limit counter for {key}: {e}")
            return limit
        used = int(value) if value else 0
        return max(0, limit - used)

    async def reset(self, key: str) -> None:
        """Drop the counter for a key (admin/testing use)."""
        await self.store.client.delete(self._key(key))
