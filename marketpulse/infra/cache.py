"""Tiered TTL cache with read-through fetch and pattern invalidation.

Expiry is delegated entirely to Redis (``SETEX``), so a read can never
return a value whose TTL has elapsed.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar

from redis.exceptions import RedisError

from marketpulse import metrics
from marketpulse.config import settings
from marketpulse.infra.redis_store import RedisStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheTTL:
    """TTL tiers in seconds."""

    # Long (24 hours) - slow-changing metadata
    TICKER_METADATA = 24 * 60 * 60
    COMPANY_INFO = 24 * 60 * 60
    SEC_FILINGS = 24 * 60 * 60
    EDGAR_CIK_MAP = 24 * 60 * 60

    # Medium (1 hour) - derived aggregates
    MARKET_PROFILE = 60 * 60
    VOLUME_STATS = 60 * 60
    PRICE_STATS = 60 * 60
    NARRATIVE_SUMMARY = 60 * 60
    ALERT_STATISTICS = 60 * 60

    # Short (5-15 minutes) - near-real-time
    LATEST_PRICE = 5 * 60
    LATEST_NEWS = 10 * 60
    VOLUME_SPIKES = 5 * 60
    CURRENT_ALERTS = 5 * 60

    # Very short (1 minute) - highly volatile
    REAL_TIME_MARKET_DATA = 60


class CacheKeys:
    """Human-readable key builders, safe for ``prefix:*`` invalidation."""

    @staticmethod
    def ticker(symbol: str) -> str:
        return f"ticker:{symbol.upper()}"

    @staticmethod
    def market_data(symbol: str) -> str:
        return f"market:{symbol.upper()}"

    @staticmethod
    def volume_spike(symbol: str) -> str:
        return f"spike:{symbol.upper()}"

    @staticmethod
    def narrative(symbol: str) -> str:
        return f"narrative:{symbol.upper()}"

    @staticmethod
    def volume_stats(symbol: str) -> str:
        return f"stats:volume:{symbol.upper()}"

    @staticmethod
    def price_stats(symbol: str) -> str:
        return f"stats:price:{symbol.upper()}"

    @staticmethod
    def sec_filings(symbol: str) -> str:
        return f"filings:{symbol.upper()}"

    @staticmethod
    def news(symbol: str) -> str:
        return f"news:{symbol.upper()}"

    @staticmethod
    def latest_price(symbol: str) -> str:
        return f"price:{symbol.upper()}"

    @staticmethod
    def user_alerts(user_id: str) -> str:
        return f"user:alerts:{user_id}"

    @staticmethod
    def watchlist(user_id: str) -> str:
        return f"watchlist:{user_id}"

    EDGAR_CIK_MAP = "edgar:cik-map"


def _serialize(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _deserialize(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class CacheService:
    """
    Redis cache service.

    Infrastructure errors degrade to a cache miss (reads) or a no-op
    (writes) and are logged; only errors raised by a caller's fetcher
    propagate.
    """

    def __init__(self, store: RedisStore, invalidation_channel: Optional[str] = None):
        self.store = store
        self.invalidation_channel = invalidation_channel or settings.cache_invalidation_channel

    @property
    def client(self):
        return self.store.client

    async def get(self, key: str) -> Any:
        """Get a cached value, or None on miss or store error."""
        try:
            cached = await self.client.get(key)
        except RedisError as e:
            logger.error(f"Cache GET error for {key}: {e}")
            return None
        if cached is None:
            return None
        return _deserialize(cached)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Set a value with a TTL in seconds."""
        try:
            await self.client.setex(key, ttl, _serialize(value))
        except RedisError as e:
            logger.error(f"Cache SET error for {key}: {e}")

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: int,
    ) -> T:
        """
        Cache-first read.

        Args:
            key: Cache key
            fetcher: Coroutine factory called on a miss
            ttl: TTL applied when storing the fetched value

        Returns:
            Cached or freshly fetched value (None results are not cached)
        """
        cached = await self.get(key)
        if cached is not None:
            metrics.record_cache_lookup(hit=True)
            logger.debug(f"Cache HIT: {key}")
            return cached

        metrics.record_cache_lookup(hit=False)
        logger.debug(f"Cache MISS: {key}")
        data = await fetcher()

        if data is not None:
            await self.set(key, data, ttl)
        return data

    async def mget(self, keys: list[str]) -> dict[str, Any]:
        """Batch get; missing keys map to None."""
        if not keys:
            return {}
        try:
            values = await self.client.mget(keys)
        except RedisError as e:
            logger.error(f"Cache MGET error: {e}")
            return {key: None for key in keys}
        return {
            key: (_deserialize(value) if value is not None else None)
            for key, value in zip(keys, values)
        }

    async def mset(self, entries: Mapping[str, tuple[Any, int]]) -> None:
        """Batch set via a pipeline; ``entries`` maps key -> (value, ttl)."""
        if not entries:
            return
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for key, (value, ttl) in entries.items():
                    pipe.setex(key, ttl, _serialize(value))
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Cache MSET error: {e}")

    async def delete(self, keys: str | Iterable[str]) -> None:
        """Delete one or more keys."""
        key_list = [keys] if isinstance(keys, str) else list(keys)
        if not key_list:
            return
        try:
            await self.client.delete(*key_list)
        except RedisError as e:
            logger.error(f"Cache DELETE error: {e}")

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        Uses SCAN rather than KEYS so large keyspaces do not block Redis.

        Returns:
            Number of keys deleted
        """
        deleted = 0
        batch: list[str] = []
        try:
            async for key in self.client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
        except RedisError as e:
            logger.error(f"Cache DELETE PATTERN error for {pattern}: {e}")
        return deleted

    async def invalidate_ticker(self, symbol: str, broadcast: bool = True) -> int:
        """Clear every ``*:{SYMBOL}`` entry and announce it to other processes."""
        pattern = f"*:{symbol.upper()}"
        deleted = await self.delete_pattern(pattern)
        logger.info(f"Ticker cache invalidated: {symbol.upper()} ({deleted} keys)")
        if broadcast:
            await self.publish_invalidation({"scope": "ticker", "pattern": pattern})
        return deleted

    async def invalidate_user(self, user_id: str, broadcast: bool = True) -> int:
        """Clear every ``user:*:{user_id}`` entry."""
        pattern = f"user:*:{user_id}"
        deleted = await self.delete_pattern(pattern)
        logger.info(f"User cache invalidated: {user_id} ({deleted} keys)")
        if broadcast:
            await self.publish_invalidation({"scope": "user", "pattern": pattern})
        return deleted

    async def increment(self, key: str, ttl: Optional[int] = None) -> Optional[int]:
        """Increment a counter; the first increment sets the TTL."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                if ttl:
                    pipe.set(key, 0, ex=ttl, nx=True)
                pipe.incr(key)
                results = await pipe.execute()
            return int(results[-1])
        except RedisError as e:
            logger.error(f"Cache INCREMENT error for {key}: {e}")
            return None

    async def set_if_not_exists(self, key: str, value: str, ttl: int) -> bool:
        """SET NX EX; useful as a short-lived lock."""
        try:
            return bool(await self.client.set(key, value, ex=ttl, nx=True))
        except RedisError as e:
            logger.error(f"Cache SET NX error for {key}: {e}")
            return False

    async def get_ttl(self, key: str) -> int:
        """Remaining TTL in seconds (-2 missing, -1 no expiry or error)."""
        try:
            return await self.client.ttl(key)
        except RedisError as e:
            logger.error(f"Cache TTL error for {key}: {e}")
            return -1

    async def publish_invalidation(self, message: dict[str, Any]) -> None:
        """Broadcast an invalidation event on the invalidation channel."""
        try:
            await self.client.publish(self.invalidation_channel, json.dumps(message))
        except RedisError as e:
            logger.error(f"Error publishing cache invalidation: {e}")

    def listen_for_invalidation(
        self,
        callback: Callable[[dict[str, Any]], Awaitable[None]],
        poll_timeout: float = 1.0,
    ) -> asyncio.Task:
        """
        Start a listener task that forwards invalidation events to ``callback``.

        The task owns a dedicated pub/sub connection and releases it when
        cancelled.
        """

        async def _listen():
            pubsub = self.store.pubsub()
            await pubsub.subscribe(self.invalidation_channel)
            try:
                while True:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=poll_timeout
                    )
                    if message is None:
                        continue
                    try:
                        await callback(json.loads(message["data"]))
                    except (json.JSONDecodeError, TypeError):
                        logger.warning(f"Ignoring malformed invalidation message: {message['data']!r}")
            finally:
                await pubsub.unsubscribe(self.invalidation_channel)
                await pubsub.aclose()

        return asyncio.create_task(_listen(), name="cache-invalidation-listener")

    async def get_stats(self) -> dict[str, Any]:
        """Key count and memory usage (memory is None when INFO is unavailable)."""
        try:
            db_size = await self.client.dbsize()
        except RedisError as e:
            logger.error(f"Error getting cache stats: {e}")
            return {}

        used_memory = None
        try:
            info = await self.client.info("memory")
            used_memory = info.get("used_memory_human") or info.get("used_memory")
        except RedisError as e:
            logger.warning(f"Cache memory stats unavailable: {e}")

        return {
            "used_memory": used_memory,
            "keys": db_size,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
