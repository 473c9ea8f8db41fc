"""Shared Redis connections for cache, rate limiting, queues and pub/sub."""

import asyncio
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from marketpulse.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class RedisStore:
    """
    Backing store adapter.

    Owns two clients: ``client`` for cache, counters, subscriptions and
    publishing, and ``queue_client`` for queue bookkeeping so that long
    queue scripts never sit in front of latency-sensitive reads. Pub/sub
    listeners get their own dedicated connection via ``pubsub()``.

    Clients are created lazily; nothing touches the network until the first
    command, so an unresolved host at boot does not crash the process.
    Reconnects use capped exponential backoff (base 50ms, cap 2000ms).
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        client: Optional[redis.Redis] = None,
        queue_client: Optional[redis.Redis] = None,
    ):
        """
        Initialize the store adapter.

        Args:
            config: Settings to read connection parameters from (defaults to global settings)
            client: Pre-built client (tests inject an in-process Redis here)
            queue_client: Pre-built queue client (defaults to ``client`` when injected)
        """
        self.config = config or default_settings
        self._client = client
        self._queue_client = queue_client or client
        self._owns_clients = client is None
        if self._owns_clients:
            # Fail fast on missing connection parameters
            self._connection = self.config.redis_connection_kwargs()
        else:
            self._connection = {}

    def _build_client(self) -> redis.Redis:
        """Create a new client with the configured retry policy."""
        retry = Retry(
            ExponentialBackoff(
                cap=self.config.redis_reconnect_cap_ms / 1000,
                base=self.config.redis_reconnect_base_ms / 1000,
            ),
            retries=self.config.redis_reconnect_retries,
        )
        common: dict[str, Any] = {
            "encoding": "utf-8",
            "decode_responses": True,
            "retry": retry,
            "retry_on_error": [RedisConnectionError, RedisTimeoutError],
            "health_check_interval": 30,
        }
        if "url" in self._connection:
            return redis.from_url(self._connection["url"], **common)
        return redis.Redis(
            host=self._connection["host"],
            port=self._connection["port"],
            password=self._connection["password"],
            **common,
        )

    @property
    def client(self) -> redis.Redis:
        """Get or create the shared client."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    @property
    def queue_client(self) -> redis.Redis:
        """Get or create the dedicated queue client."""
        if self._queue_client is None:
            self._queue_client = self._build_client()
        return self._queue_client

    def pubsub(self) -> PubSub:
        """Open a pub/sub handle on its own dedicated connection."""
        return self.client.pubsub()

    async def test_connection(self) -> bool:
        """Ping both clients; returns False instead of raising."""
        try:
            results = await asyncio.gather(
                self.client.ping(),
                self.queue_client.ping(),
            )
            return all(results)
        except RedisError as e:
            logger.error(f"Failed to ping Redis: {e}")
            return False

    async def close(self):
        """Close Redis connections."""
        clients = {id(c): c for c in (self._client, self._queue_client) if c is not None}
        try:
            for redis_client in clients.values():
                await redis_client.aclose()
            if clients:
                logger.info("Redis connections closed gracefully")
        except RedisError as e:
            logger.error(f"Error during Redis shutdown: {e}")
        finally:
            if self._owns_clients:
                self._client = None
                self._queue_client = None
