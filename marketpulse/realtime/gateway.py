"""Live connection gateway: per-user channel listener plus subscribe protocol."""

import asyncio
import json
import logging
from typing import AsyncIterator, Optional, Protocol
from uuid import uuid4

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from marketpulse import metrics
from marketpulse.config import Settings, settings as default_settings
from marketpulse.infra.redis_store import RedisStore
from marketpulse.realtime.distribution import user_channel
from marketpulse.realtime.notifications import NotificationInbox
from marketpulse.realtime.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class LiveSocket(Protocol):
    """The slice of a bidirectional socket the gateway needs."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    def iter_text(self) -> AsyncIterator[str]: ...


class FanoutGateway:
    """
    Serves live connections.

    Each connection gets a dedicated pub/sub connection subscribed to its
    user's channel; a listener task forwards every message to the socket
    while it stays open. Client messages manage topic subscriptions in the
    shared registry. Delivery is at most once per live connection.
    """

    def __init__(
        self,
        store: RedisStore,
        registry: SubscriptionRegistry,
        inbox: NotificationInbox,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry
        self.inbox = inbox
        self.config = config or default_settings
        self.poll_timeout = 1.0
        self._connections: dict[str, str] = {}

    @property
    def connection_count(self) -> int:
        """Live connections served by this process."""
        return len(self._connections)

    async def serve(
        self,
        socket: LiveSocket,
        user_id: str,
        connection_id: Optional[str] = None,
    ) -> None:
        """
        Run one connection until the client goes away.

        Args:
            socket: The accepted socket
            user_id: Authenticated owner of the connection
            connection_id: Optional fixed id (generated otherwise)
        """
        connection_id = connection_id or uuid4().hex
        channel = user_channel(user_id)

        pubsub = self.store.pubsub()
        listener: Optional[asyncio.Task] = None
        heartbeat: Optional[asyncio.Task] = None
        try:
            await pubsub.subscribe(channel)
            await self.registry.register_connection(connection_id, user_id)
            self._connections[connection_id] = user_id
            metrics.live_connections.inc()
            logger.info(f"Connection {connection_id} opened for user {user_id}")

            listener = asyncio.create_task(
                self._forward(pubsub, socket, connection_id),
                name=f"ws-listener-{connection_id}",
            )
            heartbeat = asyncio.create_task(
                self._heartbeat(connection_id, user_id),
                name=f"ws-heartbeat-{connection_id}",
            )

            for message in await self.inbox.drain(user_id):
                await socket.send_text(message)

            async for raw in socket.iter_text():
                await self.handle_message(connection_id, raw, socket)
        except RedisError as e:
            logger.error(f"Connection {connection_id} for user {user_id} failed: {e}")
        finally:
            await self._close(connection_id, channel, pubsub, listener, heartbeat)

    async def handle_message(self, connection_id: str, raw: str, socket: LiveSocket) -> None:
        """Apply one client control message; anything malformed is ignored."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug(f"Ignoring non-JSON message on {connection_id}")
            return
        if not isinstance(message, dict):
            return

        payload = message.get("payload")
        tickers = payload.get("tickers") if isinstance(payload, dict) else None
        if not isinstance(tickers, list):
            return

        kind = message.get("type")
        try:
            if kind == "subscribe":
                applied = await self.registry.subscribe(connection_id, tickers)
                await socket.send_text(
                    json.dumps({"type": "subscribed", "payload": {"tickers": applied}})
                )
            elif kind == "unsubscribe":
                applied = await self.registry.unsubscribe(connection_id, tickers)
                await socket.send_text(
                    json.dumps({"type": "unsubscribed", "payload": {"tickers": applied}})
                )
        except RedisError as e:
            logger.warning(f"Subscription update failed on {connection_id}: {e}")

    async def _forward(self, pubsub: PubSub, socket: LiveSocket, connection_id: str) -> None:
        try:
            while socket.is_open:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
                if message is None or not socket.is_open:
                    continue
                await socket.send_text(message["data"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Listener for {connection_id} stopped: {e}")

    async def _heartbeat(self, connection_id: str, user_id: str) -> None:
        while True:
            await asyncio.sleep(self.config.connection_heartbeat_seconds)
            try:
                await self.registry.touch(connection_id, user_id)
            except RedisError as e:
                logger.warning(f"Heartbeat failed for {connection_id}: {e}")

    async def _close(
        self,
        connection_id: str,
        channel: str,
        pubsub: PubSub,
        listener: Optional[asyncio.Task],
        heartbeat: Optional[asyncio.Task],
    ) -> None:
        tasks = [task for task in (listener, heartbeat) if task is not None]
        if heartbeat is not None:
            heartbeat.cancel()
        try:
            await self.registry.remove_connection(connection_id)
        except RedisError as e:
            logger.error(f"Failed to clean up subscriptions for {connection_id}: {e}")

        if listener is not None:
            listener.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            if pubsub.subscribed:
                await pubsub.unsubscribe(channel)
            await pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error releasing pub/sub for {connection_id}: {e}")

        if self._connections.pop(connection_id, None) is not None:
            metrics.live_connections.dec()
        logger.info(f"Connection {connection_id} closed")
