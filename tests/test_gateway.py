"""Tests for the live fan-out gateway."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from marketpulse.queue.jobs import NotificationContent, NotificationJob
from marketpulse.realtime.distribution import user_channel
from marketpulse.realtime.gateway import FanoutGateway


class FakeSocket:
    """Socket double: the test feeds client messages, None disconnects."""

    def __init__(self):
        self.sent: list[str] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.open = True

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def iter_text(self):
        while True:
            item = await self.incoming.get()
            if item is None:
                self.open = False
                return
            yield item

    def messages(self) -> list[dict]:
        return [json.loads(text) for text in self.sent]


async def _wait_for(condition, timeout: float = 3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _gateway(store, registry, inbox, test_settings) -> FanoutGateway:
    gateway = FanoutGateway(store, registry, inbox, test_settings)
    gateway.poll_timeout = 0.05
    return gateway


@pytest.mark.asyncio
async def test_subscribe_and_receive_published_messages(store, registry, inbox, test_settings, redis_client):
    gateway = _gateway(store, registry, inbox, test_settings)
    socket = FakeSocket()
    task = asyncio.create_task(gateway.serve(socket, "alice", connection_id="conn-1"))

    await _wait_for(lambda: gateway.connection_count == 1)
    await socket.incoming.put(json.dumps({"type": "subscribe", "payload": {"tickers": ["aapl", "msft"]}}))
    await _wait_for(lambda: len(socket.sent) == 1)

    assert socket.messages()[0] == {"type": "subscribed", "payload": {"tickers": ["AAPL", "MSFT"]}}
    assert await registry.users_subscribed_to("AAPL") == ["alice"]

    alert = json.dumps({"type": "alert", "data": {"ticker_id": "AAPL"}})
    await _wait_for_receivers(redis_client, user_channel("alice"))
    await redis_client.publish(user_channel("alice"), alert)
    await _wait_for(lambda: alert in socket.sent)

    await socket.incoming.put(None)
    await asyncio.wait_for(task, timeout=3)

    assert gateway.connection_count == 0
    assert await registry.connections_for("AAPL") == set()
    assert await registry.is_user_online("alice") is False


async def _wait_for_receivers(redis_client, channel: str, timeout: float = 3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        counts = await redis_client.pubsub_numsub(channel)
        if counts and counts[0][1] > 0:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"nobody subscribed to {channel}")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_unsubscribe_and_malformed_messages(store, registry, inbox, test_settings):
    gateway = _gateway(store, registry, inbox, test_settings)
    socket = FakeSocket()
    task = asyncio.create_task(gateway.serve(socket, "bob", connection_id="conn-2"))

    await socket.incoming.put(json.dumps({"type": "subscribe", "payload": {"tickers": ["TSLA", "NVDA"]}}))
    await socket.incoming.put("not json")
    await socket.incoming.put(json.dumps(["a", "list"]))
    await socket.incoming.put(json.dumps({"type": "subscribe", "payload": {"tickers": "TSLA"}}))
    await socket.incoming.put(json.dumps({"type": "dance", "payload": {"tickers": ["TSLA"]}}))
    await socket.incoming.put(json.dumps({"type": "unsubscribe", "payload": {"tickers": ["tsla"]}}))
    await _wait_for(lambda: len(socket.sent) == 2)

    assert [m["type"] for m in socket.messages()] == ["subscribed", "unsubscribed"]
    assert await registry.topics_for("conn-2") == ["NVDA"]

    await socket.incoming.put(None)
    await asyncio.wait_for(task, timeout=3)


@pytest.mark.asyncio
async def test_pending_notifications_delivered_on_connect(store, registry, inbox, test_settings):
    now = datetime.now(timezone.utc)
    await inbox.store_notification(
        NotificationJob(
            user_id="carol",
            ticker_id="AAPL",
            payload=NotificationContent(
                alert_type="volume_spike",
                message="AAPL volume 4.2x average",
                severity="critical",
                data={"timestamp": now.isoformat()},
            ),
            priority=1,
            expires_at=now + timedelta(hours=24),
        )
    )
    gateway = _gateway(store, registry, inbox, test_settings)
    socket = FakeSocket()
    task = asyncio.create_task(gateway.serve(socket, "carol"))

    await _wait_for(lambda: len(socket.sent) == 1)
    message = socket.messages()[0]
    assert message["type"] == "alert"
    assert message["data"]["severity"] == "critical"
    assert message["data"]["ticker_id"] == "AAPL"
    assert await inbox.pending_count("carol") == 0

    await socket.incoming.put(None)
    await asyncio.wait_for(task, timeout=3)


@pytest.mark.asyncio
async def test_each_connection_of_a_user_receives_channel_messages(store, registry, inbox, test_settings, redis_client):
    gateway = _gateway(store, registry, inbox, test_settings)
    first, second = FakeSocket(), FakeSocket()
    tasks = [
        asyncio.create_task(gateway.serve(first, "dave", connection_id="d1")),
        asyncio.create_task(gateway.serve(second, "dave", connection_id="d2")),
    ]
    await _wait_for(lambda: gateway.connection_count == 2)
    await asyncio.sleep(0.05)

    receivers = await redis_client.publish(user_channel("dave"), "hello")
    assert receivers == 2
    await _wait_for(lambda: first.sent == ["hello"] and second.sent == ["hello"])

    for socket in (first, second):
        await socket.incoming.put(None)
    await asyncio.wait_for(asyncio.gather(*tasks), timeout=3)


@pytest.mark.asyncio
async def test_failed_registration_releases_subscription(store, registry, inbox, test_settings, redis_client, monkeypatch):
    gateway = _gateway(store, registry, inbox, test_settings)
    opened = []
    original_pubsub = store.pubsub

    def tracking_pubsub():
        pubsub = original_pubsub()
        opened.append(pubsub)
        return pubsub

    async def failing_register(connection_id, user_id):
        raise RedisConnectionError("registry unavailable")

    monkeypatch.setattr(store, "pubsub", tracking_pubsub)
    monkeypatch.setattr(registry, "register_connection", failing_register)

    await asyncio.wait_for(gateway.serve(FakeSocket(), "erin", connection_id="e1"), timeout=3)

    assert gateway.connection_count == 0
    assert len(opened) == 1
    assert not opened[0].subscribed
    numsub = await redis_client.pubsub_numsub(user_channel("erin"))
    assert [count for _, count in numsub] == [0]
