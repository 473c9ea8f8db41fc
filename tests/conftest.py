"""Shared fixtures: an in-process Redis per test and a throwaway SQLite database."""

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from marketpulse.config import Settings
from marketpulse.db.repository import MarketRepository
from marketpulse.db.session import build_engine, build_session_factory, create_all
from marketpulse.infra.cache import CacheService
from marketpulse.infra.redis_store import RedisStore
from marketpulse.queue.queue_set import QueueSet
from marketpulse.realtime.notifications import NotificationInbox
from marketpulse.realtime.registry import SubscriptionRegistry


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        redis_url="redis://localhost:6379/15",
        database_url="sqlite+aiosqlite:///:memory:",
        admin_api_key="test-admin-key",
        finnhub_api_key="test-finnhub-key",
        openai_api_key="",
        queue_backoff_delay_ms=1,
        worker_poll_interval_seconds=0.01,
        connection_heartbeat_seconds=3600,
    )


@pytest_asyncio.fixture
async def redis_client():
    # A private server keeps keys from leaking between tests
    server = fakeredis.FakeServer()
    client = fake_aioredis.FakeRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def store(redis_client, test_settings) -> RedisStore:
    return RedisStore(test_settings, client=redis_client)


@pytest.fixture
def queues(store, test_settings) -> QueueSet:
    return QueueSet(store, test_settings)


@pytest.fixture
def cache(store) -> CacheService:
    return CacheService(store, "cache:invalidation")


@pytest.fixture
def registry(store) -> SubscriptionRegistry:
    return SubscriptionRegistry(store, connection_ttl_seconds=60)


@pytest.fixture
def inbox(store) -> NotificationInbox:
    return NotificationInbox(store)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketpulse.db'}")
    await create_all(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def repository(session_factory) -> MarketRepository:
    return MarketRepository(session_factory)
