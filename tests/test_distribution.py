"""Tests for alert distribution to live users and offline inboxes."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from marketpulse.errors import DeliveryError, JobPayloadError
from marketpulse.queue.jobs import AlertJob, NotificationContent, NotificationJob
from marketpulse.queue.queue_set import NOTIFICATIONS
from marketpulse.realtime.distribution import (
    AlertDistributor,
    WatcherDirectory,
    time_bucket,
    user_channel,
)


class StaticWatchers(WatcherDirectory):
    def __init__(self, watchers):
        self.watchers = watchers

    async def watchers_of(self, ticker):
        return list(self.watchers.get(ticker, []))


async def _next_message(pubsub, attempts: int = 20):
    # The subscribe confirmation comes first and reads as None
    for _ in range(attempts):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message is not None:
            return message
    raise AssertionError("no message published")


def _alert(severity: str = "critical") -> AlertJob:
    return AlertJob(
        ticker_id="aapl",
        alert_type="volume_spike",
        severity=severity,
        message="AAPL volume 4.5x its 20-day average",
        metadata={"volume_spike_id": "17"},
        timestamp=datetime.now(timezone.utc),
    )


def test_time_bucket_floors_to_window():
    moment = datetime(2024, 1, 2, 10, 7, 31, tzinfo=timezone.utc)
    bucket = time_bucket(moment, 5)

    assert bucket == int(datetime(2024, 1, 2, 10, 5, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.mark.asyncio
async def test_recipients_merge_watchers_and_live_subscribers(store, registry, queues, test_settings):
    await registry.register_connection("c1", "bob")
    await registry.subscribe("c1", ["AAPL"])
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["alice", "bob"]}), test_settings
    )

    assert await distributor.recipients("AAPL") == ["alice", "bob"]


@pytest.mark.asyncio
async def test_online_users_get_publish_offline_users_get_notification(
    store, registry, queues, test_settings, redis_client
):
    await registry.register_connection("c1", "online-user")
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["online-user", "offline-user"]}), test_settings
    )
    pubsub = redis_client.pubsub()
    await pubsub.subscribe(user_channel("online-user"))

    result = await distributor.distribute(_alert("critical"))

    assert (result.published, result.queued, result.skipped) == (1, 1, 0)

    message = await _next_message(pubsub)
    assert json.loads(message["data"])["data"]["ticker_id"] == "aapl"
    await pubsub.aclose()

    pending = await queues.get(NOTIFICATIONS).get_pending()
    assert len(pending) == 1
    job = pending[0]
    assert job.priority == 1
    notification = job.parsed_payload()
    assert notification.user_id == "offline-user"
    assert notification.ticker_id == "AAPL"
    assert notification.expires_at > datetime.now(timezone.utc) + timedelta(hours=23)


@pytest.mark.asyncio
async def test_redelivery_within_bucket_is_skipped(store, registry, queues, test_settings):
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["alice"]}), test_settings
    )
    alert = _alert("high")

    first = await distributor.distribute(alert)
    second = await distributor.distribute(alert)

    assert first.queued == 1
    assert second.skipped == 1
    assert len(await queues.get(NOTIFICATIONS).get_pending()) == 1


@pytest.mark.asyncio
async def test_no_recipients_is_a_noop(store, registry, queues, test_settings):
    distributor = AlertDistributor(store, registry, queues, StaticWatchers({}), test_settings)

    result = await distributor.distribute(_alert())

    assert (result.published, result.queued, result.skipped) == (0, 0, 0)


@pytest.mark.asyncio
async def test_partial_failure_raises_and_retry_serves_only_the_rest(
    store, registry, queues, test_settings, monkeypatch
):
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["alice", "bob"]}), test_settings
    )
    original = queues.enqueue_notification
    broken = {"bob"}

    async def flaky_enqueue(notification, job_id=None):
        if notification.user_id in broken:
            raise JobPayloadError("queue rejected notification")
        return await original(notification, job_id=job_id)

    monkeypatch.setattr(queues, "enqueue_notification", flaky_enqueue)
    alert = _alert("medium")

    with pytest.raises(DeliveryError) as excinfo:
        await distributor.distribute(alert)
    assert excinfo.value.failed_users == ["bob"]

    broken.clear()
    retry = await distributor.distribute(alert)
    assert (retry.queued, retry.skipped) == (1, 1)


@pytest.mark.asyncio
async def test_inbox_drain_skips_expired_and_is_single_shot(inbox):
    now = datetime.now(timezone.utc)

    def _notification(message, expires_at):
        return NotificationJob(
            user_id="erin",
            ticker_id="MSFT",
            payload=NotificationContent(alert_type="news", message=message, severity="low"),
            expires_at=expires_at,
        )

    fresh = _notification("fresh", now + timedelta(hours=1))
    assert await inbox.store_notification(fresh) is True
    assert await inbox.store_notification(fresh) is False
    await inbox.store_notification(_notification("stale", now - timedelta(minutes=5)))

    assert await inbox.pending_count("erin") == 1
    drained = await inbox.drain("erin")
    assert [json.loads(m)["data"]["message"] for m in drained] == ["fresh"]
    assert await inbox.drain("erin") == []


@pytest.mark.asyncio
async def test_inbox_sweep_removes_expired(inbox):
    now = datetime.now(timezone.utc)
    await inbox.store_notification(
        NotificationJob(
            user_id="frank",
            ticker_id="MSFT",
            payload=NotificationContent(alert_type="news", message="old", severity="low"),
            expires_at=now - timedelta(minutes=1),
        )
    )

    assert await inbox.sweep_expired() == 1
    assert await inbox.pending_count("frank") == 0


@pytest.mark.asyncio
async def test_distinct_alerts_in_same_bucket_are_both_delivered(store, registry, queues, test_settings):
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["alice"]}), test_settings
    )
    filed = datetime(2024, 4, 2, tzinfo=timezone.utc)

    def _filing_alert(accession: str) -> AlertJob:
        return AlertJob(
            ticker_id="AAPL",
            alert_type="filing",
            severity="high",
            message="New 8-K filed by AAPL",
            metadata={"accession_number": accession, "form_type": "8-K"},
            timestamp=filed,
        )

    first = await distributor.distribute(_filing_alert("0000320193-24-000001"))
    second = await distributor.distribute(_filing_alert("0000320193-24-000002"))
    again = await distributor.distribute(_filing_alert("0000320193-24-000001"))

    assert (first.queued, second.queued, again.skipped) == (1, 1, 1)
    pending = await queues.get(NOTIFICATIONS).get_pending()
    assert len(pending) == 2
    assert {job.parsed_payload().payload.data["metadata"]["accession_number"] for job in pending} == {
        "0000320193-24-000001",
        "0000320193-24-000002",
    }


@pytest.mark.asyncio
async def test_explicit_alert_id_keys_delivery(store, registry, queues, test_settings):
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["alice"]}), test_settings
    )
    alert = _alert("high")

    first = await distributor.distribute(alert, alert_id="alert-AAPL-1")
    second = await distributor.distribute(alert, alert_id="alert-AAPL-2")
    retry = await distributor.distribute(alert, alert_id="alert-AAPL-1")

    assert (first.queued, second.queued, retry.skipped) == (1, 1, 1)
    assert {job.id for job in await queues.get(NOTIFICATIONS).get_pending()} == {
        "notif-alice-alert-AAPL-1",
        "notif-alice-alert-AAPL-2",
    }


@pytest.mark.asyncio
async def test_online_user_without_listener_gets_notification(store, registry, queues, test_settings):
    # Registered connection, but no pub/sub subscriber on the user's channel
    await registry.register_connection("c1", "dana")
    distributor = AlertDistributor(
        store, registry, queues, StaticWatchers({"AAPL": ["dana"]}), test_settings
    )

    result = await distributor.distribute(_alert("critical"))

    assert (result.published, result.queued) == (0, 1)
    pending = await queues.get(NOTIFICATIONS).get_pending()
    assert [job.parsed_payload().user_id for job in pending] == ["dana"]
