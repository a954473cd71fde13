import asyncio

import pytest

from infra.change_feed import (
    DELETE, INSERT, UPDATE, EventFilter, InMemoryChangeFeed, RedisChangeFeed, build_change_feed,
)


def recipient_filter(value, events=frozenset({INSERT, UPDATE, DELETE})):
    return EventFilter(table="notifications", column="recipient_id", value=value, events=events)


async def settle():
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_in_memory_feed_delivers_matching_events_in_order():
    feed = InMemoryChangeFeed()
    seen = []
    feed.subscribe(recipient_filter("u1"), lambda e: seen.append((e.event_type, (e.new_row or e.old_row)["id"])))

    await feed.publish("notifications", INSERT, {"id": "a", "recipient_id": "u1"})
    await feed.publish("notifications", INSERT, {"id": "x", "recipient_id": "u2"})
    await feed.publish("notifications", UPDATE, {"id": "a", "recipient_id": "u1", "is_read": True},
                       {"id": "a", "recipient_id": "u1", "is_read": False})
    await feed.publish("notifications", DELETE, None, {"id": "a", "recipient_id": "u1"})
    await feed.publish("bookings", INSERT, {"id": "b", "recipient_id": "u1"})
    await settle()

    assert seen == [("insert", "a"), ("update", "a"), ("delete", "a")]


@pytest.mark.asyncio
async def test_callbacks_run_after_publish_returns():
    feed = InMemoryChangeFeed()
    seen = []
    feed.subscribe(recipient_filter("u1"), seen.append)
    await feed.publish("notifications", INSERT, {"id": "a", "recipient_id": "u1"})
    assert seen == []
    await settle()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_event_subset_filter():
    feed = InMemoryChangeFeed()
    seen = []
    feed.subscribe(recipient_filter("u1", events=frozenset({INSERT})), seen.append)
    await feed.publish("notifications", UPDATE, {"id": "a", "recipient_id": "u1"}, {"id": "a", "recipient_id": "u1"})
    await feed.publish("notifications", INSERT, {"id": "b", "recipient_id": "u1"})
    await settle()
    assert [e.new_row["id"] for e in seen] == ["b"]


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent_and_stops_pending_dispatch():
    feed = InMemoryChangeFeed()
    seen = []
    handle = feed.subscribe(recipient_filter("u1"), seen.append)
    await feed.publish("notifications", INSERT, {"id": "a", "recipient_id": "u1"})
    feed.unsubscribe(handle)  # before the scheduled callback runs
    feed.unsubscribe(handle)
    await settle()
    assert seen == []
    assert feed.active_subscriptions() == []


@pytest.mark.asyncio
async def test_failing_callback_does_not_affect_other_subscribers():
    feed = InMemoryChangeFeed()
    seen = []

    def boom(event):
        raise RuntimeError("callback bug")

    feed.subscribe(recipient_filter("u1"), boom)
    feed.subscribe(recipient_filter("u1"), seen.append)
    await feed.publish("notifications", INSERT, {"id": "a", "recipient_id": "u1"})
    await settle()
    assert len(seen) == 1


def test_redis_channel_naming():
    feed = RedisChangeFeed("redis://localhost:6379/0", prefix="changes")
    assert feed.channel_name("notifications", "recipient_id", "u1") == "changes:notifications:recipient_id:u1"


@pytest.mark.asyncio
async def test_redis_publish_failure_is_logged_not_raised(monkeypatch):
    class BrokenRedis:
        async def publish(self, channel, payload):
            raise ConnectionError("redis down")

    feed = RedisChangeFeed("redis://localhost:6379/0")
    monkeypatch.setattr(feed, "_client", lambda: BrokenRedis())
    await feed.publish("notifications", INSERT, {"id": "a", "recipient_id": "u1"})


@pytest.mark.asyncio
async def test_redis_listener_failure_reports_on_error(monkeypatch):
    class BrokenPubSub:
        async def subscribe(self, channel):
            raise ConnectionError("refused")

        async def unsubscribe(self, channel):
            pass

        async def aclose(self):
            pass

    class FakeRedis:
        def pubsub(self, ignore_subscribe_messages=True):
            return BrokenPubSub()

    feed = RedisChangeFeed("redis://localhost:6379/0")
    monkeypatch.setattr(feed, "_client", lambda: FakeRedis())
    errors = []
    handle = feed.subscribe(recipient_filter("u1"), lambda e: None, on_error=lambda h, exc: errors.append((h, exc)))
    await handle.task
    assert len(errors) == 1
    assert errors[0][0] is handle
    assert isinstance(errors[0][1], ConnectionError)


def test_build_change_feed_backends():
    assert isinstance(build_change_feed("memory", ""), InMemoryChangeFeed)
    assert isinstance(build_change_feed("redis", "redis://localhost:6379/0"), RedisChangeFeed)
    assert isinstance(build_change_feed("bogus", ""), InMemoryChangeFeed)


@pytest.mark.asyncio
async def test_redis_close_waits_for_listeners_before_closing_pool():
    calls = []

    class IdlePubSub:
        async def subscribe(self, channel):
            calls.append("subscribe")

        async def listen(self):
            await asyncio.Event().wait()
            yield {}

        async def unsubscribe(self, channel):
            calls.append("unsubscribe")

        async def aclose(self):
            calls.append("pubsub closed")

    class FakeRedis:
        def pubsub(self, ignore_subscribe_messages=True):
            return IdlePubSub()

        async def aclose(self):
            calls.append("pool closed")

    feed = RedisChangeFeed("redis://localhost:6379/0")
    feed._redis = FakeRedis()
    handle = feed.subscribe(recipient_filter("u1"), lambda e: None)
    await settle()
    assert calls == ["subscribe"]

    await feed.close()
    assert handle.task.done()
    assert calls == ["subscribe", "unsubscribe", "pubsub closed", "pool closed"]
