import asyncio
import json

import pytest
import pytest_asyncio

from infra.change_feed import ChangeEvent, ChangeFeed, SubscriptionHandle
from services.notification_hub import ConnectionClosedError, NotificationHub, StreamConnection


class FakeFeed(ChangeFeed):
    """Records every subscribe/unsubscribe and lets tests push changes synchronously."""

    def __init__(self, fail_subscribe: int = 0):
        self.handles: list[SubscriptionHandle] = []
        self.unsubscribed: list[SubscriptionHandle] = []
        self.fail_subscribe = fail_subscribe

    def subscribe(self, event_filter, callback, on_error=None):
        if self.fail_subscribe:
            self.fail_subscribe -= 1
            raise ConnectionError("feed unavailable")
        handle = SubscriptionHandle(event_filter=event_filter, callback=callback, on_error=on_error)
        self.handles.append(handle)
        return handle

    def unsubscribe(self, handle):
        if handle.active:
            handle.active = False
            self.unsubscribed.append(handle)

    def active_for(self, recipient_id):
        return [h for h in self.handles if h.active and h.event_filter.value == recipient_id]

    def emit(self, recipient_id, event_type, new_row=None, old_row=None):
        event = ChangeEvent(table="notifications", event_type=event_type, new_row=new_row, old_row=old_row)
        for handle in list(self.handles):
            if handle.active and handle.event_filter.matches(event):
                handle.callback(event)


def frames(connection: StreamConnection) -> list:
    """Drain queued frames, decoding data frames and keeping comments as strings."""
    out = []
    while not connection.queue.empty():
        frame = connection.queue.get_nowait()
        if frame is None:
            out.append(None)
        elif frame.startswith("data: "):
            out.append(json.loads(frame[len("data: "):].strip()))
        else:
            out.append(frame)
    return out


def row(recipient_id, n=1, **extra):
    return {"id": f"n{n}", "recipient_id": recipient_id, "type": "general", "message": f"m{n}", **extra}


@pytest.fixture()
def fake_feed():
    return FakeFeed()


@pytest_asyncio.fixture()
async def hub(fake_feed):
    hub = NotificationHub(fake_feed, heartbeat_interval=60, idle_grace=60, retry_base=0.01, retry_max=0.05)
    yield hub
    await hub.shutdown()


@pytest.mark.asyncio
async def test_ensure_channel_is_idempotent(hub, fake_feed):
    hub.ensure_channel("u1")
    hub.ensure_channel("u1")
    assert len(fake_feed.handles) == 1
    assert hub.has_channel("u1")
    f = fake_feed.handles[0].event_filter
    assert (f.table, f.column, f.value) == ("notifications", "recipient_id", "u1")


@pytest.mark.asyncio
async def test_channel_exists_while_registrations_outnumber_unregistrations(hub, fake_feed):
    a, b = StreamConnection(), StreamConnection()
    hub.register_connection("u1", a)
    hub.register_connection("u1", b)
    assert hub.connection_count("u1") == 2
    assert len(fake_feed.handles) == 1

    hub.unregister_connection("u1", a)
    assert hub.has_channel("u1")
    assert hub.connection_count("u1") == 1

    hub.unregister_connection("u1", b)
    assert not hub.has_channel("u1")
    assert hub.connection_count("u1") == 0


@pytest.mark.asyncio
async def test_unregister_of_unknown_connection_is_harmless(hub):
    hub.register_connection("u1", StreamConnection())
    hub.unregister_connection("u1", StreamConnection())
    hub.unregister_connection("nobody", StreamConnection())
    assert hub.connection_count("u1") == 1


@pytest.mark.asyncio
async def test_fan_out_attempts_every_connection_even_when_one_fails(hub, fake_feed):
    conns = [StreamConnection() for _ in range(3)]
    for c in conns:
        hub.register_connection("u1", c)
    conns[1].closed = True  # peer gone, transport has not reported it yet

    attempts = hub.deliver("u1", {"type": "notification.insert", "data": row("u1")})

    assert attempts == 3
    for c in (conns[0], conns[2]):
        assert frames(c)[-1]["type"] == "notification.insert"
    # failed write does not unregister
    assert hub.connection_count("u1") == 3


@pytest.mark.asyncio
async def test_slow_consumer_is_skipped(hub):
    slow = StreamConnection(max_queue=1)
    fast = StreamConnection()
    hub.register_connection("u1", slow)  # ready fills the queue
    hub.register_connection("u1", fast)

    assert hub.deliver("u1", {"type": "notification.insert", "data": row("u1")}) == 2
    assert [f["type"] for f in frames(slow)] == ["ready"]
    assert [f["type"] for f in frames(fast)] == ["ready", "notification.insert"]


@pytest.mark.asyncio
async def test_events_are_isolated_per_recipient(hub, fake_feed):
    c1, c2 = StreamConnection(), StreamConnection()
    hub.register_connection("u1", c1)
    hub.register_connection("u2", c2)

    fake_feed.emit("u1", "insert", new_row=row("u1"))

    assert [f["type"] for f in frames(c1)] == ["ready", "notification.insert"]
    assert [f["type"] for f in frames(c2)] == ["ready"]


@pytest.mark.asyncio
async def test_drain_cancels_upstream_and_next_ensure_gets_new_handle(hub, fake_feed):
    c = StreamConnection()
    hub.register_connection("u1", c)
    first = hub.channel_handle("u1")

    hub.unregister_connection("u1", c)
    assert first in fake_feed.unsubscribed
    assert not first.active

    hub.ensure_channel("u1")
    second = hub.channel_handle("u1")
    assert second is not None and second is not first
    assert fake_feed.active_for("u1") == [second]


@pytest.mark.asyncio
async def test_ready_precedes_fan_out(hub, fake_feed):
    c = StreamConnection()
    hub.register_connection("u1", c)
    fake_feed.emit("u1", "insert", new_row=row("u1", 1))
    fake_feed.emit("u1", "update", new_row=row("u1", 1, is_read=True), old_row=row("u1", 1, is_read=False))
    fake_feed.emit("u1", "delete", old_row=row("u1", 1))

    received = frames(c)
    assert received[0] == {"type": "ready", "userId": "u1"}
    assert [f["type"] for f in received[1:]] == ["notification.insert", "notification.update", "notification.delete"]
    update = received[2]
    assert update["data"]["is_read"] is True and update["old"]["is_read"] is False
    assert "old" not in received[1]
    assert received[3]["data"]["id"] == "n1"


@pytest.mark.asyncio
async def test_late_connection_gets_no_replay(hub, fake_feed):
    early = StreamConnection()
    hub.register_connection("u1", early)
    fake_feed.emit("u1", "insert", new_row=row("u1"))

    late = StreamConnection()
    hub.register_connection("u1", late)
    assert [f["type"] for f in frames(late)] == ["ready"]


@pytest.mark.asyncio
async def test_idle_channel_is_dropped_after_grace_window(fake_feed):
    hub = NotificationHub(fake_feed, heartbeat_interval=60, idle_grace=0.05)
    try:
        hub.ensure_channel("u1")
        handle = hub.channel_handle("u1")
        await asyncio.sleep(0.1)
        assert not hub.has_channel("u1")
        assert handle in fake_feed.unsubscribed
    finally:
        await hub.shutdown()


@pytest.mark.asyncio
async def test_registering_within_grace_window_keeps_channel(fake_feed):
    hub = NotificationHub(fake_feed, heartbeat_interval=60, idle_grace=0.05)
    try:
        hub.ensure_channel("u1")
        handle = hub.channel_handle("u1")
        hub.register_connection("u1", StreamConnection())
        await asyncio.sleep(0.1)
        assert hub.has_channel("u1")
        assert hub.channel_handle("u1") is handle
        assert len(fake_feed.handles) == 1
    finally:
        await hub.shutdown()


@pytest.mark.asyncio
async def test_upstream_failure_resubscribes_with_backoff(hub, fake_feed):
    c = StreamConnection()
    hub.register_connection("u1", c)
    first = hub.channel_handle("u1")

    first.on_error(first, ConnectionError("socket closed"))
    assert not first.active
    assert hub.channel_handle("u1") is None

    await asyncio.sleep(0.05)
    second = hub.channel_handle("u1")
    assert second is not None and second is not first

    fake_feed.emit("u1", "insert", new_row=row("u1"))
    assert frames(c)[-1]["type"] == "notification.insert"


@pytest.mark.asyncio
async def test_stale_handle_error_is_ignored(hub, fake_feed):
    hub.register_connection("u1", StreamConnection())
    handle = hub.channel_handle("u1")
    stale = SubscriptionHandle(event_filter=handle.event_filter, callback=lambda e: None)

    hub._on_upstream_error("u1", stale, ConnectionError("old"))
    assert hub.channel_handle("u1") is handle
    assert handle.active


@pytest.mark.asyncio
async def test_no_retry_after_channel_torn_down(hub, fake_feed):
    c = StreamConnection()
    hub.register_connection("u1", c)
    handle = hub.channel_handle("u1")
    handle.on_error(handle, ConnectionError("socket closed"))
    hub.unregister_connection("u1", c)

    await asyncio.sleep(0.05)
    assert not hub.has_channel("u1")
    assert fake_feed.active_for("u1") == []
    assert len(fake_feed.handles) == 1


@pytest.mark.asyncio
async def test_subscribe_error_is_retried():
    fake_feed = FakeFeed(fail_subscribe=2)
    hub = NotificationHub(fake_feed, heartbeat_interval=60, idle_grace=60, retry_base=0.01, retry_max=0.02)
    try:
        hub.ensure_channel("u1")  # does not raise
        assert hub.has_channel("u1")
        assert hub.channel_handle("u1") is None
        await asyncio.sleep(0.1)
        assert hub.channel_handle("u1") is not None
        assert len(fake_feed.handles) == 1
    finally:
        await hub.shutdown()


@pytest.mark.asyncio
async def test_heartbeat_comment_frames(fake_feed):
    hub = NotificationHub(fake_feed, heartbeat_interval=0.01, idle_grace=60)
    try:
        c = StreamConnection()
        hub.register_connection("u1", c)
        await asyncio.sleep(0.05)
        received = frames(c)
        assert received[0]["type"] == "ready"
        assert ": ping\n\n" in received[1:]
    finally:
        await hub.shutdown()


@pytest.mark.asyncio
async def test_shutdown_cancels_everything(fake_feed):
    hub = NotificationHub(fake_feed, heartbeat_interval=60, idle_grace=60)
    c = StreamConnection()
    hub.register_connection("u1", c)
    hub.ensure_channel("u2")

    await hub.shutdown()

    assert hub.stats() == {"channels": 0, "connections": 0}
    assert all(not h.active for h in fake_feed.handles)
    assert c.closed
    hub.ensure_channel("u3")
    assert not hub.has_channel("u3")
    with pytest.raises(RuntimeError):
        hub.register_connection("u4", StreamConnection())


@pytest.mark.asyncio
async def test_stream_connection_close_ends_frames():
    c = StreamConnection(max_queue=2)
    c.send({"type": "a"})
    c.send({"type": "b"})
    c.close()  # queue full: oldest frame makes room for the end marker
    with pytest.raises(ConnectionClosedError):
        c.send({"type": "c"})
    collected = [f async for f in c.frames()]
    assert collected == ['data: {"type": "b"}\n\n']
