import asyncio
import json

import pytest

from api.routes_realtime import event_stream, notifications_stream
from services.notification_hub import StreamConnection


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


async def next_event(stream, timeout: float = 1.0) -> dict:
    frame = await asyncio.wait_for(stream.__anext__(), timeout)
    assert frame.startswith("data: ")
    return json.loads(frame[len("data: "):])


async def send(client, headers, recipient_id, type="general", message="Service update"):
    resp = await client.post("/api/admin/notification", headers=headers,
                             json={"recipientId": recipient_id, "type": type, "message": message})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


@pytest.mark.asyncio
async def test_stream_requires_user_id(client):
    resp = await client.get("/api/rt/notifications")
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "userId is required"

    resp_blank = await client.get("/api/rt/notifications/%20")
    assert resp_blank.status_code == 400


@pytest.mark.asyncio
async def test_stream_response_headers_and_ready_frame(hub):
    resp = await notifications_stream("u1", hub)
    assert resp.media_type == "text/event-stream"
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["connection"] == "keep-alive"
    assert resp.headers["x-accel-buffering"] == "no"

    stream = resp.body_iterator
    assert await next_event(stream) == {"type": "ready", "userId": "u1"}
    assert hub.connection_count("u1") == 1
    await stream.aclose()
    assert hub.connection_count("u1") == 0
    assert not hub.has_channel("u1")


@pytest.mark.asyncio
async def test_live_notification_end_to_end(client, hub, make_user):
    _, admin_headers = await make_user("admin")
    u1, _ = await make_user("client")

    # stream opened before the send
    conn_a = StreamConnection()
    stream_a = event_stream(hub, u1, conn_a)
    assert (await next_event(stream_a))["type"] == "ready"

    row = await send(client, admin_headers, u1)
    assert row["priority"] == "normal"
    assert row["is_read"] is False

    await settle()
    event = await next_event(stream_a)
    assert event["type"] == "notification.insert"
    assert event["data"]["id"] == row["id"]
    assert event["data"]["recipient_id"] == u1

    # stream opened after the send only sees ready
    conn_b = StreamConnection()
    stream_b = event_stream(hub, u1, conn_b)
    assert (await next_event(stream_b))["type"] == "ready"
    await settle()
    assert conn_b.queue.empty()

    # first stream disconnects; only the second gets the next send
    await stream_a.aclose()
    assert hub.connection_count(u1) == 1

    second = await send(client, admin_headers, u1, message="Second update")
    await settle()
    event = await next_event(stream_b)
    assert event["type"] == "notification.insert"
    assert event["data"]["id"] == second["id"]

    await stream_b.aclose()
    assert not hub.has_channel(u1)


@pytest.mark.asyncio
async def test_read_and_delete_are_streamed(client, hub, make_user):
    _, admin_headers = await make_user("admin")
    u1, u1_headers = await make_user("client")
    row = await send(client, admin_headers, u1)

    stream = event_stream(hub, u1, StreamConnection())
    await next_event(stream)

    resp = await client.put(f"/api/notifications/{row['id']}/read", headers=u1_headers)
    assert resp.status_code == 200
    await settle()
    event = await next_event(stream)
    assert event["type"] == "notification.update"
    assert event["data"]["is_read"] is True
    assert event["old"]["is_read"] is False

    resp = await client.delete(f"/api/notifications/{row['id']}", headers=u1_headers)
    assert resp.status_code == 200
    await settle()
    event = await next_event(stream)
    assert event["type"] == "notification.delete"
    assert event["data"]["id"] == row["id"]
    await stream.aclose()


@pytest.mark.asyncio
async def test_two_streams_one_leaves_third_joins(client, hub, make_user):
    _, admin_headers = await make_user("admin")
    u1, _ = await make_user("client")

    streams = [event_stream(hub, u1, StreamConnection()) for _ in range(2)]
    for s in streams:
        await next_event(s)
    assert hub.connection_count(u1) == 2

    await streams[0].aclose()
    assert hub.connection_count(u1) == 1

    await send(client, admin_headers, u1, message="still here")
    await settle()
    assert (await next_event(streams[1]))["type"] == "notification.insert"

    third = event_stream(hub, u1, StreamConnection())
    await next_event(third)
    assert hub.connection_count(u1) == 2

    await send(client, admin_headers, u1, message="both of you")
    await settle()
    assert (await next_event(streams[1]))["data"]["message"] == "both of you"
    assert (await next_event(third))["data"]["message"] == "both of you"

    await streams[1].aclose()
    await third.aclose()


@pytest.mark.asyncio
async def test_send_without_stream_opens_dangling_channel(client, hub, feed, make_user):
    _, admin_headers = await make_user("admin")
    u1, _ = await make_user("client")

    await send(client, admin_headers, u1)
    assert hub.has_channel(u1)
    assert hub.connection_count(u1) == 0
    handles = [h for h in feed.active_subscriptions() if h.event_filter.value == u1]
    assert len(handles) == 1

    # a second send reuses the channel
    await send(client, admin_headers, u1)
    handles = [h for h in feed.active_subscriptions() if h.event_filter.value == u1]
    assert len(handles) == 1


@pytest.mark.asyncio
async def test_lifespan_shutdown_tears_down_channels(hub, feed):
    stream = event_stream(hub, "u1", StreamConnection())
    await next_event(stream)
    hub.ensure_channel("u2")

    await hub.shutdown()
    assert feed.active_subscriptions() == []
    # closed connection ends the stream
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), 1.0)
