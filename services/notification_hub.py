"""
Realtime notification fan-out hub.

Purpose:
- Keep one upstream change-feed subscription per watched recipient
- Multiplex each upstream notification change to every open SSE stream of that recipient
- Own channel and connection lifecycle: registration, idle teardown, heartbeats, shutdown

Lifecycle per recipient:
    NO_CHANNEL --ensure_channel/register_connection--> CHANNEL_ACTIVE(connections=0..N)
    CHANNEL_ACTIVE --last unregister_connection--> NO_CHANNEL (upstream cancelled)
    CHANNEL_ACTIVE(0 connections) --grace window elapsed--> NO_CHANNEL

Concurrency:
- Everything runs on the asyncio event loop; hub operations are synchronous and
  never await, so the two tables need no locking.
- Delivery is best effort: failures on one connection are logged and skipped,
  no replay for connections that attach later. The stored notification rows
  stay the source of truth.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from infra.change_feed import ALL_EVENTS, ChangeEvent, ChangeFeed, EventFilter, SubscriptionHandle, UPDATE

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "notifications"
RECIPIENT_COLUMN = "recipient_id"


class ConnectionClosedError(Exception):
    """Raised when writing to a stream whose client has gone away."""


def _json_default(value: Any):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class StreamConnection:
    """
    One server-sent-events client.

    Frames are pre-encoded and buffered in a bounded queue that the HTTP
    response generator drains. A full queue means the client is not keeping up;
    the write fails and the event is dropped for that client only.
    """

    def __init__(self, max_queue: int = 100):
        self.queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=max_queue)
        self.closed = False

    def send(self, event: dict) -> None:
        self._put(f"data: {json.dumps(event, default=_json_default)}\n\n")

    def send_comment(self, text: str) -> None:
        self._put(f": {text}\n\n")

    def _put(self, frame: str) -> None:
        if self.closed:
            raise ConnectionClosedError("stream is closed")
        self.queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # end marker wakes the reader; make room for it if the reader is behind
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    async def frames(self):
        """Yield encoded frames until the connection is closed."""
        while True:
            frame = await self.queue.get()
            if frame is None:
                return
            yield frame


@dataclass(eq=False)
class _Channel:
    recipient_id: str
    handle: Optional[SubscriptionHandle] = None
    failures: int = 0
    retry_timer: Optional[asyncio.TimerHandle] = None
    grace_timer: Optional[asyncio.TimerHandle] = None
    heartbeats: dict = field(default_factory=dict)  # StreamConnection -> asyncio.Task


class NotificationHub:
    """
    Owns the channel table (recipient -> upstream subscription) and the
    connection registry (recipient -> set of open streams).

    The reference count of a channel is the size of its connection set.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        heartbeat_interval: float = 25.0,
        idle_grace: float = 30.0,
        retry_base: float = 1.0,
        retry_max: float = 30.0,
    ):
        self.feed = feed
        self.heartbeat_interval = heartbeat_interval
        self.idle_grace = idle_grace
        self.retry_base = retry_base
        self.retry_max = retry_max
        self._channels: dict[str, _Channel] = {}
        self._connections: dict[str, set[StreamConnection]] = {}
        self._closed = False

    # ---------------- introspection ----------------

    @property
    def closed(self) -> bool:
        return self._closed

    def has_channel(self, recipient_id: str) -> bool:
        return recipient_id in self._channels

    def channel_handle(self, recipient_id: str) -> Optional[SubscriptionHandle]:
        channel = self._channels.get(recipient_id)
        return channel.handle if channel else None

    def connection_count(self, recipient_id: str) -> int:
        return len(self._connections.get(recipient_id, ()))

    def stats(self) -> dict:
        return {
            "channels": len(self._channels),
            "connections": sum(len(c) for c in self._connections.values()),
        }

    # ---------------- channel lifecycle ----------------

    def ensure_channel(self, recipient_id: str) -> None:
        """
        Make sure an upstream subscription exists for the recipient.

        Idempotent. A channel created (or found) with no open connection is
        torn down after the idle grace window unless a stream registers first.
        """
        if self._closed:
            return
        channel = self._channels.get(recipient_id)
        if channel is None:
            channel = _Channel(recipient_id=recipient_id)
            self._channels[recipient_id] = channel
            self._subscribe(channel)
            logger.info("Opened notification channel for %s", recipient_id)
        if not self._connections.get(recipient_id):
            self._arm_grace_timer(channel)

    def _subscribe(self, channel: _Channel) -> None:
        recipient_id = channel.recipient_id
        event_filter = EventFilter(
            table=NOTIFICATIONS_TABLE, column=RECIPIENT_COLUMN, value=recipient_id, events=ALL_EVENTS
        )
        try:
            channel.handle = self.feed.subscribe(
                event_filter,
                lambda event: self._on_change(recipient_id, event),
                on_error=lambda handle, exc: self._on_upstream_error(recipient_id, handle, exc),
            )
        except Exception as e:
            channel.handle = None
            self._on_upstream_error(recipient_id, None, e)

    def _teardown(self, recipient_id: str) -> None:
        channel = self._channels.pop(recipient_id, None)
        if channel is None:
            return
        for timer in (channel.retry_timer, channel.grace_timer):
            if timer is not None:
                timer.cancel()
        for task in channel.heartbeats.values():
            task.cancel()
        if channel.handle is not None:
            try:
                self.feed.unsubscribe(channel.handle)
            except Exception as e:
                logger.warning("Unsubscribe failed for %s: %s", recipient_id, e)
        logger.info("Closed notification channel for %s", recipient_id)

    def _arm_grace_timer(self, channel: _Channel) -> None:
        if channel.grace_timer is not None:
            channel.grace_timer.cancel()
        loop = asyncio.get_running_loop()
        channel.grace_timer = loop.call_later(self.idle_grace, self._expire_idle, channel)

    def _expire_idle(self, channel: _Channel) -> None:
        channel.grace_timer = None
        if self._channels.get(channel.recipient_id) is not channel:
            return
        if self._connections.get(channel.recipient_id):
            return
        logger.info("No stream attached to %s within %.0fs; dropping channel", channel.recipient_id, self.idle_grace)
        self._teardown(channel.recipient_id)

    # ---------------- upstream supervision ----------------

    def _on_upstream_error(self, recipient_id: str, handle: Optional[SubscriptionHandle], exc: BaseException) -> None:
        channel = self._channels.get(recipient_id)
        if channel is None or (handle is not None and channel.handle is not handle):
            return
        if channel.handle is not None:
            try:
                self.feed.unsubscribe(channel.handle)
            except Exception as e:
                logger.debug("Ignoring unsubscribe error for %s: %s", recipient_id, e)
            channel.handle = None
        delay = min(self.retry_base * (2 ** channel.failures), self.retry_max)
        channel.failures += 1
        logger.warning(
            "Upstream subscription for %s failed (%s); retry #%d in %.1fs",
            recipient_id, exc, channel.failures, delay,
        )
        if channel.retry_timer is not None:
            channel.retry_timer.cancel()
        channel.retry_timer = asyncio.get_running_loop().call_later(delay, self._resubscribe, channel)

    def _resubscribe(self, channel: _Channel) -> None:
        channel.retry_timer = None
        if self._closed or self._channels.get(channel.recipient_id) is not channel:
            return
        self._subscribe(channel)

    def _on_change(self, recipient_id: str, change: ChangeEvent) -> None:
        channel = self._channels.get(recipient_id)
        if channel is not None:
            channel.failures = 0
        event = {"type": f"notification.{change.event_type}"}
        if change.event_type == UPDATE:
            event["data"] = change.new_row
            event["old"] = change.old_row
        elif change.new_row is not None:
            event["data"] = change.new_row
        else:
            event["data"] = change.old_row
        self.deliver(recipient_id, event)

    # ---------------- connection registry ----------------

    def register_connection(self, recipient_id: str, connection: StreamConnection) -> None:
        """Attach a stream; it gets the ready event before anything else."""
        self.ensure_channel(recipient_id)
        channel = self._channels.get(recipient_id)
        if channel is None:
            raise RuntimeError("notification hub is shut down")
        if channel.grace_timer is not None:
            channel.grace_timer.cancel()
            channel.grace_timer = None

        connection.send({"type": "ready", "userId": recipient_id})
        self._connections.setdefault(recipient_id, set()).add(connection)
        channel.heartbeats[connection] = asyncio.get_running_loop().create_task(
            self._heartbeat(connection), name=f"sse-heartbeat-{recipient_id}"
        )
        logger.info("Stream registered for %s (%d open)", recipient_id, self.connection_count(recipient_id))

    def unregister_connection(self, recipient_id: str, connection: StreamConnection) -> None:
        """Detach a stream; the last one out tears the channel down."""
        connection.close()
        channel = self._channels.get(recipient_id)
        if channel is not None:
            task = channel.heartbeats.pop(connection, None)
            if task is not None:
                task.cancel()
        connections = self._connections.get(recipient_id)
        if connections is None:
            return
        connections.discard(connection)
        logger.info("Stream unregistered for %s (%d open)", recipient_id, len(connections))
        if not connections:
            del self._connections[recipient_id]
            self._teardown(recipient_id)

    def deliver(self, recipient_id: str, event: dict) -> int:
        """Write the event to every open stream of the recipient; returns attempts made."""
        attempts = 0
        for connection in list(self._connections.get(recipient_id, ())):
            attempts += 1
            try:
                connection.send(event)
            except (ConnectionClosedError, asyncio.QueueFull) as e:
                logger.debug("Skipping stream for %s: %r", recipient_id, e)
            except Exception:
                logger.exception("Unexpected delivery failure for %s", recipient_id)
        return attempts

    async def _heartbeat(self, connection: StreamConnection) -> None:
        while not connection.closed:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                connection.send_comment("ping")
            except (ConnectionClosedError, asyncio.QueueFull):
                pass

    # ---------------- shutdown ----------------

    async def shutdown(self) -> None:
        """Cancel every upstream subscription and timer; close open streams."""
        self._closed = True
        for recipient_id in list(self._connections):
            for connection in self._connections.pop(recipient_id):
                connection.close()
        for recipient_id in list(self._channels):
            self._teardown(recipient_id)
        logger.info("Notification hub shut down")
