"""
Row-level change feed (insert / update / delete events per table).

Purpose:
- Let the notification hub watch rows for one recipient without polling
- Publish side is called by the store layer after each committed write
- Subscribe side registers a filtered listener and returns a handle immediately

Backends:
- InMemoryChangeFeed: single process; callbacks are scheduled on the running
  event loop in publish order
- RedisChangeFeed: Redis pub/sub, one channel per (table, column, value), so
  several API processes see each other's writes

Subscriptions are fire-and-forget: subscribe() never blocks and never raises
for wire problems; the listener reports them through on_error instead.
"""
import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
ALL_EVENTS = frozenset({INSERT, UPDATE, DELETE})


@dataclass(frozen=True)
class EventFilter:
    """Restricts a subscription to one table, a set of events and column == value."""
    table: str
    column: str
    value: str
    events: frozenset = ALL_EVENTS

    def matches(self, event: "ChangeEvent") -> bool:
        if event.table != self.table or event.event_type not in self.events:
            return False
        row = event.new_row if event.event_type != DELETE else event.old_row
        return row is not None and str(row.get(self.column)) == str(self.value)


@dataclass
class ChangeEvent:
    table: str
    event_type: str
    new_row: Optional[dict]
    old_row: Optional[dict] = None


ChangeCallback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[["SubscriptionHandle", BaseException], None]

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class SubscriptionHandle:
    """Identity of one upstream registration; a new subscribe() always yields a new handle."""
    event_filter: EventFilter
    callback: ChangeCallback
    on_error: Optional[ErrorCallback] = None
    id: int = field(default_factory=lambda: next(_handle_ids))
    active: bool = True
    task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        f = self.event_filter
        return f"<SubscriptionHandle #{self.id} {f.table}.{f.column}={f.value} active={self.active}>"


def _json_default(value: Any):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class ChangeFeed:
    """Interface shared by the feed backends."""

    def subscribe(self, event_filter: EventFilter, callback: ChangeCallback,
                  on_error: Optional[ErrorCallback] = None) -> SubscriptionHandle:
        raise NotImplementedError

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        raise NotImplementedError

    async def publish(self, table: str, event_type: str, new_row: Optional[dict],
                      old_row: Optional[dict] = None, filter_column: str = "recipient_id") -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryChangeFeed(ChangeFeed):
    """Process-local feed; good for a single API worker and for tests."""

    def __init__(self):
        self._subscriptions: dict[int, SubscriptionHandle] = {}

    def subscribe(self, event_filter, callback, on_error=None) -> SubscriptionHandle:
        handle = SubscriptionHandle(event_filter=event_filter, callback=callback, on_error=on_error)
        self._subscriptions[handle.id] = handle
        logger.debug("Subscribed %r", handle)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.active = False
        self._subscriptions.pop(handle.id, None)

    def active_subscriptions(self) -> list[SubscriptionHandle]:
        return list(self._subscriptions.values())

    async def publish(self, table, event_type, new_row, old_row=None, filter_column="recipient_id") -> None:
        event = ChangeEvent(table=table, event_type=event_type, new_row=new_row, old_row=old_row)
        loop = asyncio.get_running_loop()
        for handle in list(self._subscriptions.values()):
            if handle.event_filter.matches(event):
                loop.call_soon(self._dispatch, handle, event)

    @staticmethod
    def _dispatch(handle: SubscriptionHandle, event: ChangeEvent) -> None:
        if not handle.active:
            return
        try:
            handle.callback(event)
        except Exception:
            logger.exception("Change callback failed for %r", handle)

    async def close(self) -> None:
        for handle in list(self._subscriptions.values()):
            self.unsubscribe(handle)


class RedisChangeFeed(ChangeFeed):
    """
    Redis pub/sub feed.

    Channel naming: "<prefix>:<table>:<column>:<value>". Each subscription owns
    a listener task with its own PubSub connection; when the listener dies the
    handle's on_error callback is invoked once.
    """

    def __init__(self, url: str, prefix: str = "changes"):
        self.url = url
        self.prefix = prefix
        self._redis: Optional[redis.Redis] = None
        self._handles: dict[int, SubscriptionHandle] = {}

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.Redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        return self._redis

    def channel_name(self, table: str, column: str, value: Any) -> str:
        return f"{self.prefix}:{table}:{column}:{value}"

    def subscribe(self, event_filter, callback, on_error=None) -> SubscriptionHandle:
        handle = SubscriptionHandle(event_filter=event_filter, callback=callback, on_error=on_error)
        self._handles[handle.id] = handle
        handle.task = asyncio.get_running_loop().create_task(
            self._listen(handle), name=f"change-feed-{handle.id}"
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handle.active = False
        self._handles.pop(handle.id, None)
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()

    async def _listen(self, handle: SubscriptionHandle) -> None:
        f = handle.event_filter
        channel = self.channel_name(f.table, f.column, f.value)
        pubsub = self._client().pubsub(ignore_subscribe_messages=True)
        failure: Optional[BaseException] = None
        try:
            await pubsub.subscribe(channel)
            logger.info("Listening on %s for %r", channel, handle)
            async for message in pubsub.listen():
                if not handle.active:
                    break
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                    event = ChangeEvent(
                        table=payload["table"],
                        event_type=payload["event"],
                        new_row=payload.get("new"),
                        old_row=payload.get("old"),
                    )
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("Dropping malformed change message on %s: %s", channel, e)
                    continue
                if not f.matches(event):
                    continue
                try:
                    handle.callback(event)
                except Exception:
                    logger.exception("Change callback failed for %r", handle)
            else:
                failure = ConnectionError(f"pub/sub stream for {channel} ended")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = e
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as e:
                logger.debug("Ignoring pub/sub close error on %s: %s", channel, e)

        if failure is not None and handle.active:
            logger.warning("Change feed listener for %r failed: %s", handle, failure)
            if handle.on_error is not None:
                handle.on_error(handle, failure)

    async def publish(self, table, event_type, new_row, old_row=None, filter_column="recipient_id") -> None:
        row = new_row if event_type != DELETE else old_row
        if not row or row.get(filter_column) is None:
            return
        channel = self.channel_name(table, filter_column, row[filter_column])
        payload = json.dumps({"table": table, "event": event_type, "new": new_row, "old": old_row}, default=_json_default)
        try:
            await self._client().publish(channel, payload)
        except Exception as e:
            # the row is already committed; live listeners just miss this change
            logger.error("Change feed publish to %s failed: %s", channel, e)

    async def close(self) -> None:
        tasks = []
        for handle in list(self._handles.values()):
            self.unsubscribe(handle)
            if handle.task is not None:
                tasks.append(handle.task)
        # listeners unsubscribe in their finally; let that run before the pool closes
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_change_feed(backend: str, redis_url: str, prefix: str = "changes") -> ChangeFeed:
    if backend == "redis":
        logger.info("Using Redis change feed at %s", redis_url)
        return RedisChangeFeed(redis_url, prefix=prefix)
    if backend != "memory":
        logger.warning("Unknown CHANGE_FEED_BACKEND=%s, falling back to in-memory feed", backend)
    return InMemoryChangeFeed()
