"""
Realtime wiring: the change feed and the notification hub.

Built once in the app lifespan and stored on app.state; request handlers get
them through the dependencies below instead of importing module globals.
"""
import logging
from dataclasses import dataclass

from fastapi import Request

from config.settings import settings
from infra.change_feed import ChangeFeed, build_change_feed
from services.notification_hub import NotificationHub

logger = logging.getLogger(__name__)


@dataclass
class Realtime:
    feed: ChangeFeed
    hub: NotificationHub

    async def close(self) -> None:
        # subscriptions first, then the feed connection they ride on
        await self.hub.shutdown()
        await self.feed.close()


def build_realtime(feed: ChangeFeed | None = None) -> Realtime:
    feed = feed or build_change_feed(
        settings.CHANGE_FEED_BACKEND, settings.REDIS_URL, prefix=settings.CHANGE_FEED_PREFIX
    )
    hub = NotificationHub(
        feed,
        heartbeat_interval=settings.SSE_HEARTBEAT_SECONDS,
        idle_grace=settings.HUB_IDLE_CHANNEL_GRACE_SECONDS,
        retry_base=settings.HUB_RETRY_BASE_SECONDS,
        retry_max=settings.HUB_RETRY_MAX_SECONDS,
    )
    logger.info("Realtime hub ready (feed=%s)", type(feed).__name__)
    return Realtime(feed=feed, hub=hub)


def get_realtime(request: Request) -> Realtime:
    return request.app.state.realtime


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.realtime.hub
