"""
Server-sent events endpoint for live notification changes.

GET /api/rt/notifications/{user_id}
- first frame: {"type": "ready", "userId": ...}
- then notification.insert / notification.update / notification.delete events
- ": ping" comment lines keep proxies from closing the idle stream
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from config.settings import settings
from core.realtime import get_hub
from services.notification_hub import NotificationHub, StreamConnection

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def event_stream(hub: NotificationHub, user_id: str, connection: StreamConnection):
    """
    Register on first iteration and unregister when the generator ends:
    client disconnect, cancellation or hub shutdown all run the finally.
    """
    hub.register_connection(user_id, connection)
    try:
        async for frame in connection.frames():
            yield frame
    finally:
        hub.unregister_connection(user_id, connection)


@router.get("/notifications")
async def notifications_stream_missing_user():
    raise HTTPException(status_code=400, detail="userId is required")


@router.get("/notifications/{user_id}")
async def notifications_stream(user_id: str, hub: NotificationHub = Depends(get_hub)):
    user_id = user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required")
    if hub.closed:
        raise HTTPException(status_code=503, detail="Server is shutting down")

    connection = StreamConnection(max_queue=settings.SSE_QUEUE_SIZE)
    logger.info("Opening notification stream for %s", user_id)
    return StreamingResponse(
        event_stream(hub, user_id, connection),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
