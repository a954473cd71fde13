# api/routes_notifications.py
from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_notification_service
from core.auth import get_current_user
from core.response import ok
from services.notification_service import NotificationDBService

router = APIRouter()


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    service: NotificationDBService = Depends(get_notification_service),
):
    """The caller's notifications, newest first."""
    return ok(await service.list_for_recipient(user["user_id"], unread_only=unread_only, limit=limit))


@router.get("/unread-count")
async def unread_count(
    user: dict = Depends(get_current_user),
    service: NotificationDBService = Depends(get_notification_service),
):
    return ok({"count": await service.unread_count(user["user_id"])})


@router.put("/read-all")
async def mark_all_read(
    user: dict = Depends(get_current_user),
    service: NotificationDBService = Depends(get_notification_service),
):
    return ok({"updated": await service.mark_all_read(user["user_id"])})


@router.put("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: dict = Depends(get_current_user),
    service: NotificationDBService = Depends(get_notification_service),
):
    row = await service.mark_read(user["user_id"], notification_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return ok(row)


@router.delete("/read")
async def delete_all_read(
    user: dict = Depends(get_current_user),
    service: NotificationDBService = Depends(get_notification_service),
):
    return ok({"deleted": await service.delete_all_read(user["user_id"])})


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: dict = Depends(get_current_user),
    service: NotificationDBService = Depends(get_notification_service),
):
    if not await service.delete_for_recipient(user["user_id"], notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return ok({"deleted": notification_id})
