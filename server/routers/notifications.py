"""Notification routes."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.container import container
from middleware.auth import get_current_user, require_admin
from services.notifications import NotificationService

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class CreateNotificationRequest(BaseModel):
    user_id: str
    type: str = Field(min_length=1, max_length=50)
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1, max_length=2000)


def get_notification_service() -> NotificationService:
    return container.notification_service()


@router.get("")
async def list_notifications(
    user: dict = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service)
):
    """Newest notifications for the current user."""
    rows = await notifications.list_notifications(user["id"])
    return {
        "notifications": rows,
        "unread_count": sum(1 for n in rows if not n["is_read"])
    }


@router.post("/read-all")
async def mark_all_as_read(
    user: dict = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service)
):
    updated = await notifications.mark_all_as_read(user["id"])
    return {"success": True, "updated": updated}


@router.post("/{notification_id}/read")
async def mark_as_read(
    notification_id: str,
    user: dict = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service)
):
    notification = await notifications.mark_as_read(notification_id, user_id=user["id"])
    return {"success": True, "notification": notification}


@router.post("")
async def create_notification(
    body: CreateNotificationRequest,
    admin: dict = Depends(require_admin),
    notifications: NotificationService = Depends(get_notification_service)
):
    """Send a notification to a user (admin only)."""
    notification = await notifications.create_notification(
        body.user_id, body.type, body.title, body.message
    )
    return {"success": True, "notification": notification}
