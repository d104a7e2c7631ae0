"""Notifications: durable rows plus a real-time hint on ``notification:{user_id}``."""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

import orjson

from core.config import Settings
from core.database import Database
from core.errors import StoreError, StoreErrorKind
from core.logging import get_logger
from core.pubsub import PubSubService, Subscription, notification_channel, parse_payload

logger = get_logger(__name__)

NotificationCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
ClientUpdateType = Literal["project_created", "folder_created", "content_updated"]

STATUS_MESSAGES = {
    "starting": "Your project is now in the starting phase",
    "in_progress": "Your project is now in progress",
    "completed": "Your project has been completed",
}


class NotificationService:
    """Creates, lists and marks notifications."""

    def __init__(self, database: Database, pubsub: PubSubService, settings: Settings):
        self.database = database
        self.pubsub = pubsub
        self.settings = settings

    async def create_notification(self, user_id: str, type: str, title: str, message: str) -> Dict[str, Any]:
        """Insert a notification and announce it. StoreError propagates; publish failures do not."""
        row = await self.database.insert("notifications", {
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "is_read": False,
        })
        await self.publish(user_id, row)
        return row

    async def publish(self, user_id: str, notification: Dict[str, Any]) -> bool:
        channel = notification_channel(user_id)
        try:
            return await self.pubsub.publish(channel, orjson.dumps(notification).decode())
        except Exception as e:
            logger.warning("Notification publish failed", channel=channel, error=str(e))
            return False

    async def list_notifications(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Newest first."""
        return await self.database.select(
            "notifications", {"user_id": user_id},
            order_by="created_at", descending=True,
            limit=limit or self.settings.notification_page_size
        )

    async def mark_as_read(self, notification_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        filters = {"id": notification_id}
        if user_id is not None:
            filters["user_id"] = user_id
        rows = await self.database.update("notifications", {"is_read": True}, filters)
        if not rows:
            raise StoreError(StoreErrorKind.NOT_FOUND, "update", "notifications",
                             f"notifications {notification_id} not found")
        return rows[0]

    async def mark_all_as_read(self, user_id: str) -> int:
        rows = await self.database.update("notifications", {"is_read": True},
                                          {"user_id": user_id, "is_read": False})
        return len(rows)

    async def unread_count(self, user_id: str) -> int:
        rows = await self.database.select("notifications", {"user_id": user_id, "is_read": False})
        return len(rows)

    def subscribe(self, user_id: str, callback: NotificationCallback) -> Subscription:
        """Deliver parsed notifications for user_id to callback."""
        channel = notification_channel(user_id)

        async def deliver(message: str):
            payload = parse_payload(message, channel)
            if payload is None:
                return
            result = callback(payload)
            if inspect.isawaitable(result):
                await result

        return self.pubsub.subscribe(channel, deliver)

    # ============================================================================
    # Domain notifications
    # ============================================================================

    async def _notify(self, user_id: str, type: str, title: str, message: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.create_notification(user_id, type, title, message)
        except StoreError as e:
            logger.error("Error creating notification", user_id=user_id, type=type, error=str(e))
            return None

    async def notify_admins_of_client_update(self, client_name: str, project_name: str,
                                             update_type: ClientUpdateType) -> int:
        """Notify every admin about a client change. Returns how many were notified."""
        try:
            admins = await self.database.select("users", {"is_admin": True})
        except StoreError as e:
            logger.error("Error fetching admin users", error=str(e))
            return 0

        if update_type == "project_created":
            title, message = "New Project Created", f"{client_name} created a new project: {project_name}"
        elif update_type == "folder_created":
            title, message = "New Folder Added", f"{client_name} added a new folder to {project_name}"
        else:
            title, message = "Content Updated", f"{client_name} updated content in {project_name}"

        sent = 0
        for admin in admins:
            if await self._notify(admin["id"], update_type, title, message):
                sent += 1
        return sent

    async def notify_client_of_status_change(self, client_id: str, project_name: str, new_status: str):
        status_message = STATUS_MESSAGES.get(new_status, "Status updated")
        return await self._notify(client_id, "status_change", "Project Status Updated",
                                  f"{project_name}: {status_message}")

    async def notify_client_of_deliverable(self, client_id: str, project_name: str, deliverable_title: str):
        return await self._notify(client_id, "deliverable", "New Deliverable Available",
                                  f"{deliverable_title} is ready for {project_name}")

    async def notify_client_of_message(self, client_id: str, sender_name: str):
        return await self._notify(client_id, "message", "New Message",
                                  f"You have a new message from {sender_name}")


class NotificationFeed:
    """Live notification list for one signed-in user.

    ``on_notification`` fires for every real-time arrival (toasts, socket relay).
    Store failures are caught and reported through ``error``.
    """

    def __init__(self, service: NotificationService, user: Optional[Dict[str, Any]],
                 on_notification: Optional[NotificationCallback] = None):
        self.service = service
        self.user = user
        self.on_notification = on_notification
        self.notifications: List[Dict[str, Any]] = []
        self.unread_count = 0
        self.is_loading = True
        self.error: Optional[str] = None
        self._subscription: Optional[Subscription] = None

    async def start(self) -> None:
        if not self.user:
            self.is_loading = False
            return
        self.stop()
        self._subscription = self.service.subscribe(self.user["id"], self._on_message)
        await self.refetch()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _on_message(self, notification: Dict[str, Any]) -> None:
        self.notifications = [notification] + self.notifications
        self.unread_count += 1
        if self.on_notification is not None:
            result = self.on_notification(notification)
            if inspect.isawaitable(result):
                await result

    async def refetch(self) -> bool:
        if not self.user:
            return False
        try:
            self.notifications = await self.service.list_notifications(self.user["id"])
            self.unread_count = sum(1 for n in self.notifications if not n["is_read"])
            self.error = None
            return True
        except StoreError as e:
            self.error = e.user_message
            return False
        finally:
            self.is_loading = False

    async def mark_as_read(self, notification_id: str) -> bool:
        if not self.user:
            return False
        try:
            await self.service.mark_as_read(notification_id, user_id=self.user["id"])
        except StoreError as e:
            self.error = e.user_message
            return False
        was_unread = any(n["id"] == notification_id and not n["is_read"] for n in self.notifications)
        self.notifications = [
            {**n, "is_read": True} if n["id"] == notification_id else n for n in self.notifications
        ]
        if was_unread:
            self.unread_count = max(0, self.unread_count - 1)
        return True

    async def mark_all_as_read(self) -> bool:
        if not self.user:
            return False
        try:
            await self.service.mark_all_as_read(self.user["id"])
        except StoreError as e:
            self.error = e.user_message
            return False
        self.notifications = [{**n, "is_read": True} for n in self.notifications]
        self.unread_count = 0
        return True

    async def create_notification(self, user_id: str, type: str, title: str, message: str) -> bool:
        try:
            await self.service.create_notification(user_id, type, title, message)
            return True
        except StoreError as e:
            self.error = e.user_message
            return False
