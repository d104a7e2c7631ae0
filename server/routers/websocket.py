"""WebSocket router for real-time portal events.

One socket per signed-in client. Server pushes:
- ``notification``: new notification for the user
- ``message``: new message in the joined conversation
- ``change`` / ``toast``: table change events (admins only)

Client requests carry a ``type`` and an optional ``request_id`` that is echoed
back on the response.
"""

import asyncio
import time
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.client_storage import CookieClientStorage, MemoryClientStorage
from core.container import container
from core.errors import StoreError
from core.logging import get_logger
from core.pubsub import SubscriptionGroup
from services.messaging import ConversationView
from services.notifications import NotificationFeed
from services.realtime import FEEDS, RealtimeService
from services.session import AuthSession

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])

# =============================================================================
# Concurrent Send Protection
# =============================================================================
_send_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


async def _safe_send(websocket: WebSocket, data: dict):
    """WebSocket send with a lock to prevent concurrent writes."""
    if websocket not in _send_locks:
        _send_locks[websocket] = asyncio.Lock()
    async with _send_locks[websocket]:
        try:
            await websocket.send_json(data)
        except Exception as e:
            logger.error("WebSocket send error", error=str(e))


class EventConnection:
    """Per-socket state: the user's notification feed, an open conversation, admin feeds."""

    def __init__(self, websocket: WebSocket, user: Dict[str, Any]):
        self.websocket = websocket
        self.user = user
        self.settings = container.settings()
        self.storage = MemoryClientStorage()
        self.feed = NotificationFeed(container.notification_service(), user, on_notification=self._push_notification)
        self.conversation: Optional[ConversationView] = None
        self.admin_feeds: Optional[SubscriptionGroup] = None
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "ping": self.handle_ping,
            "join_room": self.handle_join_room,
            "leave_room": self.handle_leave_room,
            "send_message": self.handle_send_message,
            "get_notifications": self.handle_get_notifications,
            "mark_read": self.handle_mark_read,
            "mark_all_read": self.handle_mark_all_read,
        }

    async def open(self) -> None:
        await self.feed.start()
        await _safe_send(self.websocket, {
            "type": "notifications",
            "data": self.feed.notifications,
            "unread_count": self.feed.unread_count,
        })
        if self.user.get("is_admin"):
            realtime = RealtimeService(container.pubsub(), on_toast=self._push_toast)
            self.admin_feeds = realtime.subscribe_admin(**{table: self._push_change for table in FEEDS})

    def close(self) -> None:
        self.feed.stop()
        if self.conversation is not None:
            self.conversation.stop()
            self.conversation = None
        if self.admin_feeds is not None:
            self.admin_feeds.unsubscribe()
            self.admin_feeds = None

    # Server pushes

    async def _push_notification(self, notification: Dict[str, Any]) -> None:
        await _safe_send(self.websocket, {"type": "notification", "data": notification})

    async def _push_message(self, message: Dict[str, Any]) -> None:
        await _safe_send(self.websocket, {"type": "message", "data": message})

    async def _push_change(self, change: Dict[str, Any]) -> None:
        await _safe_send(self.websocket, {"type": "change", "data": change})

    async def _push_toast(self, toast: Dict[str, str]) -> None:
        await _safe_send(self.websocket, {"type": "toast", "data": toast})

    # Client requests

    async def dispatch(self, data: Dict[str, Any]) -> None:
        msg_type = data.get("type", "")
        request_id = data.get("request_id")
        handler = self.handlers.get(msg_type)

        if handler is None:
            logger.warning("Unknown WebSocket message type", type=msg_type)
            result = {"type": "error", "message": f"Unknown message type: {msg_type}"}
        else:
            try:
                result = await handler(data)
            except Exception as e:
                logger.error("WebSocket handler error", type=msg_type, error=str(e), exc_info=True)
                result = {"type": "error", "success": False, "error": str(e)}

        if request_id:
            result["request_id"] = request_id
        await _safe_send(self.websocket, result)

    async def handle_ping(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "pong", "timestamp": time.time()}

    async def handle_join_room(self, data: Dict[str, Any]) -> Dict[str, Any]:
        other_id = data.get("user_id")
        if not other_id:
            return {"type": "error", "success": False, "error": "user_id required"}

        messaging = container.messaging_service()
        try:
            await messaging.check_conversation_access(self.user, other_id)
        except StoreError as e:
            return {"type": "error", "success": False, "error": e.user_message}

        if self.conversation is not None:
            self.conversation.stop()
        self.conversation = ConversationView(
            messaging, self.user, self.storage, self.settings,
            conversation_user_id=other_id, on_message=self._push_message
        )
        await self.conversation.start()
        return {
            "type": "messages",
            "success": self.conversation.error is None,
            "user_id": other_id,
            "data": self.conversation.messages,
            "error": self.conversation.error,
        }

    async def handle_leave_room(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.conversation is not None:
            self.conversation.stop()
            self.conversation = None
        return {"type": "left_room", "success": True}

    async def handle_send_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.conversation is None:
            # Clients without an open room write to the admin
            self.conversation = ConversationView(
                container.messaging_service(), self.user, self.storage, self.settings,
                on_message=self._push_message
            )
        success = await self.conversation.send_message(data.get("content", ""))
        return {
            "type": "send_result",
            "success": success,
            "error": None if success else (self.conversation.error or "Message cannot be empty"),
        }

    async def handle_get_notifications(self, data: Dict[str, Any]) -> Dict[str, Any]:
        success = await self.feed.refetch()
        return {
            "type": "notifications",
            "success": success,
            "data": self.feed.notifications,
            "unread_count": self.feed.unread_count,
        }

    async def handle_mark_read(self, data: Dict[str, Any]) -> Dict[str, Any]:
        notification_id = data.get("id")
        if not notification_id:
            return {"type": "error", "success": False, "error": "id required"}
        success = await self.feed.mark_as_read(notification_id)
        return {"type": "marked_read", "success": success, "unread_count": self.feed.unread_count}

    async def handle_mark_all_read(self, data: Dict[str, Any]) -> Dict[str, Any]:
        success = await self.feed.mark_all_as_read()
        return {"type": "marked_read", "success": success, "unread_count": self.feed.unread_count}


async def _authenticate(websocket: WebSocket) -> Optional[Dict[str, Any]]:
    settings = container.settings()
    storage = CookieClientStorage(dict(websocket.cookies), settings)
    session = AuthSession(container.cache(), container.user_auth_service(), storage, settings)
    return await session.restore()


@router.websocket("/ws/events")
async def websocket_events_endpoint(websocket: WebSocket):
    """Real-time notifications, room messages and admin change events."""
    user = await _authenticate(websocket)
    if user is None:
        await websocket.close(code=4001, reason="Not authenticated")
        return

    await websocket.accept()
    connection = EventConnection(websocket, user)
    logger.info("WebSocket connected", user_id=user["id"], is_admin=bool(user.get("is_admin")))

    try:
        await connection.open()
        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict):
                await connection.dispatch(data)
    except WebSocketDisconnect:
        pass
    finally:
        connection.close()
        logger.info("WebSocket disconnected", user_id=user["id"])
