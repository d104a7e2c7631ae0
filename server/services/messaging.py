"""Two-party messaging between clients and admins.

Every message is inserted durably, then hinted on ``message:{room_id}`` and
followed by a notification to the receiver. Only the insert can fail a send.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import orjson

from core.client_storage import ClientStorage, CONVERSATIONS_KEY, MESSAGES_KEY
from core.config import Settings
from core.database import Database
from core.errors import StoreError, StoreErrorKind, ValidationError
from core.logging import get_logger
from core.pubsub import PubSubService, Subscription, message_channel, parse_payload
from services import validation
from services.notifications import NotificationService

logger = get_logger(__name__)

MessageCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def room_id(user_a: str, user_b: str) -> str:
    """Room shared by two users; the same whichever side asks."""
    return "-".join(sorted([str(user_a), str(user_b)]))


def _sender_info(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"full_name": user.get("full_name"), "is_admin": bool(user.get("is_admin"))}


class MessagingService:
    """Send, fetch and subscribe to conversations."""

    def __init__(self, database: Database, pubsub: PubSubService,
                 notifications: NotificationService, settings: Settings):
        self.database = database
        self.pubsub = pubsub
        self.notifications = notifications
        self.settings = settings

    def validate_content(self, content: Optional[str]) -> str:
        form = validation.MessageForm.check(
            context={"max_length": self.settings.message_max_length}, content=content
        )
        return form.content

    async def resolve_recipient(self, sender: Dict[str, Any],
                                conversation_user_id: Optional[str] = None) -> str:
        """Admins reply to the open conversation; clients always write to the admin."""
        if sender.get("is_admin"):
            if not conversation_user_id:
                raise ValidationError.single("receiver_id", "Select a conversation first")
            return conversation_user_id

        if self.settings.admin_user_id:
            return self.settings.admin_user_id

        admins = await self.database.select("users", {"is_admin": True}, order_by="created_at", limit=1)
        if not admins:
            raise ValidationError.single("receiver_id", "No admin available to receive messages")
        return admins[0]["id"]

    async def check_conversation_access(self, user: Dict[str, Any], other_user_id: str) -> None:
        """Clients may only open a conversation with an admin."""
        if user.get("is_admin"):
            return
        other = await self.database.get_by_id("users", other_user_id)
        if not other.get("is_admin"):
            raise StoreError(StoreErrorKind.PERMISSION_DENIED, "select", "messages",
                             "Clients can only message the admin")

    async def send_message(self, sender: Dict[str, Any], content: str,
                           conversation_user_id: Optional[str] = None) -> Dict[str, Any]:
        """Store and deliver a message. Raises ValidationError or StoreError."""
        content = self.validate_content(content)
        receiver_id = await self.resolve_recipient(sender, conversation_user_id)

        row = await self.database.insert("messages", {
            "sender_id": sender["id"],
            "receiver_id": receiver_id,
            "content": content,
            "is_read": False,
        })
        message = {**row, "sender": _sender_info(sender)}
        logger.info("Message sent", sender_id=sender["id"], receiver_id=receiver_id)

        await self.publish(room_id(sender["id"], receiver_id), message)
        sender_name = sender.get("full_name") or ("Admin" if sender.get("is_admin") else "Client")
        await self.notifications.notify_client_of_message(receiver_id, sender_name)
        return message

    async def publish(self, room: str, message: Dict[str, Any]) -> bool:
        channel = message_channel(room)
        try:
            return await self.pubsub.publish(channel, orjson.dumps(message).decode())
        except Exception as e:
            logger.warning("Message publish failed", channel=channel, error=str(e))
            return False

    async def fetch_conversation(self, user_id: str, other_id: str) -> List[Dict[str, Any]]:
        """Both directions, oldest first. Unread messages addressed to user_id are marked read."""
        messages = await self.database.select_conversation(user_id, other_id)
        unread = [m["id"] for m in messages if m["receiver_id"] == user_id and not m["is_read"]]
        if unread:
            await self.database.update("messages", {"is_read": True}, {"id": unread})
            marked = set(unread)
            messages = [{**m, "is_read": True} if m["id"] in marked else m for m in messages]
        return messages

    async def list_conversations(self, admin: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Latest message per client, newest conversation first."""
        if not admin.get("is_admin"):
            return []

        messages = await self.database.select("messages", order_by="created_at", descending=True)
        user_ids = {m["sender_id"] for m in messages} | {m["receiver_id"] for m in messages}
        users = {u["id"]: u for u in await self.database.select("users", {"id": list(user_ids)})} if user_ids else {}

        conversations: Dict[str, Dict[str, Any]] = {}
        for message in messages:
            sender = users.get(message["sender_id"], {})
            other_id = message["receiver_id"] if sender.get("is_admin") else message["sender_id"]
            other = users.get(other_id, {})
            if other.get("is_admin"):
                continue

            conversation = conversations.get(other_id)
            if conversation is None:
                conversation = conversations[other_id] = {
                    "user_id": other_id,
                    "user_name": other.get("full_name") or "Unknown User",
                    "user_company": other.get("company_name") or "",
                    "last_message": message["content"],
                    "last_message_time": message["created_at"],
                    "unread_count": 0,
                    "is_admin": False,
                }
            if message["sender_id"] == other_id and not message["is_read"]:
                conversation["unread_count"] += 1

        return list(conversations.values())

    def subscribe_room(self, user_a: str, user_b: str, callback: MessageCallback) -> Subscription:
        channel = message_channel(room_id(user_a, user_b))

        async def deliver(raw: str):
            payload = parse_payload(raw, channel)
            if payload is None:
                return
            result = callback(payload)
            if inspect.isawaitable(result):
                await result

        return self.pubsub.subscribe(channel, deliver)


class ConversationView:
    """Message state for one client and one open conversation.

    ``messages`` and ``conversations`` are mirrored into client storage after
    every change, capped at ``settings.local_message_cache_limit`` entries.
    """

    def __init__(self, service: MessagingService, user: Optional[Dict[str, Any]],
                 storage: ClientStorage, settings: Settings,
                 conversation_user_id: Optional[str] = None,
                 on_message: Optional[MessageCallback] = None):
        self.service = service
        self.user = user
        self.storage = storage
        self.settings = settings
        self.conversation_user_id = conversation_user_id
        self.on_message = on_message
        self.messages: List[Dict[str, Any]] = self._load(MESSAGES_KEY)
        self.conversations: List[Dict[str, Any]] = self._load(CONVERSATIONS_KEY)
        self.is_loading = True
        self.is_sending = False
        self.error: Optional[str] = None
        self._subscription: Optional[Subscription] = None

    def _load(self, key: str) -> List[Dict[str, Any]]:
        stored = self.storage.get_item(key)
        if not stored:
            return []
        try:
            value = orjson.loads(stored)
        except orjson.JSONDecodeError as e:
            logger.warning("Ignoring corrupt client cache", key=key, error=str(e))
            return []
        return value if isinstance(value, list) else []

    def _save(self, key: str, items: List[Dict[str, Any]]) -> None:
        limit = self.settings.local_message_cache_limit
        self.storage.set_item(key, orjson.dumps(items[-limit:]).decode())

    def _set_messages(self, messages: List[Dict[str, Any]]) -> None:
        self.messages = messages
        self._save(MESSAGES_KEY, messages)

    def _append(self, message: Dict[str, Any]) -> bool:
        if any(m.get("id") == message.get("id") for m in self.messages):
            return False
        self._set_messages(self.messages + [message])
        return True

    async def _on_room_message(self, message: Dict[str, Any]) -> None:
        if self._append(message) and self.on_message is not None:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result

    async def start(self) -> None:
        if not self.user:
            self.is_loading = False
            return
        self.stop()
        if self.conversation_user_id:
            self._subscription = self.service.subscribe_room(
                self.user["id"], self.conversation_user_id, self._on_room_message
            )
            await self.refetch_messages()
        elif self.user.get("is_admin"):
            await self.refetch_conversations()
        self.is_loading = False

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def refetch_messages(self) -> bool:
        if not self.user or not self.conversation_user_id:
            return False
        try:
            messages = await self.service.fetch_conversation(self.user["id"], self.conversation_user_id)
        except StoreError as e:
            self.error = e.user_message
            return False
        finally:
            self.is_loading = False
        self._set_messages(messages)
        self.error = None
        return True

    async def refetch_conversations(self) -> bool:
        if not self.user or not self.user.get("is_admin"):
            return False
        try:
            self.conversations = await self.service.list_conversations(self.user)
        except StoreError as e:
            self.error = e.user_message
            return False
        self._save(CONVERSATIONS_KEY, self.conversations)
        self.error = None
        return True

    async def send_message(self, content: str) -> bool:
        if not self.user or not (content or "").strip():
            return False

        self.is_sending = True
        try:
            message = await self.service.send_message(self.user, content, self.conversation_user_id)
        except (StoreError, ValidationError) as e:
            self.error = e.user_message if isinstance(e, StoreError) else str(e)
            logger.warning("Error sending message", user_id=self.user["id"], error=str(e))
            return False
        finally:
            self.is_sending = False

        self._append(message)
        self.error = None
        return True
