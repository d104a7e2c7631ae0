"""
Tests for two-party messaging and the per-client conversation view.
"""

import orjson
import pytest

from conftest import OTHER_CLIENT_PHONE
from core.client_storage import MESSAGES_KEY, MemoryClientStorage
from core.errors import StoreError, StoreErrorKind, ValidationError
from core.pubsub import message_channel
from services.messaging import ConversationView, room_id


class TestRoomId:

    def test_same_for_both_sides(self):
        assert room_id("b-user", "a-user") == room_id("a-user", "b-user") == "a-user-b-user"

    def test_differs_per_pair(self):
        assert room_id("a", "b") != room_id("a", "c")


# ============================================================================
# MessagingService
# ============================================================================


class TestSendMessage:
    """Validation, persistence, publish and receiver notification."""

    async def test_client_message_goes_to_admin(self, messaging, client_user, admin_user, database):
        message = await messaging.send_message(client_user, "  Hello admin  ")

        assert message["receiver_id"] == admin_user["id"]
        assert message["content"] == "Hello admin"
        assert message["is_read"] is False
        assert message["sender"] == {"full_name": "Ada Client", "is_admin": False}
        assert len(await database.select("messages")) == 1

    async def test_empty_content_rejected_before_insert(self, messaging, client_user, admin_user, database):
        with pytest.raises(ValidationError) as exc_info:
            await messaging.send_message(client_user, "   ")

        assert "content" in exc_info.value.errors
        assert await database.select("messages") == []

    async def test_overlong_content_rejected(self, messaging, client_user, admin_user, settings):
        with pytest.raises(ValidationError):
            await messaging.send_message(client_user, "x" * (settings.message_max_length + 1))

    async def test_admin_needs_open_conversation(self, messaging, admin_user):
        with pytest.raises(ValidationError) as exc_info:
            await messaging.send_message(admin_user, "Hi")
        assert "receiver_id" in exc_info.value.errors

    async def test_client_without_any_admin(self, messaging, client_user):
        with pytest.raises(ValidationError):
            await messaging.send_message(client_user, "Anyone there?")

    async def test_configured_admin_takes_precedence(self, messaging, client_user, admin_user, make_user):
        other_admin = await make_user("+2347012345678", full_name="Second Admin", is_admin=True)
        messaging.settings = messaging.settings.model_copy(update={"admin_user_id": other_admin["id"]})

        message = await messaging.send_message(client_user, "Hello")
        assert message["receiver_id"] == other_admin["id"]

    async def test_publishes_to_room(self, messaging, client_user, admin_user, pubsub):
        received = []
        pubsub.subscribe(message_channel(room_id(client_user["id"], admin_user["id"])), received.append)

        message = await messaging.send_message(client_user, "Ping")

        assert len(received) == 1
        assert orjson.loads(received[0])["id"] == message["id"]

    async def test_receiver_gets_notification(self, messaging, client_user, admin_user, notifications):
        await messaging.send_message(client_user, "Ping")

        rows = await notifications.list_notifications(admin_user["id"])
        assert len(rows) == 1
        assert rows[0]["type"] == "message"
        assert rows[0]["message"] == "You have a new message from Ada Client"

    async def test_publish_failure_does_not_fail_send(self, messaging, client_user, admin_user, monkeypatch):
        async def broken(channel, message):
            raise RuntimeError("registry down")

        monkeypatch.setattr(messaging.pubsub, "publish", broken)

        message = await messaging.send_message(client_user, "Still stored")
        assert message["content"] == "Still stored"

    async def test_insert_failure_propagates(self, messaging, client_user, admin_user, monkeypatch):
        async def broken(relation, values):
            raise StoreError(StoreErrorKind.NETWORK, "insert", relation)

        monkeypatch.setattr(messaging.database, "insert", broken)

        with pytest.raises(StoreError):
            await messaging.send_message(client_user, "Lost")

    async def test_notification_failure_does_not_fail_send(self, messaging, client_user, admin_user,
                                                           database, monkeypatch):
        insert = database.insert

        async def notifications_down(relation, values):
            if relation == "notifications":
                raise StoreError(StoreErrorKind.NETWORK, "insert", relation)
            return await insert(relation, values)

        monkeypatch.setattr(database, "insert", notifications_down)

        message = await messaging.send_message(client_user, "Delivered anyway")

        assert message["content"] == "Delivered anyway"
        assert [m["id"] for m in await database.select("messages")] == [message["id"]]
        assert await database.select("notifications") == []


class TestConversationAccess:

    async def test_client_may_open_admin_conversation(self, messaging, client_user, admin_user):
        await messaging.check_conversation_access(client_user, admin_user["id"])

    async def test_client_cannot_open_client_conversation(self, messaging, client_user, make_user):
        other = await make_user(OTHER_CLIENT_PHONE, full_name="Bob Client")

        with pytest.raises(StoreError) as exc_info:
            await messaging.check_conversation_access(client_user, other["id"])
        assert exc_info.value.kind == StoreErrorKind.PERMISSION_DENIED

    async def test_admin_may_open_any_conversation(self, messaging, admin_user, client_user):
        await messaging.check_conversation_access(admin_user, client_user["id"])

    async def test_unknown_partner(self, messaging, client_user):
        with pytest.raises(StoreError) as exc_info:
            await messaging.check_conversation_access(client_user, "missing")
        assert exc_info.value.kind == StoreErrorKind.NOT_FOUND


class TestFetchConversation:

    async def test_both_directions_oldest_first(self, messaging, client_user, admin_user):
        await messaging.send_message(client_user, "one")
        await messaging.send_message(admin_user, "two", client_user["id"])
        await messaging.send_message(client_user, "three")

        messages = await messaging.fetch_conversation(client_user["id"], admin_user["id"])
        assert [m["content"] for m in messages] == ["one", "two", "three"]

    async def test_marks_incoming_messages_read(self, messaging, client_user, admin_user, database):
        await messaging.send_message(client_user, "for the admin")
        await messaging.send_message(admin_user, "for the client", client_user["id"])

        messages = await messaging.fetch_conversation(admin_user["id"], client_user["id"])
        by_content = {m["content"]: m for m in messages}
        assert by_content["for the admin"]["is_read"] is True
        assert by_content["for the client"]["is_read"] is False

        stored = {m["content"]: m["is_read"] for m in await database.select("messages")}
        assert stored == {"for the admin": True, "for the client": False}

    async def test_other_pairs_excluded(self, messaging, client_user, admin_user, make_user):
        other = await make_user(OTHER_CLIENT_PHONE, full_name="Bob Client")
        await messaging.send_message(client_user, "mine")
        await messaging.send_message(other, "theirs")

        messages = await messaging.fetch_conversation(client_user["id"], admin_user["id"])
        assert [m["content"] for m in messages] == ["mine"]


class TestListConversations:

    async def test_latest_message_and_unread_count_per_client(self, messaging, client_user, admin_user, make_user):
        other = await make_user(OTHER_CLIENT_PHONE, full_name="Bob Client", company_name="Bob Co")
        await messaging.send_message(client_user, "first")
        await messaging.send_message(client_user, "second")
        await messaging.send_message(other, "hello")
        await messaging.send_message(admin_user, "reply", client_user["id"])

        conversations = await messaging.list_conversations(admin_user)
        by_user = {c["user_id"]: c for c in conversations}

        assert set(by_user) == {client_user["id"], other["id"]}
        assert by_user[client_user["id"]]["last_message"] == "reply"
        assert by_user[client_user["id"]]["unread_count"] == 2
        assert by_user[other["id"]]["user_company"] == "Bob Co"
        assert by_user[other["id"]]["unread_count"] == 1
        assert conversations[0]["user_id"] == client_user["id"]

    async def test_clients_get_no_inbox(self, messaging, client_user):
        assert await messaging.list_conversations(client_user) == []


# ============================================================================
# ConversationView
# ============================================================================


class TestConversationView:
    """Client-side message state with a bounded local cache."""

    async def test_start_loads_history_and_subscribes(self, messaging, client_user, admin_user,
                                                      client_storage, settings):
        await messaging.send_message(client_user, "earlier")
        view = ConversationView(messaging, client_user, client_storage, settings,
                                conversation_user_id=admin_user["id"])

        await view.start()

        assert view.is_loading is False
        assert [m["content"] for m in view.messages] == ["earlier"]
        assert orjson.loads(client_storage.get_item(MESSAGES_KEY))[0]["content"] == "earlier"
        view.stop()

    async def test_receives_messages_from_other_side(self, messaging, client_user, admin_user,
                                                     client_storage, settings):
        arrived = []
        view = ConversationView(messaging, client_user, client_storage, settings,
                                conversation_user_id=admin_user["id"], on_message=arrived.append)
        await view.start()

        await messaging.send_message(admin_user, "from admin", client_user["id"])

        assert [m["content"] for m in view.messages] == ["from admin"]
        assert arrived[0]["sender"]["is_admin"] is True
        view.stop()

    async def test_own_message_not_duplicated(self, messaging, client_user, admin_user, client_storage, settings):
        view = ConversationView(messaging, client_user, client_storage, settings,
                                conversation_user_id=admin_user["id"])
        await view.start()

        assert await view.send_message("hello") is True
        assert [m["content"] for m in view.messages] == ["hello"]
        view.stop()

    async def test_stop_ends_delivery(self, messaging, client_user, admin_user, client_storage, settings):
        view = ConversationView(messaging, client_user, client_storage, settings,
                                conversation_user_id=admin_user["id"])
        await view.start()
        view.stop()

        await messaging.send_message(admin_user, "missed", client_user["id"])
        assert view.messages == []

    async def test_blank_message_is_ignored(self, messaging, client_user, admin_user, client_storage, settings):
        view = ConversationView(messaging, client_user, client_storage, settings)
        assert await view.send_message("   ") is False
        assert view.error is None

    async def test_send_failure_sets_error(self, messaging, client_user, client_storage, settings):
        view = ConversationView(messaging, client_user, client_storage, settings)

        assert await view.send_message("nobody to receive") is False
        assert view.error is not None
        assert view.is_sending is False

    async def test_store_failure_reported_as_user_message(self, messaging, client_user, admin_user,
                                                          client_storage, settings, monkeypatch):
        async def broken(relation, values):
            raise StoreError(StoreErrorKind.PERMISSION_DENIED, "insert", relation)

        monkeypatch.setattr(messaging.database, "insert", broken)
        view = ConversationView(messaging, client_user, client_storage, settings)

        assert await view.send_message("hi") is False
        assert view.error == "You do not have permission to perform this action."

    async def test_local_cache_is_bounded(self, messaging, client_user, settings):
        settings = settings.model_copy(update={"local_message_cache_limit": 3})
        storage = MemoryClientStorage()
        view = ConversationView(messaging, client_user, storage, settings)

        for i in range(5):
            view._append({"id": f"m{i}", "content": str(i)})

        cached = orjson.loads(storage.get_item(MESSAGES_KEY))
        assert [m["id"] for m in cached] == ["m2", "m3", "m4"]
        assert len(view.messages) == 5

    async def test_corrupt_local_cache_ignored(self, messaging, client_user, settings):
        storage = MemoryClientStorage({MESSAGES_KEY: "{not json"})
        view = ConversationView(messaging, client_user, storage, settings)
        assert view.messages == []

    async def test_admin_inbox_loaded_without_conversation(self, messaging, client_user, admin_user,
                                                           client_storage, settings):
        await messaging.send_message(client_user, "hi")
        view = ConversationView(messaging, admin_user, client_storage, settings)

        await view.start()

        assert [c["user_id"] for c in view.conversations] == [client_user["id"]]
