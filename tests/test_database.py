"""
Tests for the durable store: CRUD, error classification and change events.
"""

import orjson
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from core.database import classify_error
from core.errors import StoreError, StoreErrorKind
from core.pubsub import changes_channel


class TestCrud:

    async def test_insert_fills_defaults(self, database, client_user):
        row = await database.insert("projects", {"user_id": client_user["id"], "name": "Site"})

        assert row["status"] == "starting"
        assert row["id"]
        assert row["created_at"]

    async def test_select_filters(self, database, client_user, admin_user):
        admins = await database.select("users", {"is_admin": True})
        assert [u["id"] for u in admins] == [admin_user["id"]]

        both = await database.select("users", {"id": [client_user["id"], admin_user["id"]]})
        assert len(both) == 2

    async def test_select_none_means_null(self, database, client_user):
        rows = await database.select("users", {"locked_until": None})
        assert [u["id"] for u in rows] == [client_user["id"]]

    async def test_update_returns_rows(self, database, project):
        rows = await database.update("projects", {"status": "in_progress"}, {"id": project["id"]})
        assert [r["status"] for r in rows] == ["in_progress"]

    async def test_update_without_match(self, database):
        assert await database.update("projects", {"status": "completed"}, {"id": "missing"}) == []

    async def test_delete(self, database, project):
        deleted = await database.delete("projects", {"id": project["id"]})
        assert [r["id"] for r in deleted] == [project["id"]]
        assert await database.select("projects") == []


class TestStoreErrors:

    async def test_get_by_id_missing(self, database):
        with pytest.raises(StoreError) as exc_info:
            await database.get_by_id("projects", "missing")

        error = exc_info.value
        assert error.kind == StoreErrorKind.NOT_FOUND
        assert (error.operation, error.relation) == ("select", "projects")

    async def test_duplicate_phone_is_constraint(self, database, client_user):
        with pytest.raises(StoreError) as exc_info:
            await database.insert("users", {
                "phone_number": client_user["phone_number"],
                "password_hash": "x",
            })
        assert exc_info.value.kind == StoreErrorKind.CONSTRAINT
        assert exc_info.value.operation == "insert"

    async def test_unknown_column(self, database):
        with pytest.raises(StoreError) as exc_info:
            await database.select("projects", {"colour": "red"})
        assert exc_info.value.kind == StoreErrorKind.CONSTRAINT

    async def test_unknown_relation(self, database):
        with pytest.raises(StoreError) as exc_info:
            await database.select("invoices")
        assert exc_info.value.kind == StoreErrorKind.NOT_FOUND

    async def test_unfiltered_delete_refused(self, database, project):
        with pytest.raises(StoreError):
            await database.delete("projects", {})
        assert len(await database.select("projects")) == 1

    def test_classify_error(self):
        assert classify_error(IntegrityError("stmt", {}, Exception("UNIQUE"))) == StoreErrorKind.CONSTRAINT
        assert classify_error(OperationalError("stmt", {}, Exception("gone"))) == StoreErrorKind.NETWORK
        assert classify_error(Exception("permission denied for table")) == StoreErrorKind.PERMISSION_DENIED
        assert classify_error(ValueError("odd")) == StoreErrorKind.UNKNOWN

    def test_user_messages(self):
        error = StoreError(StoreErrorKind.NETWORK, "select", "projects")
        assert error.user_message == "Network error. Please check your connection."
        assert StoreError(StoreErrorKind.UNKNOWN, "x", "y").user_message == "An unexpected error occurred"


class TestChangeEvents:
    """Mutations announced on changes:{relation}."""

    async def test_insert_update_delete_events(self, database, pubsub, client_user):
        events = []
        pubsub.subscribe(changes_channel("projects"), lambda raw: events.append(orjson.loads(raw)))

        row = await database.insert("projects", {"user_id": client_user["id"], "name": "Site"})
        await database.update("projects", {"status": "completed"}, {"id": row["id"]})
        await database.delete("projects", {"id": row["id"]})

        assert [e["eventType"] for e in events] == ["INSERT", "UPDATE", "DELETE"]
        assert all(e["table"] == "projects" for e in events)
        assert events[0]["new"]["name"] == "Site" and events[0]["old"] is None
        assert events[1]["old"]["status"] == "starting"
        assert events[1]["new"]["status"] == "completed"
        assert events[2]["new"] is None and events[2]["old"]["id"] == row["id"]

    async def test_no_event_without_subscribers(self, database, pubsub, client_user, monkeypatch):
        published = []

        async def spy(channel, message):
            published.append(channel)
            return True

        monkeypatch.setattr(pubsub, "publish", spy)
        await database.insert("projects", {"user_id": client_user["id"], "name": "Site"})
        assert published == []
