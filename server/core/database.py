"""Async durable store with SQLModel and SQLAlchemy 2.0.

Row-level CRUD over named relations. Every failed call raises a StoreError
naming the operation and relation; successful mutations are announced as
change events on ``changes:{relation}``.
"""

import orjson
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Type
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import and_, or_, delete as sa_delete
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)

from core.config import Settings
from core.errors import StoreError, StoreErrorKind
from core.logging import get_logger, log_store_operation
from core.pubsub import PubSubService, changes_channel
from models.auth import User
from models.cache import CacheEntry
from models.portal import (
    Broadcast,
    Deliverable,
    Folder,
    Message,
    Notification,
    Project,
    SecurityAlert,
    SystemAlert,
    SystemSetting,
)

logger = get_logger(__name__)

TABLES: Dict[str, Type[SQLModel]] = {
    "users": User,
    "projects": Project,
    "folders": Folder,
    "deliverables": Deliverable,
    "messages": Message,
    "notifications": Notification,
    "system_alerts": SystemAlert,
    "security_alerts": SecurityAlert,
    "system_settings": SystemSetting,
    "broadcasts": Broadcast,
}

_PERMISSION_MARKERS = ("permission denied", "insufficient privilege", "readonly database", "not authorized")


def classify_error(error: BaseException) -> StoreErrorKind:
    """Map a driver/ORM exception onto the store error taxonomy."""
    text = str(error).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return StoreErrorKind.PERMISSION_DENIED
    if isinstance(error, IntegrityError):
        return StoreErrorKind.CONSTRAINT
    if isinstance(error, (OperationalError, InterfaceError, DisconnectionError, ConnectionError, TimeoutError)):
        return StoreErrorKind.NETWORK
    if isinstance(error, (ProgrammingError, DBAPIError, SQLAlchemyError)):
        return StoreErrorKind.UNKNOWN
    return StoreErrorKind.UNKNOWN


def row_to_dict(row: SQLModel) -> Dict[str, Any]:
    return row.model_dump(mode="json")


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings, pubsub: Optional[PubSubService] = None):
        self.settings = settings
        self.pubsub = pubsub
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            import logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_options: Dict[str, Any] = {"echo": self.settings.database_echo}
            if not self.settings.is_sqlite:
                engine_options["pool_size"] = self.settings.database_pool_size
                engine_options["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_options)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Row-level CRUD
    # ============================================================================

    def _model(self, relation: str, operation: str) -> Type[SQLModel]:
        model = TABLES.get(relation)
        if model is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, operation, relation, f"Unknown relation: {relation}")
        return model

    def _check_columns(self, model: Type[SQLModel], columns: Iterable[str], operation: str, relation: str):
        known = set(model.__table__.columns.keys())
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise StoreError(
                StoreErrorKind.CONSTRAINT, operation, relation,
                f"Unknown column(s) for {relation}: {', '.join(unknown)}"
            )

    def _where(self, model: Type[SQLModel], filters: Optional[Dict[str, Any]],
               created_after: Optional[datetime] = None) -> List[Any]:
        clauses = []
        for column, value in (filters or {}).items():
            attr = getattr(model, column)
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(attr.in_(list(value)))
            elif value is None:
                clauses.append(attr.is_(None))
            else:
                clauses.append(attr == value)
        if created_after is not None:
            clauses.append(model.created_at >= created_after)
        return clauses

    def _fail(self, error: BaseException, operation: str, relation: str) -> StoreError:
        kind = classify_error(error)
        logger.error("Store operation failed", operation=operation, relation=relation,
                     kind=kind.value, error=str(error))
        return StoreError(kind, operation, relation, str(error))

    async def insert(self, relation: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it as stored."""
        model = self._model(relation, "insert")
        try:
            self._check_columns(model, values.keys(), "insert", relation)
            async with self.get_session() as session:
                row = model(**values)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                created = row_to_dict(row)
        except StoreError:
            raise
        except Exception as e:
            raise self._fail(e, "insert", relation) from e

        log_store_operation(logger, "insert", relation, rows=1)
        await self._publish_change(relation, "INSERT", new=created)
        return created

    async def select(self, relation: str, filters: Optional[Dict[str, Any]] = None,
                     order_by: Optional[str] = None, descending: bool = False,
                     limit: Optional[int] = None,
                     created_after: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Select rows matching equality / membership filters."""
        model = self._model(relation, "select")
        try:
            self._check_columns(model, list((filters or {}).keys()) + ([order_by] if order_by else []),
                                "select", relation)
            stmt = select(model).where(*self._where(model, filters, created_after))
            if order_by:
                column = getattr(model, order_by)
                stmt = stmt.order_by(column.desc() if descending else column.asc())
            if limit:
                stmt = stmt.limit(limit)
            async with self.get_session() as session:
                result = await session.execute(stmt)
                rows = [row_to_dict(r) for r in result.scalars().all()]
        except StoreError:
            raise
        except Exception as e:
            raise self._fail(e, "select", relation) from e

        log_store_operation(logger, "select", relation, rows=len(rows))
        return rows

    async def select_one(self, relation: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.select(relation, filters, limit=1)
        return rows[0] if rows else None

    async def get_by_id(self, relation: str, row_id: str) -> Dict[str, Any]:
        """Fetch one row by primary key; missing rows raise a not_found StoreError."""
        row = await self.select_one(relation, {"id": row_id})
        if row is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, "select", relation, f"{relation} {row_id} not found")
        return row

    async def update(self, relation: str, values: Dict[str, Any],
                     filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Update matching rows; returns the updated rows."""
        model = self._model(relation, "update")
        changes = []
        try:
            self._check_columns(model, list(values.keys()) + list(filters.keys()), "update", relation)
            async with self.get_session() as session:
                result = await session.execute(select(model).where(*self._where(model, filters)))
                rows = result.scalars().all()
                for row in rows:
                    old = row_to_dict(row)
                    for column, value in values.items():
                        setattr(row, column, value)
                    changes.append((old, row))
                await session.commit()
                updated = []
                for old, row in changes:
                    await session.refresh(row)
                    updated.append((old, row_to_dict(row)))
        except StoreError:
            raise
        except Exception as e:
            raise self._fail(e, "update", relation) from e

        log_store_operation(logger, "update", relation, rows=len(updated))
        for old, new in updated:
            await self._publish_change(relation, "UPDATE", new=new, old=old)
        return [new for _, new in updated]

    async def delete(self, relation: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Delete matching rows; returns the deleted rows."""
        model = self._model(relation, "delete")
        try:
            self._check_columns(model, filters.keys(), "delete", relation)
            if not filters:
                raise StoreError(StoreErrorKind.CONSTRAINT, "delete", relation, "Refusing unfiltered delete")
            async with self.get_session() as session:
                result = await session.execute(select(model).where(*self._where(model, filters)))
                deleted = [row_to_dict(r) for r in result.scalars().all()]
                await session.execute(sa_delete(model).where(*self._where(model, filters)))
                await session.commit()
        except StoreError:
            raise
        except Exception as e:
            raise self._fail(e, "delete", relation) from e

        log_store_operation(logger, "delete", relation, rows=len(deleted))
        for old in deleted:
            await self._publish_change(relation, "DELETE", old=old)
        return deleted

    async def select_conversation(self, user_a: str, user_b: str) -> List[Dict[str, Any]]:
        """Messages exchanged between two users, oldest first."""
        try:
            stmt = select(Message).where(or_(
                and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                and_(Message.sender_id == user_b, Message.receiver_id == user_a),
            )).order_by(Message.created_at.asc())
            async with self.get_session() as session:
                result = await session.execute(stmt)
                rows = [row_to_dict(r) for r in result.scalars().all()]
        except StoreError:
            raise
        except Exception as e:
            raise self._fail(e, "select", "messages") from e

        log_store_operation(logger, "select_conversation", "messages", rows=len(rows))
        return rows

    async def _publish_change(self, relation: str, event_type: str,
                              new: Optional[Dict[str, Any]] = None,
                              old: Optional[Dict[str, Any]] = None) -> None:
        if self.pubsub is None:
            return
        channel = changes_channel(relation)
        if not self.pubsub.subscriber_count(channel):
            return
        try:
            payload = orjson.dumps({"eventType": event_type, "table": relation, "new": new, "old": old}).decode()
            await self.pubsub.publish(channel, payload)
        except Exception as e:
            logger.warning("Change event publish failed", relation=relation, error=str(e))

    # ============================================================================
    # Cache entries (SQLite cache backend)
    # ============================================================================

    async def get_cache_entry(self, key: str, now: float) -> Optional[str]:
        """Get cache value by key. Returns None if expired or not found."""
        try:
            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key == key)
                result = await session.execute(stmt)
                entry = result.scalar_one_or_none()

                if not entry:
                    return None

                if entry.expires_at is not None and now >= entry.expires_at:
                    await session.delete(entry)
                    await session.commit()
                    return None

                return entry.value

        except Exception as e:
            logger.error("Failed to get cache entry", key=key, error=str(e))
            return None

    async def set_cache_entry(self, key: str, value: str, expires_at: Optional[float], now: float) -> bool:
        """Set cache value with an absolute expiry."""
        try:
            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key == key)
                result = await session.execute(stmt)
                existing = result.scalar_one_or_none()

                if existing:
                    existing.value = value
                    existing.expires_at = expires_at
                    existing.created_at = now
                else:
                    session.add(CacheEntry(key=key, value=value, expires_at=expires_at, created_at=now))

                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to set cache entry", key=key, error=str(e))
            return False

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache entry by key. Absent keys count as deleted."""
        try:
            async with self.get_session() as session:
                await session.execute(sa_delete(CacheEntry).where(CacheEntry.key == key))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to delete cache entry", key=key, error=str(e))
            return False
