"""Key-value cache with TTL over Redis, SQLite or process memory.

Backend selection:
- Redis: when REDIS_ENABLED=true and the server answers PING
- SQLite: when Redis is off and a Database is available
- Memory: otherwise

Values are opaque strings; callers serialize JSON themselves (or use the
``set_json``/``get_json`` helpers). Expiry is checked lazily on read, there is
no background sweep and no capacity bound.
"""

import json
import time
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)

SESSION_PREFIX = "session:"
RATE_LIMIT_PREFIX = "rate_limit:"


class CacheService:
    """Async TTL cache. Never raises; failures are logged and reported as falsy results."""

    def __init__(self, settings: Settings, database: Optional["Database"] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.database = database
        self.clock = clock
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Tuple[str, Optional[float]]] = {}
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        self.use_sqlite = not self.use_redis and database is not None

    @property
    def backend(self) -> str:
        if self.use_redis and self.redis:
            return "redis"
        if self.use_sqlite and self.database:
            return "sqlite"
        return "memory"

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except Exception as e:
                logger.warning("Redis connection failed, falling back", error=str(e))
                self.use_redis = False
                self.redis = None
                if self.database:
                    self.use_sqlite = True
                    logger.info("Using SQLite cache (Redis fallback)")
        elif self.use_sqlite:
            logger.info("Using SQLite cache")
        else:
            logger.info("Using in-memory cache")

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.close()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()

    def _expires_at(self, ttl: int) -> float:
        return self.clock() + ttl

    async def get(self, key: str) -> Optional[str]:
        """Get value; expired entries are deleted and reported as absent."""
        try:
            if self.use_redis and self.redis:
                value = await self.redis.get(key)
            elif self.use_sqlite and self.database:
                value = await self.database.get_cache_entry(key, now=self.clock())
            else:
                value = self._memory_get(key)
            log_cache_operation(logger, "get", key, hit=value is not None)
            return value
        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self.memory_cache[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Store value with expiry now + ttl, overwriting any previous entry."""
        try:
            if not isinstance(value, str):
                raise TypeError(f"cache values must be str, got {type(value).__name__}")
            if ttl is None:
                ttl = self.settings.cache_ttl

            if self.use_redis and self.redis:
                # SETEX rejects non-positive expiry; an already-expired entry reads as absent
                if ttl > 0:
                    await self.redis.setex(key, ttl, value)
                else:
                    await self.redis.delete(key)
            elif self.use_sqlite and self.database:
                if not await self.database.set_cache_entry(key, value, self._expires_at(ttl), now=self.clock()):
                    return False
            else:
                self.memory_cache[key] = (value, self._expires_at(ttl))
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete key. Deleting an absent key still succeeds."""
        try:
            if self.use_redis and self.redis:
                await self.redis.delete(key)
            elif self.use_sqlite and self.database:
                if not await self.database.delete_cache_entry(key):
                    return False
            else:
                self.memory_cache.pop(key, None)
            log_cache_operation(logger, "delete", key)
            return True

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    # ============================================================================
    # JSON helpers
    # ============================================================================

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error("Cache serialization failed", key=key, error=str(e))
            return False
        return await self.set(key, serialized, ttl)

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Cache value is not JSON", key=key, error=str(e))
            return None

    # ============================================================================
    # Sessions
    # ============================================================================

    async def set_session(self, session_id: str, user_id: str, ttl: Optional[int] = None) -> bool:
        if ttl is None:
            ttl = self.settings.session_ttl
        return await self.set(f"{SESSION_PREFIX}{session_id}", user_id, ttl)

    async def get_session(self, session_id: str) -> Optional[str]:
        return await self.get(f"{SESSION_PREFIX}{session_id}")

    async def delete_session(self, session_id: str) -> bool:
        return await self.delete(f"{SESSION_PREFIX}{session_id}")

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None
