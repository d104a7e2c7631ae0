"""Per-client authentication session.

The session id lives in the client's local storage under ``sessionId``; the
cache maps ``session:{id}`` to the user id until the TTL runs out.
"""

import secrets
from typing import Any, Dict, Optional

from core.cache import CacheService
from core.client_storage import ClientStorage, SESSION_KEY
from core.config import Settings
from core.errors import SessionError, StoreError
from core.logging import get_logger
from services.user_auth import UserAuthService

logger = get_logger(__name__)


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


class AuthSession:
    """Auth state for one client: who is logged in, and whether restore() is still running."""

    def __init__(self, cache: CacheService, user_auth: UserAuthService,
                 storage: ClientStorage, settings: Settings):
        self.cache = cache
        self.user_auth = user_auth
        self.storage = storage
        self.settings = settings
        self.user: Optional[Dict[str, Any]] = None
        self.is_loading = True

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def session_id(self) -> Optional[str]:
        return self.storage.get_item(SESSION_KEY)

    async def restore(self) -> Optional[Dict[str, Any]]:
        """Rebuild auth state from the stored session id."""
        try:
            session_id = self.session_id
            if not session_id:
                return None

            user_id = await self.cache.get_session(session_id)
            if not user_id:
                logger.debug("Session expired", session_id=session_id[:8])
                self.storage.remove_item(SESSION_KEY)
                return None

            try:
                user = await self.user_auth.get_user_by_id(user_id)
            except StoreError as e:
                logger.warning("Session user lookup failed", user_id=user_id, error=str(e))
                user = None

            if user is None:
                await self.cache.delete_session(session_id)
                self.storage.remove_item(SESSION_KEY)
                return None

            self.user = user
            return user

        except Exception as e:
            logger.error("Session check error", error=str(e))
            self.storage.remove_item(SESSION_KEY)
            self.user = None
            return None
        finally:
            self.is_loading = False

    async def login(self, user: Dict[str, Any]) -> str:
        """Create a session for user. Raises SessionError if the cache refuses it."""
        session_id = generate_session_id()
        stored = await self.cache.set_session(session_id, user["id"], self.settings.session_ttl)
        if not stored:
            logger.error("Failed to create session", user_id=user["id"])
            raise SessionError("Failed to create session")

        self.storage.set_item(SESSION_KEY, session_id)
        self.user = user
        self.is_loading = False
        logger.info("Session created", user_id=user["id"])
        return session_id

    async def logout(self) -> None:
        """Drop the session everywhere. Never raises."""
        session_id = self.session_id
        if session_id:
            try:
                if not await self.cache.delete_session(session_id):
                    logger.warning("Session delete failed", session_id=session_id[:8])
            except Exception as e:
                logger.warning("Logout error", error=str(e))
            self.storage.remove_item(SESSION_KEY)
        self.user = None

    def update_user(self, **updates: Any) -> None:
        if self.user is not None:
            self.user = {**self.user, **updates}
