"""Client-local key/value storage.

Each connected client owns one of these. Over HTTP it is backed by cookies,
for a WebSocket connection (and in tests) by a plain dict. Values are strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

from fastapi import Request, Response

from core.config import Settings

SESSION_KEY = "sessionId"
MESSAGES_KEY = "client_messages"
CONVERSATIONS_KEY = "client_conversations"


class ClientStorage(ABC):
    """Synchronous string store with localStorage semantics."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass


class MemoryClientStorage(ClientStorage):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class CookieClientStorage(ClientStorage):
    """Reads request cookies, records writes until apply_to() copies them onto a response.

    The session key is stored under ``settings.session_cookie_name``.
    """

    def __init__(self, cookies: Dict[str, str], settings: Settings):
        self.settings = settings
        self._values: Dict[str, str] = dict(cookies)
        self._pending_set: Dict[str, str] = {}
        self._pending_remove: Set[str] = set()

    @classmethod
    def from_request(cls, request: Request, settings: Settings) -> "CookieClientStorage":
        return cls(dict(request.cookies), settings)

    def _cookie_name(self, key: str) -> str:
        return self.settings.session_cookie_name if key == SESSION_KEY else key

    def get_item(self, key: str) -> Optional[str]:
        return self._values.get(self._cookie_name(key))

    def set_item(self, key: str, value: str) -> None:
        name = self._cookie_name(key)
        self._values[name] = value
        self._pending_set[name] = value
        self._pending_remove.discard(name)

    def remove_item(self, key: str) -> None:
        name = self._cookie_name(key)
        self._values.pop(name, None)
        self._pending_set.pop(name, None)
        self._pending_remove.add(name)

    @property
    def dirty(self) -> bool:
        return bool(self._pending_set or self._pending_remove)

    def apply_to(self, response: Response) -> Response:
        """Copy pending writes onto the outgoing response."""
        for name, value in self._pending_set.items():
            response.set_cookie(
                key=name,
                value=value,
                httponly=True,
                max_age=self.settings.session_ttl,
                samesite=self.settings.session_cookie_samesite,
                secure=self.settings.session_cookie_secure
            )
        for name in self._pending_remove:
            response.delete_cookie(key=name)
        self._pending_set.clear()
        self._pending_remove.clear()
        return response
