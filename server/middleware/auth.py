"""Session middleware for route protection."""

from typing import Any, Dict

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.client_storage import CookieClientStorage
from core.container import container
from core.logging import get_logger
from services.session import AuthSession

logger = get_logger(__name__)

# Public routes that don't require authentication
PUBLIC_PATHS = frozenset([
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/auth/status",
    "/api/auth/login",
    "/api/auth/signup",
    "/api/auth/logout",
    "/api/storage/download",  # Signed token in the query string
])

# Path prefixes that are public
PUBLIC_PREFIXES = (
    "/ws/",  # WebSocket endpoints authenticate themselves
)


def build_session(request: Request) -> AuthSession:
    """AuthSession bound to this request's cookies."""
    settings = container.settings()
    storage = CookieClientStorage.from_request(request, settings)
    return AuthSession(container.cache(), container.user_auth_service(), storage, settings)


class AuthMiddleware(BaseHTTPMiddleware):
    """Restores the cookie session; protected routes see ``request.state.user``."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Allow public paths
        if self._is_public_path(path) or request.method == "OPTIONS":
            return await call_next(request)

        session = build_session(request)
        user = await session.restore()

        if user is None:
            response = JSONResponse(
                status_code=401,
                content={"detail": "Not authenticated"}
            )
            # Drop a stale cookie if restore() rejected it
            session.storage.apply_to(response)
            return response

        # Attach user info to request state for downstream handlers
        request.state.user = user
        request.state.session = session

        return await call_next(request)

    def _is_public_path(self, path: str) -> bool:
        """Check if path is public (no auth required)."""
        if path in PUBLIC_PATHS:
            return True

        for prefix in PUBLIC_PREFIXES:
            if path.startswith(prefix):
                return True

        return False


def get_current_user(request: Request) -> Dict[str, Any]:
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
