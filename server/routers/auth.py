"""Authentication routes for signup, login, logout and the current session."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, Request
from pydantic import BaseModel, Field

from core.container import container
from core.errors import SessionError
from core.logging import get_logger
from middleware.auth import build_session, get_current_user
from services.security import SecurityMonitor
from services.user_auth import UserAuthService, format_phone_number

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class SignupRequest(BaseModel):
    phone_number: str = Field(min_length=1, max_length=32)
    password: str = Field(min_length=1, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=100)
    company_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    phone_number: str = Field(min_length=1, max_length=32)
    password: str = Field(min_length=1, max_length=128)


class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = None
    company_name: Optional[str] = None


def get_user_auth_service() -> UserAuthService:
    return container.user_auth_service()


def get_security_monitor() -> SecurityMonitor:
    return container.security_monitor()


async def _start_session(request: Request, response: Response, user: dict) -> dict:
    session = build_session(request)
    try:
        await session.login(user)
    except SessionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    session.storage.apply_to(response)
    return {"success": True, "user": user}


@router.get("/status")
async def get_auth_status(request: Request, response: Response):
    """
    Get authentication status.
    Returns the current user if the session cookie is still valid.
    """
    session = build_session(request)
    user = await session.restore()
    session.storage.apply_to(response)
    return {
        "authenticated": session.is_authenticated,
        "user": user
    }


@router.post("/signup")
async def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    """Register a client account and sign it in."""
    user, error = await user_auth.sign_up(
        phone_number=body.phone_number,
        password=body.password,
        full_name=body.full_name,
        company_name=body.company_name
    )

    if error:
        raise HTTPException(status_code=400, detail=error)

    return await _start_session(request, response, user)


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_auth: UserAuthService = Depends(get_user_auth_service),
    security: SecurityMonitor = Depends(get_security_monitor)
):
    """
    Login with phone number and password.
    Sets an HttpOnly session cookie.
    """
    phone = format_phone_number(body.phone_number)
    if not await security.check_rate_limit(phone, "login"):
        raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")

    user, error = await user_auth.sign_in(
        phone_number=body.phone_number,
        password=body.password,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )

    if error:
        raise HTTPException(status_code=401, detail=error)

    return await _start_session(request, response, user)


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Delete the cached session and clear the cookie."""
    session = build_session(request)
    await session.logout()
    session.storage.apply_to(response)
    return {"success": True}


@router.get("/me")
async def get_me(user: dict = Depends(get_current_user)):
    """
    Get current authenticated user.
    Requires valid session cookie.
    """
    return user


@router.patch("/me")
async def update_me(
    body: ProfileUpdateRequest,
    request: Request,
    user: dict = Depends(get_current_user),
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    updated = await user_auth.update_profile(
        user["id"], full_name=body.full_name, company_name=body.company_name
    )
    request.state.session.update_user(**updated)
    return {"success": True, "user": request.state.session.user}
