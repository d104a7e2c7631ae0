"""User authentication service: sign-up, sign-in and profile lookups."""

import re
from typing import Optional, Dict, Any, List, Tuple

from core.config import Settings
from core.database import Database
from core.errors import StoreError, ValidationError
from core.logging import get_logger
from models.auth import User, public_user, verify_password
from services import validation
from services.security import SecurityMonitor, sanitize_input

logger = get_logger(__name__)

UserResult = Tuple[Optional[Dict[str, Any]], Optional[str]]


def format_phone_number(phone: str) -> str:
    """Normalise a Nigerian phone number to +234 form."""
    cleaned = re.sub(r"\D", "", phone)
    if not cleaned.startswith("234") and len(cleaned) == 11:
        return f"+234{cleaned[1:]}"
    if cleaned.startswith("234"):
        return f"+{cleaned}"
    if phone.startswith("+"):
        return phone
    return f"+{cleaned}"


def validate_phone_number(phone: str) -> bool:
    return validation.is_valid_phone(format_phone_number(phone))


def validate_password(password: str) -> List[str]:
    """Password strength failures; empty when acceptable."""
    return validation.password_errors(password)


class UserAuthService:
    """Handles user registration, login and profile management."""

    def __init__(self, database: Database, security: SecurityMonitor, settings: Settings):
        self.database = database
        self.security = security
        self.settings = settings

    async def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get user by ID, without the password hash."""
        row = await self.database.select_one("users", {"id": user_id})
        return public_user(row) if row else None

    async def get_user_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        row = await self.database.select_one("users", {"phone_number": format_phone_number(phone_number)})
        return public_user(row) if row else None

    async def get_first_admin(self) -> Optional[Dict[str, Any]]:
        rows = await self.database.select("users", {"is_admin": True}, order_by="created_at", limit=1)
        return public_user(rows[0]) if rows else None

    async def sign_up(
        self, phone_number: str, password: str,
        full_name: Optional[str] = None, company_name: Optional[str] = None,
        is_admin: bool = False
    ) -> UserResult:
        """
        Register a new user.
        Returns (user, None) on success, (None, error_message) on failure.
        """
        formatted_phone = format_phone_number(sanitize_input(phone_number))
        if not validate_phone_number(formatted_phone):
            return None, "Invalid phone number format"

        password_errors = validate_password(password)
        if password_errors:
            return None, ", ".join(password_errors)

        full_name = sanitize_input(full_name) if full_name else None
        company_name = sanitize_input(company_name) if company_name else None

        if await self.database.select_one("users", {"phone_number": formatted_phone}):
            return None, "User with this phone number already exists"

        user = User.create(
            phone_number=formatted_phone,
            password=password,
            full_name=full_name,
            company_name=company_name,
            is_admin=is_admin
        )
        try:
            row = await self.database.insert("users", user.model_dump())
        except StoreError as e:
            logger.error("Signup failed", phone_number=formatted_phone, error=str(e))
            return None, "Failed to create account"

        logger.info("User registered", user_id=row["id"], is_admin=is_admin)
        return public_user(row), None

    async def sign_in(
        self, phone_number: str, password: str,
        ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> UserResult:
        """
        Authenticate user.
        Returns (user, None) on success, (None, error_message) on failure.
        """
        formatted_phone = format_phone_number(sanitize_input(phone_number))
        row = await self.database.select_one("users", {"phone_number": formatted_phone})

        if row and self.security.is_locked(row):
            logger.warning("Login refused for locked account", user_id=row["id"])
            return None, (f"Account is temporarily locked due to too many failed attempts. "
                          f"Try again in {self.settings.lockout_minutes} minutes.")

        if not row or not verify_password(password, row["password_hash"]):
            await self._track(self.security.track_failed_login(formatted_phone, ip_address, user_agent))
            return None, "Invalid phone number or password"

        # Checked before this login's own audit row records the IP
        await self._track(self.security.detect_suspicious_activity(row["id"], ip_address, user_agent))
        await self._track(self.security.track_successful_login(row["id"], ip_address, user_agent))

        logger.info("User logged in", user_id=row["id"])
        return await self.get_user_by_id(row["id"]), None

    async def _track(self, coro) -> None:
        try:
            await coro
        except StoreError as e:
            logger.warning("Security tracking failed", error=str(e))

    async def update_profile(self, user_id: str, full_name: Optional[str] = None,
                             company_name: Optional[str] = None) -> Dict[str, Any]:
        """Update display fields. Raises ValidationError or StoreError."""
        updates: Dict[str, Any] = {}
        if full_name is not None:
            updates["full_name"] = sanitize_input(full_name)
        if company_name is not None:
            updates["company_name"] = sanitize_input(company_name)
        if not updates:
            raise ValidationError.single("profile", "Nothing to update")
        form = validation.ProfileForm.check(**updates)
        updates = form.model_dump(include=set(updates))

        await self.database.get_by_id("users", user_id)
        rows = await self.database.update("users", updates, {"id": user_id})
        return public_user(rows[0])
