"""User account model."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import func
import bcrypt

BCRYPT_ROUNDS = 12


class User(SQLModel, table=True):
    """Client or admin account."""

    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    phone_number: str = Field(unique=True, index=True, max_length=20)
    password_hash: str = Field(max_length=255)
    full_name: Optional[str] = Field(default=None, max_length=100)
    company_name: Optional[str] = Field(default=None, max_length=100)
    is_admin: bool = Field(default=False)
    login_attempts: int = Field(default=0)
    locked_until: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_login: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )

    def set_password(self, password: str) -> None:
        """Hash and set password using bcrypt."""
        self.password_hash = hash_password(password)

    def verify_password(self, password: str) -> bool:
        """Verify password against stored hash."""
        return verify_password(password, self.password_hash)

    @classmethod
    def create(cls, phone_number: str, password: str, full_name: Optional[str] = None,
               company_name: Optional[str] = None, is_admin: bool = False) -> "User":
        """Factory method to create a user with hashed password."""
        user = cls(
            phone_number=phone_number.strip(),
            password_hash="",
            full_name=full_name.strip() if full_name else None,
            company_name=company_name.strip() if company_name else None,
            is_admin=is_admin
        )
        user.set_password(password)
        return user


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


def public_user(row: Dict[str, Any]) -> Dict[str, Any]:
    """User row without credential fields."""
    return {k: v for k, v in row.items() if k != "password_hash"}
