"""SQLModel tables for the client portal relations."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _created_at():
    return Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), index=True)
    )


def _updated_at():
    return Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Project(SQLModel, table=True):
    """Client project."""

    __tablename__ = "projects"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    name: str = Field(max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: str = Field(default="starting", max_length=20)  # starting | in_progress | completed
    created_at: datetime = _created_at()
    updated_at: datetime = _updated_at()


class Folder(SQLModel, table=True):
    """Folder of requirement inputs inside a project."""

    __tablename__ = "folders"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    project_id: str = Field(foreign_key="projects.id", index=True, max_length=36)
    name: str = Field(max_length=50)
    description: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = _created_at()
    updated_at: datetime = _updated_at()


class Deliverable(SQLModel, table=True):
    """File or URL handed over to a client."""

    __tablename__ = "deliverables"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    project_id: str = Field(foreign_key="projects.id", index=True, max_length=36)
    title: str = Field(max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    type: str = Field(default="file", max_length=10)  # file | url
    url: Optional[str] = Field(default=None, max_length=2000)
    file_path: Optional[str] = Field(default=None, max_length=1000)
    file_name: Optional[str] = Field(default=None, max_length=255)
    file_size: Optional[int] = Field(default=None)
    mime_type: Optional[str] = Field(default=None, max_length=255)
    created_by: Optional[str] = Field(default=None, max_length=36)
    created_at: datetime = _created_at()
    updated_at: datetime = _updated_at()


class Message(SQLModel, table=True):
    """Two-party message between a client and an admin."""

    __tablename__ = "messages"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    sender_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    receiver_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    content: str = Field(max_length=5000)
    is_read: bool = Field(default=False)
    created_at: datetime = _created_at()


class Notification(SQLModel, table=True):
    """Per-user notification."""

    __tablename__ = "notifications"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    type: str = Field(max_length=50)
    title: str = Field(max_length=255)
    message: str = Field(max_length=2000)
    is_read: bool = Field(default=False)
    created_at: datetime = _created_at()


class SystemAlert(SQLModel, table=True):
    """Banner-style alert shown to admins and/or clients."""

    __tablename__ = "system_alerts"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    title: str = Field(max_length=255)
    message: str = Field(max_length=2000)
    type: str = Field(default="info", max_length=20)  # info | warning | error | success
    priority: str = Field(default="medium", max_length=20)  # low | medium | high | critical
    is_active: bool = Field(default=True)
    is_dismissible: bool = Field(default=True)
    target_audience: str = Field(default="all", max_length=20)  # all | admins | clients
    created_by: Optional[str] = Field(default=None, max_length=100)
    created_at: datetime = _created_at()


class SecurityAlert(SQLModel, table=True):
    """Audit / security event."""

    __tablename__ = "security_alerts"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    type: str = Field(max_length=50)
    severity: str = Field(max_length=20)  # low | medium | high | critical
    title: str = Field(max_length=255)
    description: str = Field(max_length=2000)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = Field(default=None, index=True, max_length=36)
    user_agent: Optional[str] = Field(default=None, max_length=500)
    location: Optional[str] = Field(default=None, max_length=255)
    metadata_json: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    resolved: bool = Field(default=False)
    resolved_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    resolved_by: Optional[str] = Field(default=None, max_length=100)
    created_at: datetime = _created_at()


class SystemSetting(SQLModel, table=True):
    """Admin-editable key/value setting."""

    __tablename__ = "system_settings"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    key: str = Field(unique=True, index=True, max_length=100)
    value: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    description: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = _created_at()
    updated_at: datetime = _updated_at()


class Broadcast(SQLModel, table=True):
    """Admin broadcast to many clients."""

    __tablename__ = "broadcasts"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    title: str = Field(max_length=255)
    message: str = Field(max_length=5000)
    target_audience: str = Field(default="all", max_length=20)
    created_by: Optional[str] = Field(default=None, max_length=36)
    created_at: datetime = _created_at()
