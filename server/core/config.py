"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Security
    cors_origins: List[str] = Field(default=["http://localhost:5173"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/portal.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_ttl: int = Field(default=3600, ge=1)

    # Sessions
    session_ttl: int = Field(default=86400, ge=1)  # 24 hours
    session_cookie_name: str = Field(default="sessionId")
    session_cookie_secure: bool = Field(default=False)  # True in production
    session_cookie_samesite: Literal["lax", "strict", "none"] = Field(default="lax")

    # Messaging / Notifications
    admin_user_id: Optional[str] = Field(default=None)
    local_message_cache_limit: int = Field(default=200, ge=1)
    notification_page_size: int = Field(default=50, ge=1, le=500)
    message_max_length: int = Field(default=1000, ge=1)

    # Login security
    login_max_attempts: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=30, ge=1)
    rate_limit_attempts: int = Field(default=5, ge=1)
    rate_limit_window: int = Field(default=300, ge=1)

    # Object storage
    storage_root: str = Field(default="./data/storage")
    signed_url_secret: str = Field(default="change-me-signed-url-secret-0123456789", min_length=32)
    signed_url_ttl: int = Field(default=3600, ge=60)
    max_upload_mb: int = Field(default=50, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if the durable store is SQLite."""
        return self.database_url.startswith("sqlite")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
