"""SQLite-backed cache model for key-value storage with TTL.

Used when Redis is disabled: the table survives restarts the same way the
browser's local storage survives reloads.
"""

import time
from typing import Optional
from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """Namespaced key-value entry with an absolute expiry."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=1000000)
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp
    created_at: float = Field(default_factory=time.time)
