"""Portal exception hierarchy."""

from enum import Enum
from typing import Dict, List, Optional


class PortalError(Exception):
    """Base exception for all portal errors."""


class StoreErrorKind(str, Enum):
    NETWORK = "network"
    CONSTRAINT = "constraint"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class StoreError(PortalError):
    """Durable store call failed. Always surfaced to the caller."""

    def __init__(self, kind: StoreErrorKind, operation: str, relation: str,
                 message: Optional[str] = None):
        self.kind = kind
        self.operation = operation
        self.relation = relation
        self.message = message or f"{operation} on {relation} failed"
        super().__init__(f"[{kind.value}] {self.message}")

    @property
    def user_message(self) -> str:
        """Message safe to show in the UI."""
        if self.kind == StoreErrorKind.PERMISSION_DENIED:
            return "You do not have permission to perform this action."
        if self.kind == StoreErrorKind.NOT_FOUND:
            return "The requested resource was not found."
        if self.kind == StoreErrorKind.CONSTRAINT:
            return "The change conflicts with existing data."
        if self.kind == StoreErrorKind.NETWORK:
            return "Network error. Please check your connection."
        return "An unexpected error occurred"


class ValidationError(PortalError):
    """Input rejected before any store call was made."""

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        super().__init__("; ".join(
            f"{field}: {', '.join(messages)}" for field, messages in errors.items()
        ))

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})


class SessionError(PortalError):
    """Session could not be created or is no longer valid."""
