"""Input forms for portal writes.

Each form is a pydantic model. ``PortalForm.check`` validates keyword input and
re-raises failures as the portal's ValidationError (``{field: [messages]}``),
so callers reject bad input before touching the store.
"""

import re
from typing import Annotated, Any, ClassVar, Dict, Iterable, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticCustomError

from core.errors import ValidationError

PHONE_PATTERN = r"^\+234[789][01]\d{8}$"
URL_PATTERN = r"^https?://.+\..+"
DEFAULT_MESSAGE_MAX_LENGTH = 1000


def required(message: str) -> BeforeValidator:
    """Reject None and blank strings with message."""
    def check(value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise PydanticCustomError("required", message)
        return value
    return BeforeValidator(check)


def password_failures(password: str) -> List[str]:
    """Every strength rule password breaks, in display order."""
    failures = []
    if len(password) < 8:
        failures.append("Password must be at least 8 characters")
    if not re.search(r"[A-Z]", password):
        failures.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        failures.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        failures.append("Password must contain at least one number")
    return failures


def form_errors(exc: PydanticValidationError, messages: Dict[str, Dict[str, str]]) -> Dict[str, List[str]]:
    """Group pydantic errors by field, swapping in portal wording where a form defines it."""
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        field = str(error["loc"][0]) if error["loc"] else "form"
        ctx = error.get("ctx") or {}
        if "failures" in ctx:
            found = list(ctx["failures"])
        else:
            found = [messages.get(field, {}).get(error["type"], error["msg"])]
        errors.setdefault(field, []).extend(found)
    return errors


class PortalForm(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    # field -> pydantic error type -> message shown to the user
    messages: ClassVar[Dict[str, Dict[str, str]]] = {}

    @classmethod
    def check(cls, context: Optional[Dict[str, Any]] = None, **values: Any) -> "PortalForm":
        try:
            return cls.model_validate(values, context=context)
        except PydanticValidationError as e:
            raise ValidationError(form_errors(e, cls.messages)) from None


# Field types

FullName = Annotated[
    str,
    Field(min_length=2, max_length=100, pattern=r"^[a-zA-Z\s\-']+$"),
    required("Full name is required"),
]

CompanyName = Annotated[
    str,
    Field(min_length=2, max_length=100),
    required("Company name is required"),
]

DeliverableTitle = Annotated[
    str,
    Field(min_length=3, max_length=100),
    required("Deliverable title is required"),
]

Url = Annotated[str, Field(pattern=URL_PATTERN), required("URL is required")]

PhoneNumber = Annotated[str, Field(pattern=PHONE_PATTERN)]

_phone_adapter = TypeAdapter(PhoneNumber)


def is_valid_phone(phone: str) -> bool:
    try:
        _phone_adapter.validate_python(phone)
        return True
    except PydanticValidationError:
        return False


# Forms

class PasswordForm(PortalForm):
    model_config = ConfigDict(str_strip_whitespace=False)

    password: Annotated[str, required("Password is required")]

    @field_validator("password")
    @classmethod
    def strong_enough(cls, value: str) -> str:
        failures = password_failures(value)
        if failures:
            raise PydanticCustomError("password_strength", "{summary}",
                                      {"summary": ", ".join(failures), "failures": failures})
        return value


class ProfileForm(PortalForm):
    """Profile edits; fields left as None are not being changed."""

    full_name: Optional[FullName] = None
    company_name: Optional[CompanyName] = None

    messages: ClassVar[Dict[str, Dict[str, str]]] = {
        "full_name": {
            "string_too_short": "Full name must be at least 2 characters",
            "string_too_long": "Full name must be less than 100 characters",
            "string_pattern_mismatch": "Full name can only contain letters, spaces, hyphens, and apostrophes",
        },
        "company_name": {
            "string_too_short": "Company name must be at least 2 characters",
            "string_too_long": "Company name must be less than 100 characters",
        },
    }


class MessageForm(PortalForm):
    """Message body. The length limit comes from the ``max_length`` context key."""

    content: Annotated[str, required("Message cannot be empty")]

    @field_validator("content")
    @classmethod
    def within_limit(cls, value: str, info: ValidationInfo) -> str:
        limit = (info.context or {}).get("max_length", DEFAULT_MESSAGE_MAX_LENGTH)
        if len(value) > limit:
            raise PydanticCustomError("string_too_long", "Message must be less than {limit} characters",
                                      {"limit": limit})
        return value


class DeliverableForm(PortalForm):
    title: DeliverableTitle

    messages: ClassVar[Dict[str, Dict[str, str]]] = {
        "title": {
            "string_too_short": "Title must be at least 3 characters",
            "string_too_long": "Title must be less than 100 characters",
        },
    }


class UrlDeliverableForm(DeliverableForm):
    url: Url

    messages: ClassVar[Dict[str, Dict[str, str]]] = {
        **DeliverableForm.messages,
        "url": {
            "string_pattern_mismatch": "Please enter a valid URL (http:// or https://)",
        },
    }


def password_errors(password: Optional[str]) -> List[str]:
    """Password strength failures; empty when acceptable."""
    try:
        PasswordForm.check(password=password)
    except ValidationError as e:
        return e.errors["password"]
    return []


def validate_file_upload(file_name: str, content_type: Optional[str], size: int,
                         allowed_types: Iterable[str], max_size_mb: int) -> None:
    """Check an upload against a size limit and allowed MIME types / extensions.

    ``allowed_types`` entries may be exact MIME types (``application/pdf``),
    wildcards (``image/*``) or extensions (``.zip``).
    """
    allowed = list(allowed_types)
    if size > max_size_mb * 1024 * 1024:
        raise ValidationError.single("file", f"File size must be less than {max_size_mb}MB")

    mime = content_type or ""
    for allowed_type in allowed:
        if "*" in allowed_type and mime.startswith(allowed_type.replace("*", "")):
            return
        if allowed_type.startswith(".") and file_name.lower().endswith(allowed_type.lower()):
            return
        if mime == allowed_type:
            return

    raise ValidationError.single("file", f"File type not allowed. Allowed types: {', '.join(allowed)}")
